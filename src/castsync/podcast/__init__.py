"""Podcast management module.

Provides functionality for:
- RSS feed fetching and parsing
- Reconciling feeds against the catalog
- Download policy for new episodes
- Episode downloading
- Feed synchronization
"""

from .feed_parser import FeedParser, ParsedEpisode, ParsedPodcast
from .reconciler import Reconciler, ReconcileResult
from .policy import DownloadDecision, evaluate_download_policy
from .feed_sync import FeedSyncService
from .downloader import DeleteReport, DownloadManager, DownloadResult

__all__ = [
    "FeedParser",
    "ParsedPodcast",
    "ParsedEpisode",
    "Reconciler",
    "ReconcileResult",
    "DownloadDecision",
    "evaluate_download_policy",
    "FeedSyncService",
    "DownloadManager",
    "DownloadResult",
    "DeleteReport",
]
