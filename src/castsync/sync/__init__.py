"""Synchronization with a gpodder-compatible server."""

from .gpodder import (
    Device,
    EpisodeActionChanges,
    GpodderClient,
    SubscriptionChanges,
    UploadResult,
)
from .service import SyncPhase, SyncRunResult, SyncService, cursor_key_for

__all__ = [
    "Device",
    "EpisodeActionChanges",
    "GpodderClient",
    "SubscriptionChanges",
    "UploadResult",
    "SyncPhase",
    "SyncRunResult",
    "SyncService",
    "cursor_key_for",
]
