"""Database module for the podcast catalog.

Provides:
- SQLAlchemy ORM models (Podcast, Episode, EpisodeActionRecord, QueueEntry, SyncCursor)
- Repository interface and implementation
- Factory functions for creating repositories
"""

from .factory import create_repository, create_repository_from_config
from .models import (
    ActionOrigin,
    Base,
    DownloadStatus,
    Episode,
    EpisodeActionRecord,
    Podcast,
    QueueEntry,
    SyncCursor,
)
from .repository import (
    CatalogRepositoryInterface,
    PlayOutcome,
    SQLAlchemyCatalogRepository,
)

__all__ = [
    "ActionOrigin",
    "Base",
    "DownloadStatus",
    "Podcast",
    "Episode",
    "EpisodeActionRecord",
    "QueueEntry",
    "SyncCursor",
    "CatalogRepositoryInterface",
    "PlayOutcome",
    "SQLAlchemyCatalogRepository",
    "create_repository",
    "create_repository_from_config",
]
