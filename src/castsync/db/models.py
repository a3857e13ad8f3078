"""SQLAlchemy ORM models for the podcast catalog, action log, queue and sync state."""

import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class DownloadStatus:
    """Values of `Episode.download_status`."""

    NOT_DOWNLOADED = "not_downloaded"
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    FAILED = "failed"

    # States a download worker owns; enqueue must reject these
    IN_FLIGHT = (QUEUED, DOWNLOADING)
    CLAIMABLE = (NOT_DOWNLOADED, FAILED)


class ActionOrigin:
    """Where an action, or the field value it set, came from."""

    LOCAL = "local"
    REMOTE = "remote"


def is_played(position: Optional[int], total: Optional[int]) -> bool:
    """An episode counts as played once the position is within a second of the end."""
    if position is None or not total or total <= 0:
        return False
    return position >= total - 1


class Podcast(Base):
    """Podcast subscription model.

    Identified by its feed URL. Unsubscribing sets a tombstone instead of
    deleting the row so the removal can still be pushed to the sync server.
    """

    __tablename__ = "podcasts"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    feed_url: Mapped[str] = mapped_column(String(2048), unique=True, nullable=False)
    website_url: Mapped[Optional[str]] = mapped_column(String(2048))

    # Metadata from RSS feed
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    author: Mapped[Optional[str]] = mapped_column(String(512))
    explicit: Mapped[Optional[bool]] = mapped_column(Boolean)
    image_url: Mapped[Optional[str]] = mapped_column(String(2048))

    # Subscription state
    last_checked: Mapped[Optional[datetime]] = mapped_column(DateTime)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    # Added from a remote subscription and never fetched
    needs_refresh: Mapped[bool] = mapped_column(Boolean, default=False)

    # File organization
    local_directory: Mapped[Optional[str]] = mapped_column(String(1024))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    episodes: Mapped[List["Episode"]] = relationship(
        "Episode", back_populates="podcast", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_podcasts_feed_url", "feed_url"),)

    def __repr__(self) -> str:
        return f"<Podcast(id={self.id}, title={self.title!r})>"


class Episode(Base):
    """Episode model.

    `guid` is the identity within a podcast: the feed guid, or the enclosure
    URL when the feed omits or repeats guids. Played and position each carry
    the timestamp and origin of the action that last set them, which is what
    last-writer-wins merging compares against.
    """

    __tablename__ = "episodes"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    podcast_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("podcasts.id", ondelete="CASCADE"), nullable=False
    )

    guid: Mapped[str] = mapped_column(String(2048), nullable=False)
    feed_guid: Mapped[Optional[str]] = mapped_column(String(2048))

    # Metadata from RSS feed
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    link: Mapped[Optional[str]] = mapped_column(String(2048))
    published_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    duration_seconds: Mapped[Optional[int]] = mapped_column(Integer)
    explicit: Mapped[Optional[bool]] = mapped_column(Boolean)

    # Enclosure, kept for re-download
    enclosure_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    enclosure_type: Mapped[str] = mapped_column(String(64), nullable=False)
    enclosure_length: Mapped[Optional[int]] = mapped_column(Integer)

    # Playback state
    played: Mapped[bool] = mapped_column(Boolean, default=False)
    played_timestamp: Mapped[Optional[int]] = mapped_column(Integer)
    played_origin: Mapped[Optional[str]] = mapped_column(String(16))
    position: Mapped[int] = mapped_column(Integer, default=0)
    position_timestamp: Mapped[Optional[int]] = mapped_column(Integer)
    position_origin: Mapped[Optional[str]] = mapped_column(String(16))

    # Download state
    download_status: Mapped[str] = mapped_column(
        String(32), default=DownloadStatus.NOT_DOWNLOADED
    )  # not_downloaded, queued, downloading, downloaded, failed
    download_error: Mapped[Optional[str]] = mapped_column(Text)
    # Token of the job that owns a queued/downloading episode
    download_claim: Mapped[Optional[str]] = mapped_column(String(36))
    downloaded_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    local_file_path: Mapped[Optional[str]] = mapped_column(String(1024))
    file_size_bytes: Mapped[Optional[int]] = mapped_column(Integer)

    # Dropped from the feed; kept because it may be downloaded or referenced by actions
    is_removed: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    podcast: Mapped["Podcast"] = relationship("Podcast", back_populates="episodes")

    __table_args__ = (
        UniqueConstraint("podcast_id", "guid", name="uq_episode_podcast_guid"),
        Index("ix_episodes_podcast_published", "podcast_id", "published_date"),
        Index("ix_episodes_enclosure_url", "enclosure_url"),
        Index("ix_episodes_download_status", "download_status"),
    )

    def __repr__(self) -> str:
        return f"<Episode(id={self.id}, title={self.title!r}, status={self.download_status})>"


class EpisodeActionRecord(Base):
    """Append-only log of episode and subscription actions.

    `seq` is the logical position in the log. Only `pushed` is ever updated.
    """

    __tablename__ = "episode_actions"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    origin: Mapped[str] = mapped_column(String(16), nullable=False)

    podcast_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    episode_url: Mapped[Optional[str]] = mapped_column(String(2048))
    episode_guid: Mapped[Optional[str]] = mapped_column(String(2048))
    episode_id: Mapped[Optional[str]] = mapped_column(String(36))

    position: Mapped[Optional[int]] = mapped_column(Integer)
    total: Mapped[Optional[int]] = mapped_column(Integer)
    started: Mapped[Optional[int]] = mapped_column(Integer)
    timestamp: Mapped[int] = mapped_column(Integer, nullable=False)
    device: Mapped[Optional[str]] = mapped_column(String(256))

    pushed: Mapped[bool] = mapped_column(Boolean, default=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_episode_actions_origin_pushed", "origin", "pushed"),
        Index("ix_episode_actions_identity", "episode_url", "kind", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<EpisodeActionRecord(seq={self.seq}, kind={self.kind}, origin={self.origin})>"


class QueueEntry(Base):
    """One slot of the persistent play queue."""

    __tablename__ = "queue_entries"

    episode_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("episodes.id", ondelete="CASCADE"), primary_key=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    added_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (Index("ix_queue_entries_position", "position"),)

    def __repr__(self) -> str:
        return f"<QueueEntry(episode_id={self.episode_id}, position={self.position})>"


class SyncCursor(Base):
    """Progress marker of the sync client for one server/user/device."""

    __tablename__ = "sync_cursors"

    key: Mapped[str] = mapped_column(String(1024), primary_key=True)
    actions_since: Mapped[int] = mapped_column(Integer, default=0)
    subscriptions_since: Mapped[int] = mapped_column(Integer, default=0)
    last_pushed_seq: Mapped[int] = mapped_column(Integer, default=0)
    generation: Mapped[int] = mapped_column(Integer, default=0)
    last_success_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<SyncCursor(key={self.key!r}, actions_since={self.actions_since}, "
            f"last_pushed_seq={self.last_pushed_seq}, generation={self.generation})>"
        )
