"""Repository pattern implementation for the podcast catalog.

Provides an abstract interface and SQLAlchemy implementation for database operations.
Supports both SQLite (local use) and PostgreSQL.

The catalog is the single owner of episode state. Writers go through this
interface, which serializes writes per episode with a keyed lock and keeps
queue changes in the same transaction as the played transition that
triggers them.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import create_engine, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .locks import KeyedLocks
from .models import (
    ActionOrigin,
    Base,
    DownloadStatus,
    Episode,
    EpisodeActionRecord,
    Podcast,
    QueueEntry,
    SyncCursor,
    is_played,
)

logger = logging.getLogger(__name__)

# Totals at or above this are placeholders for an unknown duration
MAX_DURATION = 24 * 60 * 60 * 100


def _incoming_wins(
    timestamp: int,
    origin: str,
    current_timestamp: Optional[int],
    current_origin: Optional[str],
) -> bool:
    """Last-writer-wins comparison for one field.

    Equal timestamps from different origins resolve in favour of the local
    device; equal timestamps from the same origin re-apply.
    """
    if current_timestamp is None:
        return True
    if timestamp != current_timestamp:
        return timestamp > current_timestamp
    if origin == current_origin:
        return True
    return origin == ActionOrigin.LOCAL


@dataclass
class PlayOutcome:
    """Result of applying a play action to an episode."""

    episode: Episode
    position_changed: bool = False
    played_changed: bool = False
    dequeued: bool = False

    @property
    def changed(self) -> bool:
        return self.position_changed or self.played_changed or self.dequeued


@dataclass
class DownloadReset:
    """Download state of an episode just before it was reset."""

    episode_id: str
    previous_status: str
    local_file_path: Optional[str] = None


class CatalogRepositoryInterface(ABC):
    """Abstract interface for catalog persistence.

    Implementations must support both SQLite and PostgreSQL backends and be
    safe to call from several threads at once.
    """

    # --- Podcast Operations ---

    @abstractmethod
    def create_podcast(self, feed_url: str, title: str, **kwargs) -> Podcast:
        """
        Create and persist a new podcast subscription for the given feed URL and title.

        Parameters:
            feed_url (str): RSS or Atom feed URL of the podcast.
            title (str): Display title for the podcast subscription.
            **kwargs: Additional Podcast attributes to set (e.g., description, needs_refresh).

        Returns:
            Podcast: The persisted Podcast instance.
        """
        pass

    @abstractmethod
    def get_podcast(self, podcast_id: str) -> Optional[Podcast]:
        """
        Retrieve a podcast by its identifier.

        Returns:
            Podcast if a podcast with the given ID exists, `None` otherwise.
        """
        pass

    @abstractmethod
    def get_podcast_by_feed_url(self, feed_url: str) -> Optional[Podcast]:
        """
        Retrieve a podcast matching the given feed URL, tombstoned or not.

        Returns:
            The matching `Podcast` if found, `None` otherwise.
        """
        pass

    @abstractmethod
    def list_podcasts(self, include_deleted: bool = False) -> List[Podcast]:
        """
        Return podcasts ordered by title.

        Parameters:
            include_deleted (bool): If True, tombstoned podcasts are included.
        """
        pass

    @abstractmethod
    def update_podcast(self, podcast_id: str, **kwargs) -> Optional[Podcast]:
        """
        Update attributes of an existing podcast.

        Returns:
            Optional[Podcast]: The updated Podcast, or `None` if it does not exist.
        """
        pass

    @abstractmethod
    def tombstone_podcast(self, podcast_id: str) -> Optional[Podcast]:
        """
        Mark a podcast as unsubscribed without deleting it.

        Episodes of the podcast are dropped from the play queue in the same transaction.

        Returns:
            Optional[Podcast]: The tombstoned Podcast, or `None` if it does not exist.
        """
        pass

    @abstractmethod
    def restore_podcast(self, podcast_id: str) -> Optional[Podcast]:
        """Clear the tombstone of a podcast. Returns `None` if it does not exist."""
        pass

    # --- Episode Operations ---

    @abstractmethod
    def create_episode(
        self,
        podcast_id: str,
        guid: str,
        title: str,
        enclosure_url: str,
        enclosure_type: str,
        **kwargs,
    ) -> Episode:
        """
        Create and persist a new Episode for the given podcast.

        Parameters:
            podcast_id (str): ID of the podcast to associate the episode with.
            guid (str): Episode identity within the podcast.
            title (str): Episode title.
            enclosure_url (str): URL of the episode media file.
            enclosure_type (str): MIME type of the enclosure (e.g., "audio/mpeg").
            **kwargs: Optional episode attributes such as `published_date` or `duration_seconds`.

        Returns:
            Episode: The newly created and persisted Episode instance.
        """
        pass

    @abstractmethod
    def get_or_create_episode(
        self,
        podcast_id: str,
        guid: str,
        title: str,
        enclosure_url: str,
        enclosure_type: str,
        **kwargs,
    ) -> tuple[Episode, bool]:
        """
        Return the episode with this guid, creating it when missing.

        Returns:
            tuple[Episode, bool]: (episode, created)
        """
        pass

    @abstractmethod
    def get_episode(self, episode_id: str) -> Optional[Episode]:
        """Retrieve an episode by its primary key, or `None`."""
        pass

    @abstractmethod
    def get_episode_by_guid(self, podcast_id: str, guid: str) -> Optional[Episode]:
        """Retrieve an episode by its identity within the specified podcast, or `None`."""
        pass

    @abstractmethod
    def find_episode(
        self,
        podcast_url: str,
        episode_url: Optional[str] = None,
        guid: Optional[str] = None,
    ) -> Optional[Episode]:
        """
        Locate an episode from the identifiers carried by a sync action.

        Parameters:
            podcast_url (str): Feed URL of the podcast.
            episode_url (Optional[str]): Enclosure URL of the episode.
            guid (Optional[str]): Episode guid, when the action carried one.

        Returns:
            Optional[Episode]: The matching episode, or `None` when it is not in the catalog.
        """
        pass

    @abstractmethod
    def list_episodes(
        self,
        podcast_id: Optional[str] = None,
        download_status: Optional[str] = None,
        include_removed: bool = True,
        limit: Optional[int] = None,
    ) -> List[Episode]:
        """
        List episodes in display order: newest publish date first, undated episodes last.

        Parameters:
            podcast_id (Optional[str]): Restrict to one podcast.
            download_status (Optional[str]): Restrict to one download status.
            include_removed (bool): Include episodes that dropped out of the feed.
            limit (Optional[int]): Maximum number of episodes.
        """
        pass

    @abstractmethod
    def update_episode(self, episode_id: str, **kwargs) -> Optional[Episode]:
        """
        Update metadata attributes of an episode.

        Returns:
            Optional[Episode]: The updated Episode, or `None` if it does not exist.
        """
        pass

    # --- Download State ---

    @abstractmethod
    def claim_download(self, episode_id: str, claim: Optional[str] = None) -> bool:
        """
        Atomically move an episode from not-downloaded or failed into the queued state.

        Parameters:
            episode_id (str): Episode to claim.
            claim (Optional[str]): Token identifying the claiming job. Later transitions that
                pass a token only succeed while the episode still carries it.

        Returns:
            bool: `True` if the caller now owns the download, `False` if the episode is unknown,
                already queued, downloading or downloaded.
        """
        pass

    @abstractmethod
    def mark_download_started(self, episode_id: str, claim: Optional[str] = None) -> bool:
        """Move a queued episode to downloading. Returns `False` if it is no longer queued or claimed by `claim`."""
        pass

    @abstractmethod
    def mark_download_complete(
        self, episode_id: str, local_path: str, file_size: int, claim: Optional[str] = None
    ) -> bool:
        """
        Record a finished download.

        Returns:
            bool: `False` if the episode is not in the downloading state or no longer carries
                `claim` (for example, it was cancelled).
        """
        pass

    @abstractmethod
    def mark_download_failed(self, episode_id: str, error: str, claim: Optional[str] = None) -> bool:
        """Record a failed download and its error message. Returns `False` if not in flight under `claim`."""
        pass

    @abstractmethod
    def reset_download(self, episode_id: str) -> Optional[DownloadReset]:
        """
        Return an episode to not-downloaded and forget its local file.

        Returns:
            Optional[DownloadReset]: The download state before the reset, or `None` if the episode does not exist.
        """
        pass

    @abstractmethod
    def reset_stale_downloads(self) -> int:
        """Reset queued/downloading episodes left behind by a previous process. Returns the count."""
        pass

    # --- Playback State ---

    @abstractmethod
    def apply_play(
        self,
        episode_id: str,
        position: int,
        total: Optional[int],
        timestamp: int,
        origin: str,
    ) -> Optional[PlayOutcome]:
        """
        Merge a play action into the episode using per-field last-writer-wins.

        Position and played are compared independently against the timestamp of the action
        that last set them. A transition to played removes the episode from the play queue in
        the same transaction.

        Returns:
            Optional[PlayOutcome]: What changed, or `None` if the episode does not exist.
        """
        pass

    # --- Action Log ---

    @abstractmethod
    def append_action(self, **fields) -> EpisodeActionRecord:
        """Append one action to the log and return it with its sequence number."""
        pass

    @abstractmethod
    def find_action(
        self,
        podcast_url: str,
        episode_url: Optional[str],
        kind: str,
        timestamp: int,
        position: Optional[int] = None,
    ) -> Optional[EpisodeActionRecord]:
        """Find a logged action with the same identity, used to skip duplicate remote actions."""
        pass

    @abstractmethod
    def list_actions(
        self,
        after_seq: int = 0,
        origin: Optional[str] = None,
        kinds: Optional[Sequence[str]] = None,
        unpushed_only: bool = False,
        limit: Optional[int] = None,
    ) -> List[EpisodeActionRecord]:
        """List logged actions with `seq > after_seq`, in log order."""
        pass

    @abstractmethod
    def mark_actions_pushed(self, seqs: Iterable[int]) -> int:
        """Flag actions as accepted by the sync server. Returns the number of rows updated."""
        pass

    # --- Queue ---

    @abstractmethod
    def queue_push(self, episode_id: str) -> bool:
        """Append an episode to the queue. Returns `False` if present, unknown or played."""
        pass

    @abstractmethod
    def queue_remove(self, episode_id: str) -> bool:
        """Remove an episode from the queue. Returns `False` if it was not queued."""
        pass

    @abstractmethod
    def queue_move(self, from_index: int, to_index: int) -> bool:
        """Move the entry at `from_index` to `to_index`. Returns `False` on out-of-range indices."""
        pass

    @abstractmethod
    def queue_list(self) -> List[str]:
        """Return queued episode ids in play order."""
        pass

    @abstractmethod
    def queue_clear(self) -> int:
        """Empty the queue. Returns the number of removed entries."""
        pass

    # --- Sync Cursor ---

    @abstractmethod
    def get_sync_cursor(self, key: str) -> SyncCursor:
        """Return the stored cursor for `key`, or a zeroed cursor if none was saved yet."""
        pass

    @abstractmethod
    def save_sync_cursor(
        self,
        key: str,
        actions_since: int,
        subscriptions_since: int,
        last_pushed_seq: int,
    ) -> SyncCursor:
        """Persist a cursor after a successful sync run and bump its generation."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release database resources."""
        pass


class SQLAlchemyCatalogRepository(CatalogRepositoryInterface):
    """SQLAlchemy-based implementation of the catalog repository.

    Supports SQLite for local use and PostgreSQL.
    """

    def __init__(
        self,
        database_url: str,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
        create_tables: bool = True,
    ):
        """
        Initialize the repository and configure its SQLAlchemy engine and session factory.

        Parameters:
            database_url (str): SQLAlchemy-compatible database URL.
            pool_size (int): Connection pool size for non-SQLite databases.
            max_overflow (int): Maximum overflow connections for non-SQLite databases.
            echo (bool): If true, enable SQLAlchemy SQL statement logging.
            create_tables (bool): Create missing tables on startup. Disable when the
                schema is managed with alembic.
        """
        self.database_url = database_url

        # SQLite doesn't support connection pooling; wait on locks instead of failing
        if database_url.startswith("sqlite"):
            self.engine = create_engine(
                database_url,
                echo=echo,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
        else:
            self.engine = create_engine(
                database_url,
                pool_size=pool_size,
                max_overflow=max_overflow,
                echo=echo,
            )

        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

        if create_tables:
            Base.metadata.create_all(self.engine)

        self._episode_locks = KeyedLocks()
        # Taken after an episode lock, never before one
        self._queue_lock = threading.RLock()

        logger.info(f"Database initialized: {database_url.split('@')[-1] if '@' in database_url else database_url}")

    def _get_session(self) -> Session:
        return self.SessionLocal()

    # --- Podcast Operations ---

    def create_podcast(self, feed_url: str, title: str, **kwargs) -> Podcast:
        with self._get_session() as session:
            podcast = Podcast(feed_url=feed_url, title=title, **kwargs)
            session.add(podcast)
            session.commit()
            session.refresh(podcast)
            logger.info(f"Created podcast: {title} ({podcast.id})")
            return podcast

    def get_podcast(self, podcast_id: str) -> Optional[Podcast]:
        with self._get_session() as session:
            return session.get(Podcast, podcast_id)

    def get_podcast_by_feed_url(self, feed_url: str) -> Optional[Podcast]:
        with self._get_session() as session:
            stmt = select(Podcast).where(Podcast.feed_url == feed_url)
            return session.scalars(stmt).first()

    def list_podcasts(self, include_deleted: bool = False) -> List[Podcast]:
        with self._get_session() as session:
            stmt = select(Podcast)
            if not include_deleted:
                stmt = stmt.where(Podcast.is_deleted.is_(False))
            stmt = stmt.order_by(Podcast.title, Podcast.feed_url)
            return list(session.scalars(stmt).all())

    def update_podcast(self, podcast_id: str, **kwargs) -> Optional[Podcast]:
        with self._get_session() as session:
            podcast = session.get(Podcast, podcast_id)
            if podcast:
                for key, value in kwargs.items():
                    if hasattr(podcast, key):
                        setattr(podcast, key, value)
                session.commit()
                session.refresh(podcast)
            return podcast

    def tombstone_podcast(self, podcast_id: str) -> Optional[Podcast]:
        with self._queue_lock:
            with self._get_session() as session:
                podcast = session.get(Podcast, podcast_id)
                if podcast is None:
                    return None
                podcast.is_deleted = True
                podcast.deleted_at = datetime.now(UTC)
                episode_ids = select(Episode.id).where(Episode.podcast_id == podcast_id)
                session.execute(
                    delete(QueueEntry).where(QueueEntry.episode_id.in_(episode_ids))
                )
                session.commit()
                session.refresh(podcast)
                logger.info(f"Tombstoned podcast: {podcast.title} ({podcast.id})")
                return podcast

    def restore_podcast(self, podcast_id: str) -> Optional[Podcast]:
        podcast = self.update_podcast(podcast_id, is_deleted=False, deleted_at=None)
        if podcast:
            logger.info(f"Restored podcast: {podcast.title} ({podcast.id})")
        return podcast

    # --- Episode Operations ---

    def create_episode(
        self,
        podcast_id: str,
        guid: str,
        title: str,
        enclosure_url: str,
        enclosure_type: str,
        **kwargs,
    ) -> Episode:
        with self._get_session() as session:
            episode = Episode(
                podcast_id=podcast_id,
                guid=guid,
                title=title,
                enclosure_url=enclosure_url,
                enclosure_type=enclosure_type,
                **kwargs,
            )
            session.add(episode)
            session.commit()
            session.refresh(episode)
            logger.debug(f"Created episode: {title} ({episode.id})")
            return episode

    def get_or_create_episode(
        self,
        podcast_id: str,
        guid: str,
        title: str,
        enclosure_url: str,
        enclosure_type: str,
        **kwargs,
    ) -> tuple[Episode, bool]:
        """
        Ensure an Episode exists for the given podcast by guid; create and persist it if missing.

        Uses optimistic creation with IntegrityError handling to avoid race conditions
        between concurrent feed refreshes.
        """
        existing = self.get_episode_by_guid(podcast_id, guid)
        if existing:
            return existing, False

        try:
            episode = self.create_episode(
                podcast_id=podcast_id,
                guid=guid,
                title=title,
                enclosure_url=enclosure_url,
                enclosure_type=enclosure_type,
                **kwargs,
            )
            return episode, True
        except IntegrityError:
            existing = self.get_episode_by_guid(podcast_id, guid)
            if existing:
                return existing, False
            raise

    def get_episode(self, episode_id: str) -> Optional[Episode]:
        with self._get_session() as session:
            return session.get(Episode, episode_id)

    def get_episode_by_guid(self, podcast_id: str, guid: str) -> Optional[Episode]:
        with self._get_session() as session:
            stmt = select(Episode).where(
                Episode.podcast_id == podcast_id, Episode.guid == guid
            )
            return session.scalars(stmt).first()

    def find_episode(
        self,
        podcast_url: str,
        episode_url: Optional[str] = None,
        guid: Optional[str] = None,
    ) -> Optional[Episode]:
        conditions = []
        if episode_url:
            conditions.append(Episode.enclosure_url == episode_url)
            conditions.append(Episode.guid == episode_url)
        if guid:
            conditions.append(Episode.guid == guid)
            conditions.append(Episode.feed_guid == guid)
        if not conditions:
            return None

        with self._get_session() as session:
            stmt = (
                select(Episode)
                .join(Podcast, Episode.podcast_id == Podcast.id)
                .where(Podcast.feed_url == podcast_url, or_(*conditions))
                .order_by(Episode.created_at)
            )
            return session.scalars(stmt).first()

    def list_episodes(
        self,
        podcast_id: Optional[str] = None,
        download_status: Optional[str] = None,
        include_removed: bool = True,
        limit: Optional[int] = None,
    ) -> List[Episode]:
        with self._get_session() as session:
            stmt = select(Episode)
            if podcast_id:
                stmt = stmt.where(Episode.podcast_id == podcast_id)
            if download_status:
                stmt = stmt.where(Episode.download_status == download_status)
            if not include_removed:
                stmt = stmt.where(Episode.is_removed.is_(False))
            stmt = stmt.order_by(
                Episode.published_date.is_(None),
                Episode.published_date.desc(),
                Episode.created_at,
                Episode.id,
            )
            if limit:
                stmt = stmt.limit(limit)
            return list(session.scalars(stmt).all())

    def update_episode(self, episode_id: str, **kwargs) -> Optional[Episode]:
        with self._episode_locks.hold(episode_id):
            with self._get_session() as session:
                episode = session.get(Episode, episode_id)
                if episode:
                    for key, value in kwargs.items():
                        if hasattr(episode, key):
                            setattr(episode, key, value)
                    session.commit()
                    session.refresh(episode)
                return episode

    # --- Download State ---

    def _transition_download(
        self,
        episode_id: str,
        allowed_from: Sequence[str],
        claim: Optional[str] = None,
        **changes,
    ) -> bool:
        """Compare-and-set on download_status (and the claim token, if given) under the episode lock."""
        with self._episode_locks.hold(episode_id):
            with self._get_session() as session:
                episode = session.get(Episode, episode_id)
                if episode is None or episode.download_status not in allowed_from:
                    return False
                if claim is not None and episode.download_claim != claim:
                    return False
                for key, value in changes.items():
                    setattr(episode, key, value)
                session.commit()
                return True

    def claim_download(self, episode_id: str, claim: Optional[str] = None) -> bool:
        return self._transition_download(
            episode_id,
            DownloadStatus.CLAIMABLE,
            download_status=DownloadStatus.QUEUED,
            download_error=None,
            download_claim=claim,
        )

    def mark_download_started(self, episode_id: str, claim: Optional[str] = None) -> bool:
        return self._transition_download(
            episode_id,
            (DownloadStatus.QUEUED,),
            claim=claim,
            download_status=DownloadStatus.DOWNLOADING,
        )

    def mark_download_complete(
        self, episode_id: str, local_path: str, file_size: int, claim: Optional[str] = None
    ) -> bool:
        return self._transition_download(
            episode_id,
            (DownloadStatus.DOWNLOADING,),
            claim=claim,
            download_status=DownloadStatus.DOWNLOADED,
            download_claim=None,
            local_file_path=local_path,
            file_size_bytes=file_size,
            downloaded_at=datetime.now(UTC),
            download_error=None,
        )

    def mark_download_failed(self, episode_id: str, error: str, claim: Optional[str] = None) -> bool:
        return self._transition_download(
            episode_id,
            DownloadStatus.IN_FLIGHT,
            claim=claim,
            download_status=DownloadStatus.FAILED,
            download_claim=None,
            download_error=error,
        )

    def reset_download(self, episode_id: str) -> Optional[DownloadReset]:
        with self._episode_locks.hold(episode_id):
            with self._get_session() as session:
                episode = session.get(Episode, episode_id)
                if episode is None:
                    return None
                previous = DownloadReset(
                    episode_id=episode.id,
                    previous_status=episode.download_status,
                    local_file_path=episode.local_file_path,
                )
                episode.download_status = DownloadStatus.NOT_DOWNLOADED
                episode.local_file_path = None
                episode.file_size_bytes = None
                episode.downloaded_at = None
                episode.download_error = None
                episode.download_claim = None
                session.commit()
                return previous

    def reset_stale_downloads(self) -> int:
        with self._get_session() as session:
            result = session.execute(
                update(Episode)
                .where(Episode.download_status.in_(DownloadStatus.IN_FLIGHT))
                .values(download_status=DownloadStatus.NOT_DOWNLOADED, download_claim=None)
            )
            session.commit()
            return result.rowcount or 0

    # --- Playback State ---

    def apply_play(
        self,
        episode_id: str,
        position: int,
        total: Optional[int],
        timestamp: int,
        origin: str,
    ) -> Optional[PlayOutcome]:
        with self._episode_locks.hold(episode_id):
            with self._get_session() as session:
                episode = session.get(Episode, episode_id)
                if episode is None:
                    return None

                outcome = PlayOutcome(episode=episode)
                position = max(0, int(position))

                if (
                    episode.duration_seconds is None
                    and total
                    and 0 < total < MAX_DURATION
                ):
                    episode.duration_seconds = total

                if _incoming_wins(
                    timestamp, origin, episode.position_timestamp, episode.position_origin
                ):
                    outcome.position_changed = episode.position != position
                    episode.position = position
                    episode.position_timestamp = timestamp
                    episode.position_origin = origin

                played = is_played(position, total or episode.duration_seconds)
                if _incoming_wins(
                    timestamp, origin, episode.played_timestamp, episode.played_origin
                ):
                    outcome.played_changed = bool(episode.played) != played
                    episode.played = played
                    episode.played_timestamp = timestamp
                    episode.played_origin = origin

                if episode.played:
                    with self._queue_lock:
                        entry = session.get(QueueEntry, episode_id)
                        if entry is not None:
                            session.delete(entry)
                            outcome.dequeued = True
                        session.commit()
                else:
                    session.commit()

                if outcome.changed:
                    logger.debug(
                        f"Applied {origin} play to {episode_id}: position={episode.position} "
                        f"played={episode.played} dequeued={outcome.dequeued}"
                    )
                return outcome

    # --- Action Log ---

    def append_action(self, **fields) -> EpisodeActionRecord:
        with self._get_session() as session:
            record = EpisodeActionRecord(**fields)
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def find_action(
        self,
        podcast_url: str,
        episode_url: Optional[str],
        kind: str,
        timestamp: int,
        position: Optional[int] = None,
    ) -> Optional[EpisodeActionRecord]:
        with self._get_session() as session:
            stmt = select(EpisodeActionRecord).where(
                EpisodeActionRecord.podcast_url == podcast_url,
                EpisodeActionRecord.kind == kind,
                EpisodeActionRecord.timestamp == timestamp,
            )
            if episode_url is None:
                stmt = stmt.where(EpisodeActionRecord.episode_url.is_(None))
            else:
                stmt = stmt.where(EpisodeActionRecord.episode_url == episode_url)
            if position is None:
                stmt = stmt.where(EpisodeActionRecord.position.is_(None))
            else:
                stmt = stmt.where(EpisodeActionRecord.position == position)
            return session.scalars(stmt.order_by(EpisodeActionRecord.seq)).first()

    def list_actions(
        self,
        after_seq: int = 0,
        origin: Optional[str] = None,
        kinds: Optional[Sequence[str]] = None,
        unpushed_only: bool = False,
        limit: Optional[int] = None,
    ) -> List[EpisodeActionRecord]:
        with self._get_session() as session:
            stmt = select(EpisodeActionRecord).where(EpisodeActionRecord.seq > after_seq)
            if origin:
                stmt = stmt.where(EpisodeActionRecord.origin == origin)
            if kinds:
                stmt = stmt.where(EpisodeActionRecord.kind.in_(list(kinds)))
            if unpushed_only:
                stmt = stmt.where(EpisodeActionRecord.pushed.is_(False))
            stmt = stmt.order_by(EpisodeActionRecord.seq)
            if limit:
                stmt = stmt.limit(limit)
            return list(session.scalars(stmt).all())

    def mark_actions_pushed(self, seqs: Iterable[int]) -> int:
        seqs = list(seqs)
        if not seqs:
            return 0
        with self._get_session() as session:
            result = session.execute(
                update(EpisodeActionRecord)
                .where(EpisodeActionRecord.seq.in_(seqs))
                .values(pushed=True)
            )
            session.commit()
            return result.rowcount or 0

    # --- Queue ---

    def queue_push(self, episode_id: str) -> bool:
        with self._episode_locks.hold(episode_id):
            with self._queue_lock:
                with self._get_session() as session:
                    episode = session.get(Episode, episode_id)
                    if episode is None or episode.played:
                        return False
                    if session.get(QueueEntry, episode_id) is not None:
                        return False
                    last = session.scalar(select(func.max(QueueEntry.position)))
                    session.add(
                        QueueEntry(
                            episode_id=episode_id,
                            position=0 if last is None else last + 1,
                        )
                    )
                    session.commit()
                    return True

    def queue_remove(self, episode_id: str) -> bool:
        with self._queue_lock:
            with self._get_session() as session:
                entry = session.get(QueueEntry, episode_id)
                if entry is None:
                    return False
                session.delete(entry)
                session.commit()
                return True

    def queue_move(self, from_index: int, to_index: int) -> bool:
        with self._queue_lock:
            with self._get_session() as session:
                entries = list(
                    session.scalars(
                        select(QueueEntry).order_by(QueueEntry.position, QueueEntry.added_at)
                    ).all()
                )
                if not (0 <= from_index < len(entries) and 0 <= to_index < len(entries)):
                    return False
                entry = entries.pop(from_index)
                entries.insert(to_index, entry)
                for index, item in enumerate(entries):
                    item.position = index
                session.commit()
                return True

    def queue_list(self) -> List[str]:
        with self._get_session() as session:
            stmt = select(QueueEntry.episode_id).order_by(
                QueueEntry.position, QueueEntry.added_at
            )
            return list(session.scalars(stmt).all())

    def queue_clear(self) -> int:
        with self._queue_lock:
            with self._get_session() as session:
                result = session.execute(delete(QueueEntry))
                session.commit()
                return result.rowcount or 0

    # --- Sync Cursor ---

    def get_sync_cursor(self, key: str) -> SyncCursor:
        with self._get_session() as session:
            cursor = session.get(SyncCursor, key)
            if cursor is None:
                cursor = SyncCursor(
                    key=key,
                    actions_since=0,
                    subscriptions_since=0,
                    last_pushed_seq=0,
                    generation=0,
                )
            return cursor

    def save_sync_cursor(
        self,
        key: str,
        actions_since: int,
        subscriptions_since: int,
        last_pushed_seq: int,
    ) -> SyncCursor:
        with self._get_session() as session:
            cursor = session.get(SyncCursor, key)
            if cursor is None:
                cursor = SyncCursor(key=key, generation=0)
                session.add(cursor)
            cursor.actions_since = actions_since
            cursor.subscriptions_since = subscriptions_since
            cursor.last_pushed_seq = last_pushed_seq
            cursor.generation = (cursor.generation or 0) + 1
            cursor.last_success_at = datetime.now(UTC)
            session.commit()
            session.refresh(cursor)
            return cursor

    # --- Connection Management ---

    def close(self) -> None:
        """
        Dispose the SQLAlchemy engine and release database connections and resources.
        """
        self.engine.dispose()
        logger.info("Database connection closed")
