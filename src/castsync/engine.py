"""Command and query facade over the download and sync engine.

The UI (or the headless runner) talks to `PodcastEngine` only. It wires the
catalog, feed sync, download manager, action log, queue and the optional
gpodder sync service together, and turns user commands into catalog
changes and logged actions.
"""

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .actions.log import ActionLog
from .actions.merge import ActionMerger, ApplyOutcome
from .actions.models import ActionKind
from .config import Config
from .db.factory import create_repository_from_config
from .db.models import Episode, Podcast
from .db.repository import MAX_DURATION, CatalogRepositoryInterface
from .events import EventBus, NewEpisodesFound, QueueChanged
from .podcast.downloader import DeleteReport, DownloadManager
from .podcast.feed_parser import FeedParser
from .podcast.feed_sync import FeedSyncService
from .podcast.policy import evaluate_download_policy
from .queue_manager import QueueManager
from .sync.gpodder import GpodderClient
from .sync.service import SyncRunResult, SyncService
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


class PodcastEngine:
    """Entry point for user commands and state queries.

    Example:
        config = Config()
        with PodcastEngine(config) as engine:
            engine.start()
            engine.subscribe("https://example.com/feed.xml")
            engine.download_all(podcast_id)
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        repository: Optional[CatalogRepositoryInterface] = None,
        events: Optional[EventBus] = None,
        feed_parser: Optional[FeedParser] = None,
        download_manager: Optional[DownloadManager] = None,
        sync_client: Optional[GpodderClient] = None,
    ):
        """Build the engine and its components.

        Args:
            config: Application configuration; loaded from the environment if omitted.
            repository: Catalog repository; created from `config` if omitted.
            events: Event bus shared by all components.
            feed_parser: Feed fetcher to use instead of a default one.
            download_manager: Download manager to use instead of a default one.
            sync_client: gpodder client; created from `config` when sync is enabled.
        """
        self.config = config or Config()
        self.events = events or EventBus()
        self.repository = repository or create_repository_from_config(self.config)
        self.retry_policy = RetryPolicy.from_config(self.config)
        self.download_policy = self.config.DOWNLOAD_NEW_EPISODES

        self.action_log = ActionLog(self.repository, device=self.config.SYNC_DEVICE_ID)
        self.merger = ActionMerger(self.repository, events=self.events)
        self.queue = QueueManager(self.repository, events=self.events)

        self.feed_parser = feed_parser or FeedParser(
            timeout=self.config.FEED_TIMEOUT,
            connect_timeout=self.config.CONNECT_TIMEOUT,
            retry_policy=self.retry_policy,
        )
        self.feed_sync = FeedSyncService(
            self.repository,
            download_directory=self.config.DOWNLOAD_PATH,
            feed_parser=self.feed_parser,
            action_log=self.action_log,
        )
        self.downloads = download_manager or DownloadManager(
            repository=self.repository,
            download_directory=self.config.DOWNLOAD_PATH,
            simultaneous_downloads=self.config.SIMULTANEOUS_DOWNLOADS,
            retry_policy=self.retry_policy,
            timeout=self.config.DOWNLOAD_TIMEOUT,
            connect_timeout=self.config.CONNECT_TIMEOUT,
            chunk_size=self.config.DOWNLOAD_CHUNK_SIZE,
            action_log=self.action_log,
            events=self.events,
        )

        self.sync_service: Optional[SyncService] = None
        if sync_client is not None or self.config.SYNC_ENABLED:
            self.sync_service = self._create_sync_service(sync_client)

        self._prompts_lock = threading.Lock()
        self._pending_prompts: Dict[str, List[Tuple[str, bool]]] = {}

    def _create_sync_service(self, client: Optional[GpodderClient]) -> SyncService:
        if client is None:
            self.config.validate_sync()
            client = GpodderClient(
                server=self.config.SYNC_SERVER,
                username=self.config.SYNC_USERNAME,
                password=self.config.resolve_sync_password(),
                device_id=self.config.SYNC_DEVICE_ID,
                timeout=self.config.SYNC_TIMEOUT,
                retry_policy=self.retry_policy,
            )
        return SyncService(
            self.repository,
            client,
            self.action_log,
            self.merger,
            events=self.events,
            batch_size=self.config.SYNC_BATCH_SIZE,
        )

    # --- Lifecycle ---

    def start(self) -> Dict[str, Any]:
        """
        Recover download state and, when `SYNC_ON_START` is set, refresh feeds and sync with the server.

        Returns:
            dict: `recovery` counts, plus `feeds` and `sync` results when they ran.
        """
        summary: Dict[str, Any] = {"recovery": self.downloads.recover(), "feeds": None, "sync": None}
        if self.config.SYNC_ON_START:
            summary["feeds"] = self.sync_all()
            if self.sync_service is not None:
                summary["sync"] = self.sync_server()
        return summary

    def close(self) -> None:
        self.downloads.close()
        self.feed_parser.close()
        if self.sync_service is not None:
            self.sync_service.client.close()
        self.repository.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # --- Subscriptions ---

    def subscribe(self, feed_url: str) -> Dict[str, Any]:
        """Subscribe to a feed. Episodes of a fresh subscription are not offered for download."""
        return self.feed_sync.add_podcast_from_url(feed_url.strip())

    def subscribe_many(self, feed_urls: Iterable[str]) -> List[Dict[str, Any]]:
        """Bulk subscribe, as used by OPML import."""
        return [self.subscribe(url) for url in feed_urls if url and url.strip()]

    def unsubscribe(self, podcast_id: str, delete_files: bool = False) -> bool:
        """
        Tombstone a podcast and record the unsubscription for the sync server.

        Running downloads of the podcast are cancelled. With `delete_files`,
        downloaded episodes are removed from disk as well.
        """
        podcast = self.repository.get_podcast(podcast_id)
        if podcast is None or podcast.is_deleted:
            return False

        for episode in self.repository.list_episodes(podcast_id=podcast_id):
            self.downloads.cancel(episode.id)
        if delete_files:
            report = self.downloads.delete_all_downloads(podcast_id)
            if not report.success:
                logger.warning(
                    f"Could not delete {len(report.errors)} files of '{podcast.title}'"
                )

        self.repository.tombstone_podcast(podcast_id)
        self.action_log.record(ActionKind.UNSUBSCRIBE, podcast.feed_url)
        with self._prompts_lock:
            self._pending_prompts.pop(podcast_id, None)
        self.events.publish(QueueChanged(tuple(self.queue.list())))
        logger.info(f"Unsubscribed from '{podcast.title}'")
        return True

    # --- Feed refresh ---

    def sync_podcast(self, podcast_id: str) -> Dict[str, Any]:
        """Refresh one feed and apply the download policy to its new episodes."""
        podcast = self.repository.get_podcast(podcast_id)
        first_fetch = podcast is not None and podcast.needs_refresh
        result = self.feed_sync.sync_podcast(podcast_id)
        if not result["error"] and not first_fetch:
            self._handle_new_episodes(podcast_id, result["new_episode_ids"])
        return result

    def sync_all(self) -> Dict[str, Any]:
        """Refresh every subscribed feed. See `FeedSyncService.sync_all_podcasts`."""
        first_fetch = {p.id for p in self.repository.list_podcasts() if p.needs_refresh}
        overall = self.feed_sync.sync_all_podcasts()
        for result in overall["results"]:
            if not result["error"] and result["podcast_id"] not in first_fetch:
                self._handle_new_episodes(result["podcast_id"], result["new_episode_ids"])
        return overall

    def _handle_new_episodes(self, podcast_id: str, episode_ids: List[str]) -> None:
        if not episode_ids:
            return
        episodes = [e for e in (self.repository.get_episode(i) for i in episode_ids) if e]
        decision = evaluate_download_policy(self.download_policy, episodes)
        if decision.auto:
            self.downloads.enqueue_many(decision.auto)
        if decision.needs_prompt:
            with self._prompts_lock:
                known = dict(self._pending_prompts.get(podcast_id, []))
                known.update(decision.prompt)
                self._pending_prompts[podcast_id] = list(known.items())
            self.events.publish(NewEpisodesFound(podcast_id, tuple(decision.prompt)))

    def pending_download_prompts(self) -> Dict[str, List[Tuple[str, bool]]]:
        """New episodes awaiting a download decision, per podcast."""
        with self._prompts_lock:
            return {key: list(value) for key, value in self._pending_prompts.items()}

    def resolve_download_prompt(self, podcast_id: str, selected: Iterable[str]) -> List[str]:
        """Download the episodes the user picked from a prompt and drop the prompt."""
        with self._prompts_lock:
            offered = {episode_id for episode_id, _ in self._pending_prompts.pop(podcast_id, [])}
        return self.downloads.enqueue_many([i for i in selected if i in offered])

    # --- Server sync ---

    def sync_server(self) -> Optional[SyncRunResult]:
        """
        Run one sync with the gpodder server, then fetch podcasts it added.

        Returns:
            SyncRunResult or None when sync is not configured.

        Raises:
            SyncInProgressError: If a sync run is already in progress.
        """
        if self.sync_service is None:
            logger.warning("Server sync requested but sync is not configured")
            return None

        result = self.sync_service.run()
        if result.success:
            for podcast in self.repository.list_podcasts():
                if podcast.needs_refresh:
                    self.sync_podcast(podcast.id)
        return result

    @property
    def last_sync_result(self) -> Optional[SyncRunResult]:
        return self.sync_service.last_result if self.sync_service else None

    # --- Downloads ---

    def download(self, episode_id: str) -> bool:
        return self.downloads.enqueue(episode_id)

    def download_all(self, podcast_id: str) -> List[str]:
        return self.downloads.download_all(podcast_id)

    def cancel_download(self, episode_id: str) -> bool:
        return self.downloads.cancel(episode_id)

    def delete_download(self, episode_id: str) -> bool:
        return self.downloads.delete_download(episode_id)

    def delete_all_downloads(self, podcast_id: Optional[str] = None) -> DeleteReport:
        return self.downloads.delete_all_downloads(podcast_id)

    def download_progress(self, episode_id: Optional[str] = None):
        """Progress of one running download, or of all of them keyed by episode id."""
        if episode_id is not None:
            return self.downloads.get_progress(episode_id)
        return self.downloads.all_progress()

    # --- Playback state ---

    def mark_played(self, episode_id: str, played: bool = True) -> Optional[ApplyOutcome]:
        """
        Mark an episode played or unplayed.

        Played sets the position to the end of the episode; unplayed rewinds it
        to the start. An unknown duration is sent as a very long one so the
        server still sees a play action.

        Returns:
            ApplyOutcome, or None when the episode does not exist.
        """
        episode = self.repository.get_episode(episode_id)
        if episode is None:
            return None
        total = episode.duration_seconds or MAX_DURATION
        position = total if played else 0
        return self._record_play(episode, position, total)

    def mark_all_played(self, podcast_id: str, played: bool = True) -> int:
        """Mark every episode of a podcast. Returns the number of episodes that changed."""
        changed = 0
        for episode in self.repository.list_episodes(podcast_id=podcast_id):
            if bool(episode.played) == played:
                continue
            outcome = self.mark_played(episode.id, played)
            if outcome is not None and outcome.changed:
                changed += 1
        return changed

    def update_position(self, episode_id: str, position: int) -> Optional[ApplyOutcome]:
        """Record a playback position reported by the player."""
        episode = self.repository.get_episode(episode_id)
        if episode is None:
            return None
        total = episode.duration_seconds or MAX_DURATION
        return self._record_play(episode, max(0, int(position)), total)

    def _record_play(self, episode: Episode, position: int, total: int) -> Optional[ApplyOutcome]:
        action = self.action_log.record_for_episode(
            episode, ActionKind.PLAY, position=position, total=total, started=0
        )
        if action is None:
            return None
        return self.merger.apply(action)

    # --- Queue ---

    def enqueue(self, episode_id: str) -> bool:
        return self.queue.push(episode_id)

    def dequeue(self, episode_id: str) -> bool:
        return self.queue.remove(episode_id)

    def reorder(self, from_index: int, to_index: int) -> bool:
        return self.queue.reorder(from_index, to_index)

    def queue_list(self) -> List[str]:
        return self.queue.list()

    # --- Queries ---

    def list_podcasts(self, include_deleted: bool = False) -> List[Podcast]:
        return self.repository.list_podcasts(include_deleted=include_deleted)

    def list_subscriptions(self) -> List[str]:
        """Feed URLs of all subscribed podcasts, as used by OPML export."""
        return [podcast.feed_url for podcast in self.repository.list_podcasts()]

    def list_episodes(self, podcast_id: str, include_removed: bool = True) -> List[Episode]:
        return self.repository.list_episodes(
            podcast_id=podcast_id, include_removed=include_removed
        )

    def get_episode(self, episode_id: str) -> Optional[Episode]:
        return self.repository.get_episode(episode_id)
