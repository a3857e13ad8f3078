"""Feed synchronization service for podcast updates.

Fetches feeds, reconciles them against the catalog and keeps podcast
metadata current.
"""

import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional

from ..actions.log import ActionLog
from ..actions.models import ActionKind
from ..db.repository import CatalogRepositoryInterface
from ..errors import FetchError
from ..utils.filenames import sanitize_filename
from .feed_parser import FeedParser, ParsedPodcast
from .reconciler import Reconciler

logger = logging.getLogger(__name__)


class FeedSyncService:
    """Service for synchronizing podcast feeds with the catalog.

    Example:
        sync_service = FeedSyncService(repository)
        result = sync_service.sync_podcast(podcast_id)
        print(f"New episodes: {result['new_episodes']}")
    """

    def __init__(
        self,
        repository: CatalogRepositoryInterface,
        download_directory: Optional[str] = None,
        feed_parser: Optional[FeedParser] = None,
        reconciler: Optional[Reconciler] = None,
        action_log: Optional[ActionLog] = None,
    ):
        """
        Create a FeedSyncService that synchronizes podcast feeds with the given repository.

        Parameters:
            download_directory (Optional[str]): Base directory for podcast download folders.
                If `None`, podcasts get no fixed local directory.
            feed_parser (Optional[FeedParser]): Fetcher to use; a default one is created if omitted.
            reconciler (Optional[Reconciler]): Reconciler to use; a default one is created if omitted.
            action_log (Optional[ActionLog]): Where subscribe actions are recorded.
        """
        self.repository = repository
        self.download_directory = download_directory
        self.feed_parser = feed_parser or FeedParser()
        self.reconciler = reconciler or Reconciler(repository)
        self.action_log = action_log

    def sync_podcast(self, podcast_id: str) -> Dict[str, Any]:
        """
        Sync a single podcast by fetching its feed, updating metadata, and reconciling episodes.

        Parameters:
            podcast_id (str): Identifier of the podcast to synchronize.

        Returns:
            result (dict): Synchronization outcome containing:
                - podcast_id (str): The podcast identifier.
                - new_episodes (int): Number of new episodes added.
                - new_episode_ids (list): Ids of the new episodes, in display order.
                - updated_episodes (int): Number of episodes whose metadata changed.
                - removed_episodes (int): Number of episodes no longer listed in the feed.
                - error (str|None): Error message if the sync failed, `None` on success.
                - error_kind (str|None): FetchError kind for fetch failures.
        """
        result = {
            "podcast_id": podcast_id,
            "new_episodes": 0,
            "new_episode_ids": [],
            "updated_episodes": 0,
            "removed_episodes": 0,
            "error": None,
            "error_kind": None,
        }

        podcast = self.repository.get_podcast(podcast_id)
        if not podcast:
            result["error"] = f"Podcast not found: {podcast_id}"
            return result
        if podcast.is_deleted:
            result["error"] = f"Podcast is unsubscribed: {podcast.title}"
            return result

        logger.info(f"Syncing podcast: {podcast.title}")

        try:
            parsed = self.feed_parser.fetch(podcast.feed_url)
            podcast = self._update_podcast_metadata(podcast, parsed)

            reconciled = self.reconciler.reconcile(podcast, parsed.episodes)
            result["new_episodes"] = len(reconciled.new)
            result["new_episode_ids"] = [episode.id for episode in reconciled.new]
            result["updated_episodes"] = len(reconciled.updated)
            result["removed_episodes"] = len(reconciled.removed)

            self.repository.update_podcast(podcast_id, last_checked=datetime.utcnow())

            logger.info(
                f"Sync complete for '{podcast.title}': {len(reconciled.new)} new episodes"
            )

        except FetchError as e:
            logger.error(f"Failed to fetch feed for {podcast.title}: {e}")
            result["error"] = str(e)
            result["error_kind"] = e.kind
        except Exception as e:
            logger.error(f"Failed to sync podcast {podcast.title}: {e}")
            result["error"] = str(e)

        return result

    def sync_all_podcasts(self) -> Dict[str, Any]:
        """
        Synchronize every subscribed podcast.

        Returns:
            overall_result (dict): Aggregated sync results with keys:
                - synced (int): Number of podcasts successfully synced.
                - failed (int): Number of podcasts that failed to sync.
                - new_episodes (int): Total number of new episodes added across all podcasts.
                - results (list): Per-podcast result dictionaries returned by `sync_podcast`.
        """
        podcasts = self.repository.list_podcasts()

        overall_result = {
            "synced": 0,
            "failed": 0,
            "new_episodes": 0,
            "results": [],
        }

        for podcast in podcasts:
            result = self.sync_podcast(podcast.id)
            overall_result["results"].append(result)

            if result["error"]:
                overall_result["failed"] += 1
            else:
                overall_result["synced"] += 1
                overall_result["new_episodes"] += result["new_episodes"]

        logger.info(
            f"Sync complete: {overall_result['synced']} synced, "
            f"{overall_result['failed']} failed, "
            f"{overall_result['new_episodes']} new episodes"
        )

        return overall_result

    def add_podcast_from_url(self, feed_url: str) -> Dict[str, Any]:
        """
        Subscribe to a feed: fetch it, create the podcast and its episodes, and record the subscription.

        A tombstoned podcast with the same feed URL is restored instead of duplicated.

        Parameters:
            feed_url (str): URL of the podcast feed.

        Returns:
            dict: Result dictionary containing:
                - podcast_id: ID of the created, restored or existing podcast, or `None` on failure.
                - title: Podcast title, or `None` on failure.
                - episodes: Number of episodes added.
                - new_episode_ids: Ids of the added episodes.
                - restored: `True` if a tombstoned subscription was brought back.
                - error: Error message if the operation failed, `None` otherwise.
        """
        result = {
            "podcast_id": None,
            "title": None,
            "episodes": 0,
            "new_episode_ids": [],
            "restored": False,
            "error": None,
        }

        existing = self.repository.get_podcast_by_feed_url(feed_url)
        if existing and not existing.is_deleted:
            result["error"] = f"Podcast already exists: {existing.title}"
            result["podcast_id"] = existing.id
            result["title"] = existing.title
            return result

        if existing:
            self.repository.restore_podcast(existing.id)
            self._record_subscription(feed_url)
            synced = self.sync_podcast(existing.id)
            result.update(
                podcast_id=existing.id,
                title=existing.title,
                episodes=synced["new_episodes"],
                new_episode_ids=synced["new_episode_ids"],
                restored=True,
                error=synced["error"],
            )
            return result

        try:
            parsed = self.feed_parser.fetch(feed_url)

            podcast = self.repository.create_podcast(
                feed_url=feed_url,
                title=parsed.title,
                description=parsed.description,
                website_url=parsed.website_url,
                author=parsed.author,
                explicit=parsed.explicit,
                image_url=parsed.image_url,
                local_directory=self._get_podcast_directory(parsed.title),
                last_checked=datetime.utcnow(),
            )
            result["podcast_id"] = podcast.id
            result["title"] = podcast.title

            reconciled = self.reconciler.reconcile(podcast, parsed.episodes)
            result["episodes"] = len(reconciled.new)
            result["new_episode_ids"] = [episode.id for episode in reconciled.new]

            self._record_subscription(feed_url)
            logger.info(f"Added podcast '{podcast.title}' with {len(reconciled.new)} episodes")

        except Exception as e:
            logger.error(f"Failed to add podcast from {feed_url}: {e}")
            result["error"] = str(e)

        return result

    def _record_subscription(self, feed_url: str) -> None:
        if self.action_log is not None:
            self.action_log.record(ActionKind.SUBSCRIBE, feed_url)

    def _update_podcast_metadata(self, podcast, parsed: ParsedPodcast):
        """
        Update a podcast's stored metadata using values from a parsed feed.

        Only fields present in the parsed feed that differ from the current values are applied.
        A placeholder podcast added from a remote subscription loses its `needs_refresh` flag.

        Returns:
            The updated podcast, or the original one when nothing changed.
        """
        updates = {}

        if parsed.title and parsed.title != podcast.title:
            updates["title"] = parsed.title
        if parsed.description and parsed.description != podcast.description:
            updates["description"] = parsed.description
        if parsed.website_url and parsed.website_url != podcast.website_url:
            updates["website_url"] = parsed.website_url
        if parsed.author and parsed.author != podcast.author:
            updates["author"] = parsed.author
        if parsed.explicit is not None and parsed.explicit != podcast.explicit:
            updates["explicit"] = parsed.explicit
        if parsed.image_url and parsed.image_url != podcast.image_url:
            updates["image_url"] = parsed.image_url
        if podcast.needs_refresh:
            updates["needs_refresh"] = False
        if not podcast.local_directory and self.download_directory:
            updates["local_directory"] = self._get_podcast_directory(parsed.title or podcast.title)

        if updates:
            logger.debug(f"Updated podcast metadata: {sorted(updates)}")
            return self.repository.update_podcast(podcast.id, **updates) or podcast
        return podcast

    def _get_podcast_directory(self, title: str) -> Optional[str]:
        """
        Return the directory for a podcast's downloads, or `None` if no download directory is configured.
        """
        if not self.download_directory:
            return None
        return os.path.join(self.download_directory, sanitize_filename(title, fallback="podcast"))
