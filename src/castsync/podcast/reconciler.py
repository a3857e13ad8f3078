"""Reconcile a fetched feed against the catalog.

Decides which fetched episodes are new and which existing episodes need
their metadata refreshed. Episodes missing from the fetch are flagged as
removed, never deleted, and playback or download state is never touched here.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from ..db.models import Episode, Podcast
from ..db.repository import CatalogRepositoryInterface
from .feed_parser import ParsedEpisode

logger = logging.getLogger(__name__)

# Fields a feed is allowed to overwrite on an existing episode
METADATA_FIELDS = ("title", "description", "enclosure_url", "published_date")


@dataclass
class Classification:
    """Pure diff between catalog and feed.

    Attributes:
        new: Fetched episodes with no catalog counterpart
        updated: (existing episode, changed fields) pairs
        removed: Stored episodes the feed no longer lists
    """

    new: List[ParsedEpisode] = field(default_factory=list)
    updated: List[Tuple[Episode, Dict[str, object]]] = field(default_factory=list)
    removed: List[Episode] = field(default_factory=list)


@dataclass
class ReconcileResult:
    """Persisted outcome of a reconciliation."""

    new: List[Episode] = field(default_factory=list)
    updated: List[Episode] = field(default_factory=list)
    removed: List[Episode] = field(default_factory=list)


def _fallback_match(existing: Sequence[Episode], fetched: ParsedEpisode) -> Optional[Episode]:
    """Match on at least two of title, enclosure URL and publish date."""
    for episode in existing:
        score = 0
        if episode.title == fetched.title:
            score += 1
        if episode.enclosure_url == fetched.enclosure_url:
            score += 1
        if (
            episode.published_date is not None
            and fetched.published_date is not None
            and episode.published_date == fetched.published_date
        ):
            score += 1
        if score >= 2:
            return episode
    return None


def _changed_fields(episode: Episode, fetched: ParsedEpisode) -> Dict[str, object]:
    changes = {}
    for name in METADATA_FIELDS:
        value = getattr(fetched, name)
        if name == "published_date" and value is None:
            continue
        if value != getattr(episode, name):
            changes[name] = value
    if episode.duration_seconds is None and fetched.duration_seconds:
        changes["duration_seconds"] = fetched.duration_seconds
    if fetched.enclosure_url != episode.enclosure_url and fetched.enclosure_type:
        changes["enclosure_type"] = fetched.enclosure_type
    if episode.is_removed:
        changes["is_removed"] = False
    return changes


def classify(existing: Sequence[Episode], fetched: Sequence[ParsedEpisode]) -> Classification:
    """
    Diff fetched episodes against the episodes already stored for a podcast.

    Matching order: identity (guid), enclosure URL, then two-of-three on
    title, enclosure URL and publish date. Each existing episode matches at
    most one fetched episode; unmatched ones are reported as removed.

    Parameters:
        existing (Sequence[Episode]): Episodes currently in the catalog for the podcast.
        fetched (Sequence[ParsedEpisode]): Normalized episodes from the feed fetcher.

    Returns:
        Classification: New episodes and metadata updates.
    """
    by_guid = {episode.guid: episode for episode in existing}
    by_url = {}
    for episode in existing:
        by_url.setdefault(episode.enclosure_url, episode)

    claimed = set()
    result = Classification()

    for item in fetched:
        match = by_guid.get(item.guid)
        if match is None or match.id in claimed:
            match = by_url.get(item.enclosure_url)
        if match is None or match.id in claimed:
            unclaimed = [e for e in existing if e.id not in claimed]
            match = _fallback_match(unclaimed, item)

        if match is None:
            result.new.append(item)
            continue

        claimed.add(match.id)
        changes = _changed_fields(match, item)
        if changes:
            result.updated.append((match, changes))

    # An empty fetch says nothing about which episodes went away
    if fetched:
        result.removed = [
            e for e in existing if e.id not in claimed and not e.is_removed
        ]
    return result


class Reconciler:
    """Applies feed diffs to the catalog.

    Example:
        reconciler = Reconciler(repository)
        result = reconciler.reconcile(podcast, parsed.episodes)
        print(f"{len(result.new)} new, {len(result.updated)} updated")
    """

    def __init__(self, repository: CatalogRepositoryInterface):
        self.repository = repository

    def reconcile(self, podcast: Podcast, fetched_episodes: Sequence[ParsedEpisode]) -> ReconcileResult:
        """
        Insert new episodes and refresh changed metadata for one podcast.

        Parameters:
            podcast (Podcast): The podcast the feed belongs to.
            fetched_episodes (Sequence[ParsedEpisode]): Episodes returned by the feed fetcher.

        Returns:
            ReconcileResult: Persisted new, updated and removed episodes.
        """
        existing = self.repository.list_episodes(podcast_id=podcast.id)
        classification = classify(existing, fetched_episodes)
        result = ReconcileResult()

        for item in classification.new:
            episode, created = self.repository.get_or_create_episode(
                podcast_id=podcast.id,
                guid=item.guid,
                title=item.title,
                enclosure_url=item.enclosure_url,
                enclosure_type=item.enclosure_type,
                feed_guid=item.feed_guid,
                description=item.description,
                link=item.link,
                published_date=item.published_date,
                duration_seconds=item.duration_seconds,
                explicit=item.explicit,
                enclosure_length=item.enclosure_length,
            )
            if created:
                result.new.append(episode)

        for episode, changes in classification.updated:
            updated = self.repository.update_episode(episode.id, **changes)
            if updated is not None:
                logger.debug(f"Updated {episode.title}: {', '.join(sorted(changes))}")
                result.updated.append(updated)

        for episode in classification.removed:
            removed = self.repository.update_episode(episode.id, is_removed=True)
            if removed is not None:
                result.removed.append(removed)

        logger.info(
            f"Reconciled '{podcast.title}': {len(result.new)} new, "
            f"{len(result.updated)} updated, {len(result.removed)} removed"
        )
        return result
