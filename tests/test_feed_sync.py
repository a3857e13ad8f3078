"""Tests for feed sync service."""

import os
from unittest.mock import Mock

import pytest
from conftest import FEED_URL, parsed_feed

from castsync.actions import ActionKind, ActionLog
from castsync.errors import FetchError
from castsync.podcast.feed_sync import FeedSyncService


@pytest.fixture
def feed_parser():
    parser = Mock()
    parser.fetch.return_value = parsed_feed()
    return parser


@pytest.fixture
def action_log(repository):
    return ActionLog(repository, device="test-device")


@pytest.fixture
def sync_service(repository, feed_parser, action_log, tmp_path):
    return FeedSyncService(
        repository=repository,
        download_directory=str(tmp_path / "podcasts"),
        feed_parser=feed_parser,
        action_log=action_log,
    )


class TestFeedSyncService:
    """Tests for FeedSyncService class."""

    def test_init_no_download_directory(self):
        service = FeedSyncService(repository=Mock())

        assert service.download_directory is None
        assert service.feed_parser is not None

    def test_sync_podcast_not_found(self):
        mock_repository = Mock()
        mock_repository.get_podcast.return_value = None
        service = FeedSyncService(repository=mock_repository, feed_parser=Mock())

        result = service.sync_podcast("nonexistent-id")

        assert result["error"] == "Podcast not found: nonexistent-id"
        assert result["new_episodes"] == 0

    def test_sync_podcast(self, sync_service, repository, podcast, tmp_path):
        result = sync_service.sync_podcast(podcast.id)

        assert result["error"] is None
        assert result["new_episodes"] == 2
        assert len(result["new_episode_ids"]) == 2

        stored = repository.get_podcast(podcast.id)
        assert stored.description == "Fresh description"
        assert stored.last_checked is not None
        assert stored.local_directory == os.path.join(str(tmp_path / "podcasts"), "Test_Podcast")

    def test_second_sync_finds_nothing_new(self, sync_service, podcast):
        sync_service.sync_podcast(podcast.id)

        result = sync_service.sync_podcast(podcast.id)

        assert result["new_episodes"] == 0
        assert result["updated_episodes"] == 0

    def test_sync_clears_needs_refresh(self, sync_service, repository):
        placeholder = repository.create_podcast(feed_url=FEED_URL, title=FEED_URL, needs_refresh=True)

        sync_service.sync_podcast(placeholder.id)

        stored = repository.get_podcast(placeholder.id)
        assert stored.needs_refresh is False
        assert stored.title == "Test Podcast"

    def test_sync_podcast_fetch_error(self, sync_service, feed_parser, repository, podcast):
        feed_parser.fetch.side_effect = FetchError(FetchError.TIMEOUT, "timed out")

        result = sync_service.sync_podcast(podcast.id)

        assert result["error"] == "timed out"
        assert result["error_kind"] == FetchError.TIMEOUT
        assert repository.get_podcast(podcast.id).last_checked is None

    def test_sync_unsubscribed_podcast(self, sync_service, feed_parser, repository, podcast):
        repository.tombstone_podcast(podcast.id)

        result = sync_service.sync_podcast(podcast.id)

        assert "unsubscribed" in result["error"]
        feed_parser.fetch.assert_not_called()

    def test_sync_all_podcasts_counts_failures(self, sync_service, feed_parser, repository, podcast):
        other = repository.create_podcast(feed_url="https://other.example.com/feed.xml", title="Other")

        def fetch(url):
            if url == other.feed_url:
                raise FetchError(FetchError.HTTP, "HTTP 404", status=404)
            return parsed_feed()

        feed_parser.fetch.side_effect = fetch

        result = sync_service.sync_all_podcasts()

        assert result["synced"] == 1
        assert result["failed"] == 1
        assert result["new_episodes"] == 2
        assert len(result["results"]) == 2


class TestAddPodcast:
    """Tests for subscribing to new feeds."""

    def test_add_podcast_from_url(self, sync_service, repository, action_log):
        result = sync_service.add_podcast_from_url(FEED_URL)

        assert result["error"] is None
        assert result["title"] == "Test Podcast"
        assert result["episodes"] == 2
        podcast = repository.get_podcast(result["podcast_id"])
        assert podcast.feed_url == FEED_URL
        assert [a.kind for a in action_log.replay()] == [ActionKind.SUBSCRIBE]

    def test_add_existing_podcast(self, sync_service, podcast, action_log):
        result = sync_service.add_podcast_from_url(FEED_URL)

        assert "already exists" in result["error"]
        assert result["podcast_id"] == podcast.id
        assert list(action_log.replay()) == []

    def test_add_restores_tombstoned_podcast(self, sync_service, repository, podcast, action_log):
        repository.tombstone_podcast(podcast.id)

        result = sync_service.add_podcast_from_url(FEED_URL)

        assert result["restored"] is True
        assert result["podcast_id"] == podcast.id
        assert repository.get_podcast(podcast.id).is_deleted is False
        assert len(repository.list_podcasts(include_deleted=True)) == 1
        assert [a.kind for a in action_log.replay()] == [ActionKind.SUBSCRIBE]

    def test_add_podcast_fetch_failure(self, sync_service, feed_parser, repository, action_log):
        feed_parser.fetch.side_effect = FetchError(FetchError.MALFORMED, "not a feed")

        result = sync_service.add_podcast_from_url(FEED_URL)

        assert result["podcast_id"] is None
        assert "not a feed" in result["error"]
        assert repository.list_podcasts() == []
        assert list(action_log.replay()) == []
