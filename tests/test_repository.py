"""Tests for the catalog repository."""

import threading
from datetime import datetime

import pytest

from castsync.db.models import ActionOrigin, DownloadStatus, is_played
from castsync.db.repository import MAX_DURATION

from conftest import FEED_URL


class TestPodcastOperations:
    """Tests for podcast CRUD and tombstones."""

    def test_create_podcast(self, repository):
        """Test creating a podcast."""
        podcast = repository.create_podcast(
            feed_url="https://example.com/other.xml",
            title="Other Podcast",
        )

        assert podcast.id is not None
        assert podcast.is_deleted is False
        assert podcast.needs_refresh is False

    def test_get_podcast_by_feed_url(self, repository, podcast):
        """Test getting a podcast by feed URL."""
        retrieved = repository.get_podcast_by_feed_url(FEED_URL)

        assert retrieved is not None
        assert retrieved.id == podcast.id

    def test_get_nonexistent_podcast(self, repository):
        assert repository.get_podcast("nonexistent-id") is None

    def test_tombstone_hides_podcast_from_listing(self, repository, podcast):
        """Tombstoned podcasts stay in the database but are not listed by default."""
        repository.tombstone_podcast(podcast.id)

        assert repository.list_podcasts() == []
        all_podcasts = repository.list_podcasts(include_deleted=True)
        assert [p.id for p in all_podcasts] == [podcast.id]
        assert all_podcasts[0].is_deleted is True
        assert all_podcasts[0].deleted_at is not None

    def test_tombstone_removes_episodes_from_queue(self, repository, podcast, make_episode):
        """Test that unsubscribing drops the podcast's episodes from the queue."""
        other = repository.create_podcast(feed_url="https://example.com/b.xml", title="B")
        mine = make_episode()
        theirs = repository.create_episode(
            podcast_id=other.id,
            guid="b-1",
            title="B1",
            enclosure_url="https://example.com/b1.mp3",
            enclosure_type="audio/mpeg",
        )
        repository.queue_push(mine.id)
        repository.queue_push(theirs.id)

        repository.tombstone_podcast(podcast.id)

        assert repository.queue_list() == [theirs.id]

    def test_restore_podcast(self, repository, podcast):
        repository.tombstone_podcast(podcast.id)
        restored = repository.restore_podcast(podcast.id)

        assert restored.is_deleted is False
        assert restored.deleted_at is None
        assert len(repository.list_podcasts()) == 1


class TestEpisodeOperations:
    """Tests for episode lookups and ordering."""

    def test_get_or_create_episode_is_idempotent(self, repository, podcast):
        """Test that the same guid never creates a second episode."""
        first, created = repository.get_or_create_episode(
            podcast_id=podcast.id,
            guid="g-1",
            title="One",
            enclosure_url="https://example.com/1.mp3",
            enclosure_type="audio/mpeg",
        )
        second, created_again = repository.get_or_create_episode(
            podcast_id=podcast.id,
            guid="g-1",
            title="One (again)",
            enclosure_url="https://example.com/1.mp3",
            enclosure_type="audio/mpeg",
        )

        assert created is True
        assert created_again is False
        assert second.id == first.id
        assert second.title == "One"

    def test_new_episode_defaults(self, make_episode):
        episode = make_episode()

        assert episode.download_status == DownloadStatus.NOT_DOWNLOADED
        assert episode.played is False
        assert episode.position == 0
        assert episode.is_removed is False

    def test_find_episode_by_enclosure_url(self, repository, make_episode):
        episode = make_episode(enclosure_url="https://cdn.example.com/a.mp3")

        found = repository.find_episode(FEED_URL, episode_url="https://cdn.example.com/a.mp3")

        assert found is not None
        assert found.id == episode.id

    def test_find_episode_by_feed_guid(self, repository, make_episode):
        episode = make_episode(feed_guid="urn:uuid:1234")

        found = repository.find_episode(FEED_URL, guid="urn:uuid:1234")

        assert found.id == episode.id

    def test_find_episode_requires_matching_podcast(self, repository, make_episode):
        make_episode(enclosure_url="https://cdn.example.com/a.mp3")

        found = repository.find_episode(
            "https://elsewhere.example.com/feed.xml",
            episode_url="https://cdn.example.com/a.mp3",
        )

        assert found is None

    def test_list_episodes_newest_first_undated_last(self, repository, podcast, make_episode):
        """Test the ordering key: publish date descending, undated episodes last."""
        old = make_episode(published_date=datetime(2023, 1, 1))
        undated = make_episode(published_date=None)
        new = make_episode(published_date=datetime(2024, 6, 1))

        ids = [e.id for e in repository.list_episodes(podcast_id=podcast.id)]

        assert ids == [new.id, old.id, undated.id]

    def test_list_episodes_excludes_removed(self, repository, podcast, make_episode):
        kept = make_episode()
        make_episode(is_removed=True)

        ids = [e.id for e in repository.list_episodes(podcast_id=podcast.id, include_removed=False)]

        assert ids == [kept.id]


class TestDownloadState:
    """Tests for compare-and-set download transitions."""

    def test_claim_download(self, repository, make_episode):
        """Test that an episode can only be claimed once."""
        episode = make_episode()

        assert repository.claim_download(episode.id) is True
        assert repository.claim_download(episode.id) is False
        assert repository.get_episode(episode.id).download_status == DownloadStatus.QUEUED

    def test_claim_unknown_episode(self, repository):
        assert repository.claim_download("missing") is False

    def test_failed_episode_can_be_claimed_again(self, repository, make_episode):
        episode = make_episode()
        repository.claim_download(episode.id)
        repository.mark_download_started(episode.id)
        repository.mark_download_failed(episode.id, "boom")

        assert repository.get_episode(episode.id).download_error == "boom"
        assert repository.claim_download(episode.id) is True
        assert repository.get_episode(episode.id).download_error is None

    def test_concurrent_claims_have_one_winner(self, repository, make_episode):
        """Test that racing workers never both own the same episode."""
        episode = make_episode()
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def claim():
            barrier.wait()
            won = repository.claim_download(episode.id)
            with lock:
                results.append(won)

        threads = [threading.Thread(target=claim) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1

    def test_complete_requires_downloading(self, repository, make_episode):
        episode = make_episode()
        repository.claim_download(episode.id)

        assert repository.mark_download_complete(episode.id, "/tmp/x.mp3", 10) is False

        repository.mark_download_started(episode.id)
        assert repository.mark_download_complete(episode.id, "/tmp/x.mp3", 10) is True

        stored = repository.get_episode(episode.id)
        assert stored.download_status == DownloadStatus.DOWNLOADED
        assert stored.local_file_path == "/tmp/x.mp3"
        assert stored.file_size_bytes == 10
        assert stored.downloaded_at is not None

    def test_stale_claim_cannot_take_over_a_new_claim(self, repository, make_episode):
        """Test that a cancelled job's token no longer moves the episode."""
        episode = make_episode()
        repository.claim_download(episode.id, claim="old-job")
        repository.reset_download(episode.id)
        repository.claim_download(episode.id, claim="new-job")

        assert repository.mark_download_started(episode.id, claim="old-job") is False
        assert repository.mark_download_failed(episode.id, "late", claim="old-job") is False
        assert repository.mark_download_started(episode.id, claim="new-job") is True
        assert repository.mark_download_complete(episode.id, "/tmp/x.mp3", 10, claim="old-job") is False
        assert repository.mark_download_complete(episode.id, "/tmp/x.mp3", 10, claim="new-job") is True

        stored = repository.get_episode(episode.id)
        assert stored.download_status == DownloadStatus.DOWNLOADED
        assert stored.download_claim is None

    def test_reset_clears_claim(self, repository, make_episode):
        episode = make_episode()
        repository.claim_download(episode.id, claim="job")

        repository.reset_download(episode.id)

        assert repository.get_episode(episode.id).download_claim is None

    def test_reset_download_reports_previous_state(self, repository, make_episode):
        episode = make_episode()
        repository.claim_download(episode.id)
        repository.mark_download_started(episode.id)
        repository.mark_download_complete(episode.id, "/tmp/x.mp3", 10)

        reset = repository.reset_download(episode.id)

        assert reset.previous_status == DownloadStatus.DOWNLOADED
        assert reset.local_file_path == "/tmp/x.mp3"
        stored = repository.get_episode(episode.id)
        assert stored.download_status == DownloadStatus.NOT_DOWNLOADED
        assert stored.local_file_path is None

    def test_reset_stale_downloads(self, repository, make_episode):
        queued = make_episode()
        downloading = make_episode()
        idle = make_episode()
        repository.claim_download(queued.id)
        repository.claim_download(downloading.id)
        repository.mark_download_started(downloading.id)

        assert repository.reset_stale_downloads() == 2
        for episode in (queued, downloading, idle):
            assert repository.get_episode(episode.id).download_status == DownloadStatus.NOT_DOWNLOADED


class TestApplyPlay:
    """Tests for last-writer-wins playback merging."""

    def test_is_played_threshold(self):
        assert is_played(99, 100) is True
        assert is_played(98, 100) is False
        assert is_played(100, None) is False
        assert is_played(0, 0) is False

    def test_newer_position_wins(self, repository, make_episode):
        episode = make_episode(duration_seconds=1000)

        repository.apply_play(episode.id, 100, 1000, timestamp=10, origin=ActionOrigin.LOCAL)
        outcome = repository.apply_play(episode.id, 50, 1000, timestamp=5, origin=ActionOrigin.REMOTE)

        assert outcome.changed is False
        assert repository.get_episode(episode.id).position == 100

    def test_equal_timestamp_local_beats_remote(self, repository, make_episode):
        episode = make_episode(duration_seconds=1000)

        repository.apply_play(episode.id, 100, 1000, timestamp=10, origin=ActionOrigin.LOCAL)
        repository.apply_play(episode.id, 300, 1000, timestamp=10, origin=ActionOrigin.REMOTE)
        assert repository.get_episode(episode.id).position == 100

    def test_equal_timestamp_remote_loses_even_when_first(self, repository, make_episode):
        episode = make_episode(duration_seconds=1000)

        repository.apply_play(episode.id, 300, 1000, timestamp=10, origin=ActionOrigin.REMOTE)
        repository.apply_play(episode.id, 100, 1000, timestamp=10, origin=ActionOrigin.LOCAL)
        assert repository.get_episode(episode.id).position == 100

    def test_replay_is_idempotent(self, repository, make_episode):
        """Test that applying the same play twice gives the same record."""
        episode = make_episode(duration_seconds=1000)

        repository.apply_play(episode.id, 420, 1000, timestamp=7, origin=ActionOrigin.REMOTE)
        first = repository.get_episode(episode.id)
        outcome = repository.apply_play(episode.id, 420, 1000, timestamp=7, origin=ActionOrigin.REMOTE)
        second = repository.get_episode(episode.id)

        assert outcome.changed is False
        for attr in ("position", "played", "position_timestamp", "position_origin",
                     "played_timestamp", "played_origin"):
            assert getattr(second, attr) == getattr(first, attr)

    def test_played_transition_dequeues(self, repository, make_episode):
        """Test that an episode becoming played leaves the queue in the same step."""
        episode = make_episode(duration_seconds=100)
        repository.queue_push(episode.id)

        outcome = repository.apply_play(episode.id, 100, 100, timestamp=5, origin=ActionOrigin.LOCAL)

        assert outcome.played_changed is True
        assert outcome.dequeued is True
        assert repository.queue_list() == []

    def test_duration_learned_from_total(self, repository, make_episode):
        episode = make_episode(duration_seconds=None)

        repository.apply_play(episode.id, 10, 1800, timestamp=1, origin=ActionOrigin.REMOTE)

        assert repository.get_episode(episode.id).duration_seconds == 1800

    def test_placeholder_total_is_not_a_duration(self, repository, make_episode):
        episode = make_episode(duration_seconds=None)

        repository.apply_play(episode.id, 10, MAX_DURATION, timestamp=1, origin=ActionOrigin.REMOTE)

        assert repository.get_episode(episode.id).duration_seconds is None

    def test_unknown_episode(self, repository):
        assert repository.apply_play("missing", 1, 2, timestamp=1, origin=ActionOrigin.LOCAL) is None


class TestQueue:
    """Tests for the persisted queue."""

    def test_push_is_idempotent(self, repository, make_episode):
        """Test that enqueuing a queued episode changes neither length nor order."""
        a, b = make_episode(), make_episode()
        repository.queue_push(a.id)
        repository.queue_push(b.id)

        assert repository.queue_push(a.id) is False
        assert repository.queue_list() == [a.id, b.id]

    def test_push_rejects_played(self, repository, make_episode):
        episode = make_episode(played=True)

        assert repository.queue_push(episode.id) is False
        assert repository.queue_list() == []

    def test_move(self, repository, make_episode):
        a, b, c = make_episode(), make_episode(), make_episode()
        for e in (a, b, c):
            repository.queue_push(e.id)

        assert repository.queue_move(2, 0) is True
        assert repository.queue_list() == [c.id, a.id, b.id]
        assert repository.queue_move(0, 5) is False

    def test_clear(self, repository, make_episode):
        repository.queue_push(make_episode().id)
        repository.queue_push(make_episode().id)

        assert repository.queue_clear() == 2
        assert repository.queue_list() == []


class TestActionsAndCursor:
    """Tests for the action log table and sync cursor."""

    def _append(self, repository, **overrides):
        fields = {
            "kind": "play",
            "origin": ActionOrigin.LOCAL,
            "podcast_url": FEED_URL,
            "episode_url": "https://example.com/ep1.mp3",
            "position": 10,
            "total": 100,
            "timestamp": 1000,
        }
        fields.update(overrides)
        return repository.append_action(**fields)

    def test_append_assigns_increasing_seq(self, repository):
        first = self._append(repository)
        second = self._append(repository, timestamp=1001)

        assert second.seq > first.seq

    def test_find_action_matches_identity(self, repository):
        record = self._append(repository)

        found = repository.find_action(FEED_URL, "https://example.com/ep1.mp3", "play", 1000, 10)
        missing = repository.find_action(FEED_URL, "https://example.com/ep1.mp3", "play", 1000, 11)

        assert found.seq == record.seq
        assert missing is None

    def test_list_unpushed_and_mark_pushed(self, repository):
        a = self._append(repository)
        b = self._append(repository, timestamp=1001)

        assert repository.mark_actions_pushed([a.seq]) == 1

        pending = repository.list_actions(unpushed_only=True)
        assert [r.seq for r in pending] == [b.seq]

    def test_default_cursor(self, repository):
        cursor = repository.get_sync_cursor("server|user|device")

        assert cursor.actions_since == 0
        assert cursor.last_pushed_seq == 0
        assert cursor.generation == 0

    def test_save_cursor_bumps_generation(self, repository):
        repository.save_sync_cursor("k", actions_since=10, subscriptions_since=11, last_pushed_seq=3)
        saved = repository.save_sync_cursor("k", actions_since=20, subscriptions_since=21, last_pushed_seq=4)

        assert saved.generation == 2
        stored = repository.get_sync_cursor("k")
        assert stored.actions_since == 20
        assert stored.last_pushed_seq == 4
        assert stored.last_success_at is not None
