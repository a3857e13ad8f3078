"""Tests for the persistent play queue."""

import pytest

from castsync.db.factory import create_repository
from castsync.events import QueueChanged
from castsync.queue_manager import QueueManager


@pytest.fixture
def queue(repository, events):
    return QueueManager(repository, events=events)


class TestQueueManager:

    def test_push_appends_in_order(self, queue, make_episode):
        first, second = make_episode(), make_episode()

        assert queue.push(first.id) is True
        assert queue.push(second.id) is True

        assert queue.list() == [first.id, second.id]
        assert queue.next() == first.id
        assert len(queue) == 2
        assert second.id in queue

    def test_push_twice_keeps_one_entry(self, queue, make_episode):
        episode = make_episode()
        queue.push(episode.id)

        assert queue.push(episode.id) is False
        assert queue.list() == [episode.id]

    def test_played_episode_cannot_be_queued(self, queue, make_episode):
        episode = make_episode(played=True)

        assert queue.push(episode.id) is False
        assert queue.list() == []

    def test_unknown_episode_cannot_be_queued(self, queue):
        assert queue.push("no-such-episode") is False

    def test_remove(self, queue, make_episode):
        episode = make_episode()
        queue.push(episode.id)

        assert queue.remove(episode.id) is True
        assert queue.remove(episode.id) is False
        assert queue.next() is None

    def test_reorder(self, queue, make_episode):
        a, b, c = make_episode(), make_episode(), make_episode()
        for episode in (a, b, c):
            queue.push(episode.id)

        assert queue.reorder(2, 0) is True
        assert queue.list() == [c.id, a.id, b.id]

        assert queue.reorder(0, 2) is True
        assert queue.list() == [a.id, b.id, c.id]

    def test_reorder_out_of_range(self, queue, make_episode):
        queue.push(make_episode().id)

        assert queue.reorder(0, 5) is False
        assert queue.reorder(-1, 0) is False

    def test_clear(self, queue, make_episode):
        queue.push(make_episode().id)
        queue.push(make_episode().id)

        assert queue.clear() == 2
        assert queue.list() == []
        assert queue.clear() == 0

    def test_changes_publish_the_new_order(self, queue, make_episode, recorder):
        a, b = make_episode(), make_episode()
        queue.push(a.id)
        queue.push(b.id)
        queue.push(b.id)
        queue.reorder(1, 1)
        queue.remove(a.id)

        assert recorder.of_type(QueueChanged) == [
            QueueChanged((a.id,)),
            QueueChanged((a.id, b.id)),
            QueueChanged((b.id,)),
        ]

    def test_queue_survives_restart(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'queue.db'}"
        repo = create_repository(url, create_tables=True)
        podcast = repo.create_podcast(feed_url="https://example.com/q.xml", title="Q")
        episode = repo.create_episode(
            podcast_id=podcast.id,
            guid="g",
            title="E",
            enclosure_url="https://example.com/e.mp3",
            enclosure_type="audio/mpeg",
        )
        QueueManager(repo).push(episode.id)
        repo.close()

        reopened = create_repository(url, create_tables=True)
        try:
            assert QueueManager(reopened).list() == [episode.id]
        finally:
            reopened.close()
