"""
Pytest configuration and fixtures for castsync tests.

This module runs before any test imports, setting up the test environment.
Environment variables are pinned so that a developer's .env file or shell
never changes test behavior.
"""

import os
from datetime import datetime

import pytest

# Pinned before anything reads Config; load_dotenv never overrides these
os.environ["SYNC_ENABLED"] = "false"
os.environ["SYNC_SERVER"] = ""
os.environ["SYNC_USERNAME"] = ""
os.environ["SYNC_PASSWORD"] = ""
os.environ["SYNC_PASSWORD_EVAL"] = ""
os.environ["SYNC_DEVICE_ID"] = "test-device"
os.environ["DOWNLOAD_NEW_EPISODES"] = "ask-unselected"
os.environ["RETRY_BACKOFF_SECONDS"] = "0"
os.environ["MAX_RETRIES"] = "3"
os.environ["SIMULTANEOUS_DOWNLOADS"] = "3"

from castsync.db.factory import create_repository  # noqa: E402
from castsync.events import EventBus, EventRecorder  # noqa: E402
from castsync.podcast.feed_parser import ParsedEpisode, ParsedPodcast  # noqa: E402

FEED_URL = "https://example.com/feed.xml"


def parsed_feed(title="Test Podcast", episodes=2, feed_url=FEED_URL, **kwargs):
    """A fetched feed with `episodes` dated episodes, newest first."""
    return ParsedPodcast(
        feed_url=feed_url,
        title=title,
        description="Fresh description",
        episodes=[
            ParsedEpisode(
                guid=f"guid-{n}",
                title=f"Episode {n}",
                enclosure_url=f"https://example.com/ep{n}.mp3",
                enclosure_type="audio/mpeg",
                published_date=datetime(2024, 1, n + 1),
            )
            for n in range(episodes, 0, -1)
        ],
        **kwargs,
    )


@pytest.fixture
def repository(tmp_path):
    """
    Create a temporary SQLite-backed repository for tests.

    Yields a repository using a SQLite file under the temporary path and closes it on teardown.
    """
    db_path = tmp_path / "test.db"
    repo = create_repository(f"sqlite:///{db_path}", create_tables=True)
    yield repo
    repo.close()


@pytest.fixture
def podcast(repository):
    """A subscribed podcast with a known feed URL."""
    return repository.create_podcast(
        feed_url=FEED_URL,
        title="Test Podcast",
        description="A test podcast",
    )


@pytest.fixture
def make_episode(repository, podcast):
    """
    Factory for persisted episodes of the `podcast` fixture.

    Each call creates a new episode; keyword arguments override the defaults.
    """
    counter = {"n": 0}

    def _make(**kwargs):
        counter["n"] += 1
        n = counter["n"]
        fields = {
            "podcast_id": podcast.id,
            "guid": f"guid-{n}",
            "title": f"Episode {n}",
            "enclosure_url": f"https://example.com/ep{n}.mp3",
            "enclosure_type": "audio/mpeg",
            "published_date": datetime(2024, 1, n % 28 + 1),
        }
        fields.update(kwargs)
        return repository.create_episode(**fields)

    return _make


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def recorder(events):
    """Records every event published on the `events` bus."""
    recorder = EventRecorder()
    events.subscribe(None, recorder)
    return recorder
