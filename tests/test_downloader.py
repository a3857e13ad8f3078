"""Tests for the download manager."""

import os
import threading
import time
from unittest.mock import patch

import pytest
import requests

from castsync.actions.log import ActionLog
from castsync.actions.models import ActionKind
from castsync.db.models import DownloadStatus
from castsync.events import DownloadFinished, DownloadProgress
from castsync.podcast.downloader import (
    PARTIAL_SUFFIX,
    DownloadManager,
    is_audio_content_type,
)
from castsync.utils.retry import IMMEDIATE_RETRY


class FakeResponse:
    """Stands in for a streamed requests.Response."""

    def __init__(self, status_code=200, chunks=(b"audio-data",), content_type="audio/mpeg",
                 on_close=None, between_chunks=None):
        self.status_code = status_code
        self.headers = {"Content-Type": content_type}
        self._chunks = list(chunks)
        self._on_close = on_close
        self._between_chunks = between_chunks
        self.closed = False

    def iter_content(self, chunk_size=8192):
        for index, chunk in enumerate(self._chunks):
            if index and self._between_chunks is not None:
                self._between_chunks()
            yield chunk

    def close(self):
        if not self.closed:
            self.closed = True
            if self._on_close is not None:
                self._on_close()


class FakeSession:
    """Returns canned responses and counts requests per URL."""

    def __init__(self, responses=None, factory=None):
        self._responses = list(responses or [])
        self._factory = factory
        self.calls = []
        self._lock = threading.Lock()

    def get(self, url, **kwargs):
        with self._lock:
            self.calls.append(url)
            item = None if self._factory is not None else self._responses.pop(0)
        if self._factory is not None:
            return self._factory(url)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self):
        pass


@pytest.fixture
def download_dir(tmp_path):
    return str(tmp_path / "downloads")


@pytest.fixture
def make_manager(repository, download_dir, events):
    managers = []

    def _make(session, **kwargs):
        kwargs.setdefault("retry_policy", IMMEDIATE_RETRY)
        manager = DownloadManager(
            repository=repository,
            download_directory=download_dir,
            session=session,
            events=events,
            **kwargs,
        )
        managers.append(manager)
        return manager

    yield _make
    for manager in managers:
        manager.shutdown(wait=False)


def files_under(directory):
    return [name for _root, _dirs, names in os.walk(directory) for name in names]


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() >= deadline:
            return False
        time.sleep(0.01)
    return True


class TestContentType:

    def test_audio_and_generic_types(self):
        assert is_audio_content_type("audio/mpeg")
        assert is_audio_content_type("video/mp4; charset=binary")
        assert is_audio_content_type("application/octet-stream")
        assert is_audio_content_type(None)

    def test_rejects_documents(self):
        assert not is_audio_content_type("text/html; charset=utf-8")
        assert not is_audio_content_type("application/json")


class TestDownloadManager:
    """Tests for enqueueing and running downloads."""

    def test_rejects_invalid_pool_size(self, repository, download_dir):
        with pytest.raises(ValueError):
            DownloadManager(repository, download_dir, simultaneous_downloads=0)

    def test_successful_download(self, make_manager, repository, make_episode, recorder, download_dir):
        episode = make_episode()
        manager = make_manager(FakeSession([FakeResponse(chunks=[b"abc", b"def"])]))

        assert manager.enqueue(episode.id) is True
        assert manager.wait(timeout=10)

        stored = repository.get_episode(episode.id)
        assert stored.download_status == DownloadStatus.DOWNLOADED
        assert stored.file_size_bytes == 6
        assert stored.local_file_path.startswith(download_dir)
        assert stored.local_file_path.endswith(".mp3")
        with open(stored.local_file_path, "rb") as f:
            assert f.read() == b"abcdef"

        assert not any(name.endswith(PARTIAL_SUFFIX) for name in files_under(download_dir))
        assert recorder.of_type(DownloadProgress)[-1].downloaded == 6
        finished = recorder.of_type(DownloadFinished)
        assert finished == [DownloadFinished(episode.id, success=True)]

    def test_enqueue_is_rejected_for_downloaded_episode(self, make_manager, make_episode):
        episode = make_episode(download_status=DownloadStatus.DOWNLOADED)
        manager = make_manager(FakeSession())

        assert manager.enqueue(episode.id) is False

    def test_transient_errors_retry_until_success(self, make_manager, repository, make_episode):
        """Test that 503, 503, 200 completes after exactly three attempts."""
        episode = make_episode()
        session = FakeSession([
            FakeResponse(status_code=503),
            FakeResponse(status_code=503),
            FakeResponse(),
        ])
        manager = make_manager(session)

        manager.enqueue(episode.id)
        manager.wait(timeout=10)

        assert len(session.calls) == 3
        assert repository.get_episode(episode.id).download_status == DownloadStatus.DOWNLOADED

    def test_retries_exhausted(self, make_manager, repository, make_episode, recorder):
        episode = make_episode()
        session = FakeSession([requests.ConnectionError("reset")] * 3)
        manager = make_manager(session)

        manager.enqueue(episode.id)
        manager.wait(timeout=10)

        stored = repository.get_episode(episode.id)
        assert len(session.calls) == 3
        assert stored.download_status == DownloadStatus.FAILED
        assert "reset" in stored.download_error
        assert recorder.of_type(DownloadFinished)[0].success is False

    def test_not_found_fails_without_retry(self, make_manager, repository, make_episode):
        episode = make_episode()
        session = FakeSession([FakeResponse(status_code=404)])
        manager = make_manager(session)

        manager.enqueue(episode.id)
        manager.wait(timeout=10)

        assert len(session.calls) == 1
        stored = repository.get_episode(episode.id)
        assert stored.download_status == DownloadStatus.FAILED
        assert "404" in stored.download_error

    def test_wrong_content_type_fails(self, make_manager, repository, make_episode, download_dir):
        episode = make_episode()
        session = FakeSession([FakeResponse(content_type="text/html")])
        manager = make_manager(session)

        manager.enqueue(episode.id)
        manager.wait(timeout=10)

        stored = repository.get_episode(episode.id)
        assert stored.download_status == DownloadStatus.FAILED
        assert "text/html" in stored.download_error
        assert files_under(download_dir) == []

    def test_failed_download_can_be_retried(self, make_manager, repository, make_episode):
        episode = make_episode()
        manager = make_manager(FakeSession([FakeResponse(status_code=404), FakeResponse()]))

        manager.enqueue(episode.id)
        manager.wait(timeout=10)
        assert manager.enqueue(episode.id) is True
        manager.wait(timeout=10)

        assert repository.get_episode(episode.id).download_status == DownloadStatus.DOWNLOADED

    def test_download_all_skips_removed_episodes(self, make_manager, podcast, make_episode):
        current = make_episode()
        make_episode(is_removed=True)
        make_episode(download_status=DownloadStatus.DOWNLOADED)
        manager = make_manager(FakeSession(factory=lambda url: FakeResponse()))

        assert manager.download_all(podcast.id) == [current.id]
        assert manager.wait(timeout=10)

    def test_concurrency_is_bounded(self, make_manager, repository, make_episode):
        episodes = [make_episode() for _ in range(5)]
        state = {"active": 0, "peak": 0}
        lock = threading.Lock()

        def on_close():
            with lock:
                state["active"] -= 1

        def factory(url):
            with lock:
                state["active"] += 1
                state["peak"] = max(state["peak"], state["active"])
            return FakeResponse(
                chunks=[b"a", b"b"],
                on_close=on_close,
                between_chunks=lambda: time.sleep(0.05),
            )

        manager = make_manager(FakeSession(factory=factory), simultaneous_downloads=2)

        assert manager.enqueue_many([e.id for e in episodes]) == [e.id for e in episodes]
        assert manager.wait(timeout=10)

        assert state["peak"] <= 2
        statuses = {repository.get_episode(e.id).download_status for e in episodes}
        assert statuses == {DownloadStatus.DOWNLOADED}


class TestCancel:
    """Tests for cancelling in-flight downloads."""

    def test_cancel_running_download(self, make_manager, repository, make_episode, download_dir):
        episode = make_episode()
        started = threading.Event()
        release = threading.Event()

        def between_chunks():
            started.set()
            release.wait(5)

        session = FakeSession([FakeResponse(chunks=[b"a", b"b"], between_chunks=between_chunks)])
        manager = make_manager(session)

        manager.enqueue(episode.id)
        assert started.wait(5)
        assert manager.enqueue(episode.id) is False
        assert manager.get_progress(episode.id) == (1, None)

        assert manager.cancel(episode.id) is True
        assert manager.cancel(episode.id) is False
        assert manager.get_progress(episode.id) is None
        assert repository.get_episode(episode.id).download_status == DownloadStatus.NOT_DOWNLOADED

        release.set()
        assert manager.wait(timeout=10)
        # The cancelled worker cleans up its partial file on its own thread
        assert wait_until(lambda: files_under(download_dir) == [])

        stored = repository.get_episode(episode.id)
        assert stored.download_status == DownloadStatus.NOT_DOWNLOADED
        assert stored.local_file_path is None

    def test_cancel_stalled_download_starts_next_in_queue(self, make_manager, repository, make_episode):
        """Test that the slot of a download stuck waiting on the server is handed on at once."""
        stalled, waiting = make_episode(), make_episode()
        in_request = threading.Event()
        unblock = threading.Event()

        def factory(url):
            if url == stalled.enclosure_url:
                in_request.set()
                unblock.wait(10)
                raise requests.ConnectionError("server went away")
            return FakeResponse()

        manager = make_manager(FakeSession(factory=factory), simultaneous_downloads=1)
        try:
            manager.enqueue(stalled.id)
            assert in_request.wait(5)
            manager.enqueue(waiting.id)
            assert repository.get_episode(waiting.id).download_status == DownloadStatus.QUEUED

            assert manager.cancel(stalled.id) is True
            assert manager.wait(timeout=5)

            assert repository.get_episode(waiting.id).download_status == DownloadStatus.DOWNLOADED
            assert repository.get_episode(stalled.id).download_status == DownloadStatus.NOT_DOWNLOADED
        finally:
            unblock.set()

    def test_cancel_queued_download(self, make_manager, repository, make_episode):
        running, queued = make_episode(), make_episode()
        started = threading.Event()
        release = threading.Event()

        def between_chunks():
            started.set()
            release.wait(5)

        session = FakeSession(factory=lambda url: FakeResponse(
            chunks=[b"a", b"b"], between_chunks=between_chunks
        ))
        manager = make_manager(session, simultaneous_downloads=1)

        manager.enqueue(running.id)
        assert started.wait(5)
        manager.enqueue(queued.id)
        assert manager.cancel(queued.id) is True
        release.set()
        assert manager.wait(timeout=10)

        assert session.calls == [running.enclosure_url]
        assert repository.get_episode(queued.id).download_status == DownloadStatus.NOT_DOWNLOADED
        assert repository.get_episode(running.id).download_status == DownloadStatus.DOWNLOADED

    def test_requeue_during_cancel_leaves_one_owner(self, make_manager, repository, make_episode):
        """Test that a cancel and re-enqueue racing the worker start ends downloaded."""
        episode = make_episode()
        manager = make_manager(FakeSession(factory=lambda url: FakeResponse()),
                               simultaneous_downloads=1)
        real_started = repository.mark_download_started
        claims = []
        requeued = threading.Event()

        def started(episode_id, claim=None):
            claims.append(claim)
            if len(claims) == 1:
                manager.cancel(episode_id)
                assert manager.enqueue(episode_id) is True
                requeued.set()
            return real_started(episode_id, claim=claim)

        with patch.object(repository, "mark_download_started", side_effect=started):
            manager.enqueue(episode.id)
            assert requeued.wait(5)
            assert manager.wait(timeout=10)

        stored = repository.get_episode(episode.id)
        assert stored.download_status == DownloadStatus.DOWNLOADED
        assert stored.download_claim is None
        assert len(claims) == 2 and claims[0] != claims[1]

    def test_cancel_unknown_download(self, make_manager, make_episode):
        manager = make_manager(FakeSession())

        assert manager.cancel(make_episode().id) is False


class TestDelete:
    """Tests for deleting downloaded files."""

    @pytest.fixture
    def downloaded(self, make_episode, tmp_path):
        def _make():
            path = tmp_path / f"file-{time.monotonic_ns()}.mp3"
            path.write_bytes(b"data")
            return make_episode(
                download_status=DownloadStatus.DOWNLOADED,
                local_file_path=str(path),
                file_size_bytes=4,
            )
        return _make

    def test_delete_download(self, make_manager, repository, downloaded):
        log = ActionLog(repository, device="test-device")
        manager = make_manager(FakeSession(), action_log=log)
        episode = downloaded()

        assert manager.delete_download(episode.id) is True

        stored = repository.get_episode(episode.id)
        assert not os.path.exists(episode.local_file_path)
        assert stored.download_status == DownloadStatus.NOT_DOWNLOADED
        assert stored.local_file_path is None
        assert [a.kind for a in log.replay()] == [ActionKind.DELETE]

    def test_delete_missing_file_is_not_an_error(self, make_manager, repository, downloaded):
        manager = make_manager(FakeSession())
        episode = downloaded()
        os.remove(episode.local_file_path)

        assert manager.delete_download(episode.id) is True
        assert repository.get_episode(episode.id).download_status == DownloadStatus.NOT_DOWNLOADED

    def test_delete_nothing_downloaded(self, make_manager, make_episode):
        manager = make_manager(FakeSession())

        assert manager.delete_download(make_episode().id) is False

    def test_delete_all_collects_failures(self, make_manager, repository, downloaded):
        manager = make_manager(FakeSession())
        good, bad = downloaded(), downloaded()
        real_remove = os.remove

        def remove(path):
            if path == bad.local_file_path:
                raise PermissionError("read-only")
            real_remove(path)

        with patch("castsync.podcast.downloader.os.remove", side_effect=remove):
            report = manager.delete_all_downloads()

        assert report.deleted == [good.id]
        assert list(report.errors) == [bad.id]
        assert not report.success
        assert repository.get_episode(bad.id).download_status == DownloadStatus.DOWNLOADED


class TestRecover:
    """Tests for startup recovery."""

    def test_recover_resets_interrupted_and_missing(self, make_manager, repository, make_episode,
                                                    download_dir, tmp_path):
        interrupted = make_episode(download_status=DownloadStatus.DOWNLOADING)
        queued = make_episode(download_status=DownloadStatus.QUEUED)
        missing = make_episode(
            download_status=DownloadStatus.DOWNLOADED,
            local_file_path=str(tmp_path / "gone.mp3"),
        )
        manager = make_manager(FakeSession())
        partial_dir = os.path.join(download_dir, "Test_Podcast")
        os.makedirs(partial_dir)
        with open(os.path.join(partial_dir, ".abc" + PARTIAL_SUFFIX), "wb") as f:
            f.write(b"half")

        counts = manager.recover()

        assert counts == {"reset": 2, "missing": 1, "partials": 1}
        for episode in (interrupted, queued, missing):
            assert repository.get_episode(episode.id).download_status == DownloadStatus.NOT_DOWNLOADED
        assert files_under(download_dir) == []
