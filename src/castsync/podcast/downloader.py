"""Episode downloader with bounded concurrency.

Downloads podcast episodes with support for:
- A fixed number of download slots filled in FIFO order
- Retry with exponential backoff for transient failures
- Progress tracking
- Cancellation of queued and running downloads
- Stage-then-rename publishing so the download directory never holds partial files
"""

import itertools
import logging
import os
import socket
import tempfile
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter

from .. import USER_AGENT
from ..actions.log import ActionLog
from ..actions.models import ActionKind
from ..db.models import DownloadStatus, Episode
from ..db.repository import CatalogRepositoryInterface
from ..errors import (
    ContentTypeError,
    NetworkPermanentError,
    NetworkTransientError,
    StorageError,
)
from ..events import DownloadFinished, DownloadProgress, EpisodeStateChanged, EventBus
from ..utils.filenames import episode_filename, extension_for, sanitize_filename
from ..utils.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".part"

ACCEPTED_GENERIC_TYPES = (
    "application/octet-stream",
    "binary/octet-stream",
    "application/ogg",
    "application/x-download",
)


def is_audio_content_type(content_type: Optional[str]) -> bool:
    """Whether a response content type can carry an episode's media."""
    if not content_type:
        return True
    mime = content_type.split(";")[0].strip().lower()
    if mime.startswith(("audio/", "video/")):
        return True
    return mime in ACCEPTED_GENERIC_TYPES


class _DownloadCancelled(Exception):
    pass


@dataclass
class DownloadResult:
    """Result of a download operation."""

    episode_id: str
    success: bool
    local_path: Optional[str] = None
    file_size: Optional[int] = None
    error: Optional[str] = None
    duration_seconds: Optional[float] = None
    attempts: int = 0
    cancelled: bool = False


@dataclass
class DeleteReport:
    """Outcome of a bulk delete; failures are collected, not raised."""

    deleted: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass(eq=False)
class _DownloadJob:
    episode_id: str
    # Catalog token; a cancelled job can no longer move the episode
    claim: str = field(default_factory=lambda: str(uuid.uuid4()))
    cancel_event: threading.Event = field(default_factory=threading.Event)
    # Serializes publish against cancel
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    response: Optional[requests.Response] = None
    published: bool = False
    holds_slot: bool = False
    done: threading.Event = field(default_factory=threading.Event)


class DownloadManager:
    """Downloads episodes with a bounded number of concurrent slots.

    At most one job exists per episode: `enqueue` claims the episode in the
    catalog before submitting work, so a second enqueue is rejected until the
    first download finishes, fails or is cancelled.

    Slots are counted here rather than by a thread pool. Cancelling a running
    download frees its slot at once, even while its worker thread is still
    blocked on the network; that thread can no longer change the episode
    because its claim token is gone.

    Example:
        manager = DownloadManager(
            repository=repo,
            download_directory="~/Podcasts",
            simultaneous_downloads=3,
        )
        manager.recover()
        manager.enqueue(episode_id)
        manager.wait()
    """

    DEFAULT_CHUNK_SIZE = 8192
    DEFAULT_TIMEOUT = 120
    DEFAULT_CONNECT_TIMEOUT = 10

    def __init__(
        self,
        repository: CatalogRepositoryInterface,
        download_directory: str,
        simultaneous_downloads: int = 3,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: int = DEFAULT_TIMEOUT,
        connect_timeout: int = DEFAULT_CONNECT_TIMEOUT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        user_agent: Optional[str] = None,
        action_log: Optional[ActionLog] = None,
        events: Optional[EventBus] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the download manager.

        Args:
            repository: Catalog repository
            download_directory: Base directory for downloads
            simultaneous_downloads: Maximum number of concurrent downloads
            retry_policy: Attempts and backoff for transient failures
            timeout: Read timeout in seconds
            connect_timeout: Connect timeout in seconds
            chunk_size: Chunk size for streaming downloads
            user_agent: Custom user agent string
            action_log: Where download and delete actions are recorded
            events: Event bus for progress and state events
            session: requests session to reuse
        """
        if simultaneous_downloads < 1:
            raise ValueError(f"simultaneous_downloads must be >= 1, got {simultaneous_downloads}")

        self.repository = repository
        self.download_directory = os.path.expanduser(download_directory)
        self.simultaneous_downloads = simultaneous_downloads
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.chunk_size = chunk_size
        self.user_agent = user_agent or USER_AGENT
        self.action_log = action_log
        self.events = events

        os.makedirs(self.download_directory, exist_ok=True)

        self._session = session or self._create_session()
        self._jobs: Dict[str, _DownloadJob] = {}
        self._pending: Deque[_DownloadJob] = deque()
        self._running = 0
        self._accepting = True
        self._thread_ids = itertools.count(1)
        # Guards _jobs, _pending, _running and _accepting
        self._jobs_lock = threading.Lock()
        self._progress: Dict[str, Tuple[int, Optional[int]]] = {}

    def _create_session(self) -> requests.Session:
        """Create a requests session sized for the worker pool.

        Retries are handled per download attempt, not by urllib3.
        """
        session = requests.Session()
        adapter = HTTPAdapter(
            pool_connections=self.simultaneous_downloads,
            pool_maxsize=self.simultaneous_downloads,
            max_retries=0,
        )
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.headers.update({"User-Agent": self.user_agent})
        return session

    # --- Startup ---

    def recover(self) -> Dict[str, int]:
        """Reconcile catalog download state with the files on disk.

        Must run before any download is enqueued. Resets episodes a previous
        process left queued or downloading, forgets downloads whose file has
        disappeared, and removes stale partial files.

        Returns:
            Counts of reset, missing and removed partial items
        """
        reset = self.repository.reset_stale_downloads()

        missing = 0
        for episode in self.repository.list_episodes(download_status=DownloadStatus.DOWNLOADED):
            if not episode.local_file_path or not os.path.exists(episode.local_file_path):
                self.repository.reset_download(episode.id)
                missing += 1

        partials = 0
        for root, _dirs, files in os.walk(self.download_directory):
            for name in files:
                if name.endswith(PARTIAL_SUFFIX):
                    try:
                        os.remove(os.path.join(root, name))
                        partials += 1
                    except OSError as e:
                        logger.warning(f"Could not remove stale partial file {name}: {e}")

        if reset or missing or partials:
            logger.info(
                f"Download recovery: {reset} interrupted, {missing} missing files, "
                f"{partials} partial files removed"
            )
        return {"reset": reset, "missing": missing, "partials": partials}

    # --- Commands ---

    def enqueue(self, episode_id: str) -> bool:
        """Queue an episode for download.

        Returns:
            False if the episode is unknown, already queued, downloading or downloaded
        """
        if not self._accepting:
            logger.warning(f"Not enqueuing {episode_id}: download manager is shut down")
            return False

        job = _DownloadJob(episode_id=episode_id)
        if not self.repository.claim_download(episode_id, claim=job.claim):
            logger.debug(f"Not enqueuing {episode_id}: already claimed or unknown")
            return False

        with self._jobs_lock:
            self._jobs[episode_id] = job
            self._pending.append(job)
            self._dispatch()

        self._publish(EpisodeStateChanged(episode_id, ("download_status",)))
        return True

    def enqueue_many(self, episode_ids) -> List[str]:
        """Queue several episodes; returns the ids that were accepted."""
        return [episode_id for episode_id in episode_ids if self.enqueue(episode_id)]

    def download_all(self, podcast_id: str) -> List[str]:
        """Queue every episode of a podcast that is not downloaded yet."""
        episodes = self.repository.list_episodes(podcast_id=podcast_id, include_removed=False)
        candidates = [e.id for e in episodes if e.download_status in DownloadStatus.CLAIMABLE]
        return self.enqueue_many(candidates)

    def cancel(self, episode_id: str) -> bool:
        """Cancel a queued or running download.

        The episode returns to not-downloaded and the slot is handed to the
        next queued download immediately. A worker blocked on the network is
        woken where possible and otherwise left to time out on its own.

        Returns:
            False if no download of this episode is in flight
        """
        with self._jobs_lock:
            job = self._jobs.get(episode_id)
        if job is None:
            return False

        with job.lock:
            if job.published or job.cancel_event.is_set():
                return False
            job.cancel_event.set()
            response = job.response
            self.repository.reset_download(episode_id)

        with self._jobs_lock:
            if job in self._pending:
                self._pending.remove(job)
        self._finish_job(job)
        if response is not None:
            self._abort_response(response)

        logger.info(f"Cancelled download: {episode_id}")
        self._publish(EpisodeStateChanged(episode_id, ("download_status",)))
        self._publish(DownloadFinished(episode_id, success=False, error="cancelled"))
        return True

    def delete_download(self, episode_id: str) -> bool:
        """Delete the downloaded file of an episode, or cancel its download.

        A file that is already gone is not an error.

        Returns:
            False if the episode is unknown or has nothing downloaded

        Raises:
            StorageError: If the file exists but cannot be removed
        """
        if self.cancel(episode_id):
            return True

        episode = self.repository.get_episode(episode_id)
        if episode is None:
            return False
        if episode.download_status == DownloadStatus.FAILED:
            self.repository.reset_download(episode_id)
            self._publish(EpisodeStateChanged(episode_id, ("download_status",)))
            return True
        if episode.download_status != DownloadStatus.DOWNLOADED:
            return False

        path = episode.local_file_path
        if path:
            try:
                os.remove(path)
            except FileNotFoundError:
                logger.debug(f"File already gone: {path}")
            except OSError as e:
                raise StorageError(f"Failed to delete {path}: {e}", path=path) from e

        self.repository.reset_download(episode_id)
        if self.action_log is not None:
            self.action_log.record_for_episode(episode, ActionKind.DELETE)
        logger.info(f"Deleted download: {episode.title}")
        self._publish(EpisodeStateChanged(episode_id, ("download_status",)))
        return True

    def delete_all_downloads(self, podcast_id: Optional[str] = None) -> DeleteReport:
        """Delete every download, or every download of one podcast.

        Failures are collected per episode and never stop the batch.
        """
        report = DeleteReport()
        episodes = self.repository.list_episodes(podcast_id=podcast_id)
        for episode in episodes:
            if episode.download_status not in (
                DownloadStatus.DOWNLOADED,
                DownloadStatus.QUEUED,
                DownloadStatus.DOWNLOADING,
            ):
                continue
            try:
                if self.delete_download(episode.id):
                    report.deleted.append(episode.id)
            except StorageError as e:
                logger.error(f"Failed to delete download for {episode.title}: {e}")
                report.errors[episode.id] = str(e)

        logger.info(
            f"Deleted {len(report.deleted)} downloads, {len(report.errors)} failures"
        )
        return report

    # --- Queries ---

    def get_progress(self, episode_id: str) -> Optional[Tuple[int, Optional[int]]]:
        """(downloaded bytes, total bytes or None) for a running download."""
        return self._progress.get(episode_id)

    def all_progress(self) -> Dict[str, Tuple[int, Optional[int]]]:
        """(downloaded bytes, total bytes or None) per running download."""
        return dict(self._progress)

    def active_downloads(self) -> List[str]:
        with self._jobs_lock:
            return list(self._jobs)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until all submitted downloads finish. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._jobs_lock:
                jobs = list(self._jobs.values())
            if not jobs:
                return True
            for job in jobs:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                if not job.done.wait(remaining):
                    return False

    # --- Worker ---

    def _dispatch(self) -> None:
        """Start pending jobs while slots are free. Caller holds `_jobs_lock`."""
        while self._pending and self._running < self.simultaneous_downloads:
            job = self._pending.popleft()
            job.holds_slot = True
            self._running += 1
            worker = threading.Thread(
                target=self._run_job,
                args=(job,),
                name=f"castsync-download-{next(self._thread_ids)}",
                daemon=True,
            )
            worker.start()

    def _run_job(self, job: _DownloadJob) -> DownloadResult:
        try:
            return self.download_episode(job)
        except Exception as e:
            logger.exception(f"Unexpected error downloading {job.episode_id}")
            return self._fail(job, str(e), attempts=0)
        finally:
            self._finish_job(job)

    def _finish_job(self, job: _DownloadJob) -> None:
        """Forget a job and hand its slot on. Safe to call more than once."""
        with self._jobs_lock:
            if self._jobs.get(job.episode_id) is job:
                del self._jobs[job.episode_id]
                self._progress.pop(job.episode_id, None)
            if job.holds_slot:
                job.holds_slot = False
                self._running -= 1
                self._dispatch()
        job.done.set()

    def _abort_response(self, response: requests.Response) -> None:
        """Close a cancelled response, waking a worker blocked reading it."""
        connection = getattr(getattr(response, "raw", None), "_connection", None)
        sock = getattr(connection, "sock", None)
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError as e:
                logger.debug(f"Socket shutdown for cancelled download failed: {e}")
        try:
            response.close()
        except Exception as e:
            logger.debug(f"Closing cancelled response failed: {e}")

    def download_episode(self, job: _DownloadJob) -> DownloadResult:
        """Run one claimed download to completion on the calling thread."""
        episode_id = job.episode_id
        if job.cancel_event.is_set():
            return DownloadResult(episode_id=episode_id, success=False, cancelled=True)

        if not self.repository.mark_download_started(episode_id, claim=job.claim):
            return DownloadResult(
                episode_id=episode_id, success=False, cancelled=True,
                error="Episode is no longer queued",
            )
        self._publish(EpisodeStateChanged(episode_id, ("download_status",)))

        start_time = time.monotonic()
        episode = self.repository.get_episode(episode_id)
        podcast = self.repository.get_podcast(episode.podcast_id) if episode else None
        if episode is None or podcast is None:
            return self._fail(job, f"Episode or podcast not found: {episode_id}", attempts=0)

        podcast_dir = podcast.local_directory or os.path.join(
            self.download_directory,
            sanitize_filename(podcast.title, fallback="podcast"),
        )
        try:
            os.makedirs(podcast_dir, exist_ok=True)
        except OSError as e:
            return self._fail(job, f"Cannot create {podcast_dir}: {e}", attempts=0)

        logger.info(f"Downloading: {episode.title}")
        attempts = 0

        def attempt():
            nonlocal attempts
            attempts += 1
            return self._fetch_to_temp(job, episode, podcast_dir)

        try:
            temp_path, content_type, file_size = call_with_retry(attempt, self.retry_policy)
        except _DownloadCancelled:
            return DownloadResult(
                episode_id=episode_id, success=False, cancelled=True, attempts=attempts
            )
        except (NetworkTransientError, NetworkPermanentError, StorageError) as e:
            logger.error(f"Download failed for {episode.title} after {attempts} attempts: {e}")
            return self._fail(job, str(e), attempts=attempts)

        filename = episode_filename(
            episode.title,
            episode.published_date,
            extension_for(content_type or episode.enclosure_type, episode.enclosure_url),
        )
        output_path = os.path.join(podcast_dir, filename)

        with job.lock:
            if job.cancel_event.is_set():
                self._remove_quietly(temp_path)
                return DownloadResult(
                    episode_id=episode_id, success=False, cancelled=True, attempts=attempts
                )
            try:
                os.replace(temp_path, output_path)
            except OSError as e:
                self._remove_quietly(temp_path)
                return self._fail(job, f"Failed to publish {output_path}: {e}", attempts=attempts)

            if not self.repository.mark_download_complete(
                episode_id, output_path, file_size, claim=job.claim
            ):
                self._remove_quietly(output_path)
                return self._fail(job, "Download state changed while downloading", attempts=attempts)
            job.published = True

        duration = time.monotonic() - start_time
        logger.info(
            f"Downloaded: {episode.title} "
            f"({file_size / 1024 / 1024:.1f} MB in {duration:.1f}s, {attempts} attempts)"
        )

        if self.action_log is not None:
            self.action_log.record_for_episode(episode, ActionKind.DOWNLOAD)
        self._progress.pop(episode_id, None)
        self._publish(EpisodeStateChanged(episode_id, ("download_status",)))
        self._publish(DownloadFinished(episode_id, success=True))

        return DownloadResult(
            episode_id=episode_id,
            success=True,
            local_path=output_path,
            file_size=file_size,
            duration_seconds=duration,
            attempts=attempts,
        )

    def _fetch_to_temp(
        self, job: _DownloadJob, episode: Episode, podcast_dir: str
    ) -> Tuple[str, str, int]:
        """One download attempt: stream the enclosure into a partial file.

        Returns:
            Tuple of (partial file path, content type, size in bytes)
        """
        if job.cancel_event.is_set():
            raise _DownloadCancelled()

        try:
            response = self._session.get(
                episode.enclosure_url,
                stream=True,
                timeout=(self.connect_timeout, self.timeout),
                allow_redirects=True,
            )
        except requests.Timeout as e:
            raise NetworkTransientError(f"Timed out fetching {episode.enclosure_url}: {e}") from e
        except requests.RequestException as e:
            if job.cancel_event.is_set():
                raise _DownloadCancelled() from e
            raise NetworkTransientError(f"Connection failed for {episode.enclosure_url}: {e}") from e

        job.response = response
        try:
            status = response.status_code
            if status == 429 or status >= 500:
                raise NetworkTransientError(f"HTTP {status}", status=status)
            if not 200 <= status < 300:
                raise NetworkPermanentError(f"HTTP {status}", status=status)

            content_type = response.headers.get("Content-Type", "")
            if not is_audio_content_type(content_type):
                raise ContentTypeError(
                    f"Unexpected content type '{content_type}' for {episode.enclosure_url}",
                    status=status,
                )

            total_size = episode.enclosure_length
            if response.headers.get("Content-Length"):
                try:
                    total_size = int(response.headers["Content-Length"])
                except ValueError:
                    pass

            try:
                fd, temp_path = tempfile.mkstemp(
                    prefix=".", suffix=PARTIAL_SUFFIX, dir=podcast_dir
                )
            except OSError as e:
                raise StorageError(f"Cannot create partial file in {podcast_dir}: {e}") from e

            downloaded = 0
            try:
                with os.fdopen(fd, "wb") as f:
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        if job.cancel_event.is_set():
                            raise _DownloadCancelled()
                        if chunk:
                            f.write(chunk)
                            downloaded += len(chunk)
                            self._report_progress(job, downloaded, total_size)
            except Exception as e:
                self._remove_quietly(temp_path)
                if job.cancel_event.is_set():
                    raise _DownloadCancelled() from e
                if isinstance(e, requests.RequestException):
                    raise NetworkTransientError(f"Connection lost: {e}") from e
                if isinstance(e, OSError):
                    raise StorageError(f"Failed writing {temp_path}: {e}", path=temp_path) from e
                raise

            if job.cancel_event.is_set():
                self._remove_quietly(temp_path)
                raise _DownloadCancelled()

            return temp_path, content_type, downloaded
        finally:
            job.response = None
            response.close()

    def _fail(self, job: _DownloadJob, error: str, attempts: int) -> DownloadResult:
        if job.cancel_event.is_set() or not self.repository.mark_download_failed(
            job.episode_id, error, claim=job.claim
        ):
            return DownloadResult(
                episode_id=job.episode_id, success=False, cancelled=True, attempts=attempts
            )
        self._progress.pop(job.episode_id, None)
        self._publish(EpisodeStateChanged(job.episode_id, ("download_status",)))
        self._publish(DownloadFinished(job.episode_id, success=False, error=error))
        return DownloadResult(
            episode_id=job.episode_id, success=False, error=error, attempts=attempts
        )

    def _report_progress(self, job: _DownloadJob, downloaded: int, total: Optional[int]) -> None:
        if job.cancel_event.is_set():
            return
        self._progress[job.episode_id] = (downloaded, total)
        self._publish(DownloadProgress(job.episode_id, downloaded, total))

    def _remove_quietly(self, path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")

    def _publish(self, event) -> None:
        if self.events is not None:
            self.events.publish(event)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work; with `wait`, finish queued and running downloads first."""
        with self._jobs_lock:
            self._accepting = False
        if wait:
            self.wait()
            return
        for episode_id in self.active_downloads():
            self.cancel(episode_id)

    def close(self):
        """Close the downloader and release resources."""
        self.shutdown(wait=True)
        self._session.close()
