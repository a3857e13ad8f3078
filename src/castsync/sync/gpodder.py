"""Client for the gpodder.net v2 API (and compatible servers).

Only the endpoints needed for subscription and episode-action sync are
wrapped. Every request is authenticated with HTTP Basic auth, retried on
transient failures and mapped onto the sync error taxonomy.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests
from requests.adapters import HTTPAdapter

from .. import USER_AGENT
from ..actions.models import EpisodeAction
from ..errors import (
    SyncAuthError,
    SyncMalformedResponseError,
    SyncNetworkError,
    SyncProtocolError,
)
from ..utils.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


@dataclass
class Device:
    id: str
    caption: str = ""
    type: str = "other"
    subscriptions: int = 0


@dataclass
class SubscriptionChanges:
    """Subscription adds and removes reported by the server since a timestamp."""

    add: List[str] = field(default_factory=list)
    remove: List[str] = field(default_factory=list)
    timestamp: int = 0
    update_urls: List[Tuple[str, str]] = field(default_factory=list)


@dataclass
class UploadResult:
    timestamp: int = 0
    update_urls: List[Tuple[str, str]] = field(default_factory=list)


@dataclass
class EpisodeActionChanges:
    """Episode actions reported by the server since a timestamp, in server order."""

    actions: List[EpisodeAction] = field(default_factory=list)
    timestamp: int = 0
    skipped: int = 0


def _parse_timestamp(data: Dict[str, Any]) -> int:
    value = data.get("timestamp")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SyncMalformedResponseError(f"Response has no numeric timestamp: {value!r}")
    return int(value)


def _parse_count(value: Any, key: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        raise SyncMalformedResponseError(f"Invalid '{key}' count: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise SyncMalformedResponseError(f"Invalid '{key}' count: {value!r}") from e


def _parse_url_list(data: Dict[str, Any], key: str) -> List[str]:
    value = data.get(key, [])
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise SyncMalformedResponseError(f"Expected a list of URLs for '{key}'")
    return value


def _parse_update_urls(data: Dict[str, Any]) -> List[Tuple[str, str]]:
    value = data.get("update_urls") or []
    if not isinstance(value, list):
        raise SyncMalformedResponseError("Expected a list for 'update_urls'")
    pairs = []
    for item in value:
        if not isinstance(item, (list, tuple)) or len(item) != 2:
            raise SyncMalformedResponseError(f"Invalid update_urls entry: {item!r}")
        old, new = item
        # Servers report "" when a submitted URL was rejected
        if isinstance(old, str) and isinstance(new, str) and new and old != new:
            pairs.append((old, new))
    return pairs


class GpodderClient:
    """Wire adapter for one gpodder account and device.

    Example:
        client = GpodderClient("https://gpodder.net", "user", "secret", "laptop")
        client.ensure_device()
        changes = client.get_episode_actions(since=0)
    """

    def __init__(
        self,
        server: str,
        username: str,
        password: str,
        device_id: str,
        timeout: int = 30,
        retry_policy: Optional[RetryPolicy] = None,
        user_agent: str = USER_AGENT,
        session: Optional[requests.Session] = None,
    ):
        """
        Create a client bound to one account and device.

        Parameters:
            server (str): Base URL of the server, without the `/api/2` suffix.
            username (str): Account name.
            password (str): Account password, sent with HTTP Basic auth.
            device_id (str): Device id registered for this client.
            timeout (int): Connect and read timeout in seconds.
            retry_policy (Optional[RetryPolicy]): Attempts and backoff for transient failures.
            session (Optional[requests.Session]): Session to use instead of creating one.
        """
        self.server = server.rstrip("/")
        self.username = username
        self.device_id = device_id
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.session = session or self._create_session(user_agent)
        self.session.auth = (username, password)
        self._logged_in = False

    def _create_session(self, user_agent: str) -> requests.Session:
        session = requests.Session()
        # Retries are handled per request by tenacity
        adapter = HTTPAdapter(max_retries=0)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.headers.update({"User-Agent": user_agent})
        return session

    # --- Transport ---

    def _url(self, path: str) -> str:
        return f"{self.server}/api/2/{path}"

    def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Any = None,
    ) -> requests.Response:
        url = self._url(path)
        logger.debug(f"{method} {url} params={params}")
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=payload,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise SyncNetworkError(f"Timeout calling {path}: {e}") from e
        except requests.ConnectionError as e:
            raise SyncNetworkError(f"Connection error calling {path}: {e}") from e
        except requests.RequestException as e:
            raise SyncNetworkError(f"Request to {path} failed: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise SyncAuthError(f"Server rejected credentials for {self.username} ({status})")
        if status == 429 or status >= 500:
            raise SyncNetworkError(f"Server returned {status} for {path}")
        if status >= 400:
            raise SyncProtocolError(f"Server returned {status} for {path}", status=status)
        return response

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Any = None,
        expect_json: bool = True,
    ) -> Any:
        """Send a request with retries and return the decoded JSON body."""
        response = call_with_retry(
            lambda: self._send(method, path, params=params, payload=payload),
            self.retry_policy,
            retry_on=(SyncNetworkError,),
        )
        if not expect_json:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise SyncMalformedResponseError(f"Invalid JSON from {path}: {e}") from e

    def _request_object(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        data = self._request(method, path, **kwargs)
        if not isinstance(data, dict):
            raise SyncMalformedResponseError(f"Expected a JSON object from {path}")
        return data

    # --- Account and device ---

    def login(self) -> None:
        """Authenticate with the server. Raises SyncAuthError on bad credentials."""
        self._request("POST", f"auth/{self.username}/login.json", expect_json=False)
        self._logged_in = True
        logger.info(f"Logged in to {self.server} as {self.username}")

    def get_devices(self) -> List[Device]:
        data = self._request("GET", f"devices/{self.username}.json")
        if not isinstance(data, list):
            raise SyncMalformedResponseError("Expected a list of devices")
        devices = []
        for item in data:
            if not isinstance(item, dict) or not isinstance(item.get("id"), str):
                raise SyncMalformedResponseError(f"Invalid device entry: {item!r}")
            devices.append(
                Device(
                    id=item["id"],
                    caption=item.get("caption") or "",
                    type=item.get("type") or "other",
                    subscriptions=_parse_count(item.get("subscriptions"), "subscriptions"),
                )
            )
        return devices

    def register_device(self, caption: str = "", device_type: str = "laptop") -> None:
        self._request(
            "POST",
            f"devices/{self.username}/{self.device_id}.json",
            payload={"caption": caption, "type": device_type},
            expect_json=False,
        )
        logger.info(f"Registered device {self.device_id}")

    def ensure_device(self) -> None:
        """Log in if needed and register this device unless the server already knows it."""
        if not self._logged_in:
            self.login()
        for device in self.get_devices():
            if device.id == self.device_id:
                logger.info(
                    f"Using device: id = {device.id}, type = {device.type}, "
                    f"subscriptions = {device.subscriptions}"
                )
                return
        self.register_device()

    # --- Subscriptions ---

    def get_subscription_changes(self, since: int = 0) -> SubscriptionChanges:
        """
        Fetch subscription changes for this device.

        A `since` of 0 returns every current subscription as an add.
        """
        data = self._request_object(
            "GET",
            f"subscriptions/{self.username}/{self.device_id}.json",
            params={"since": int(since)},
        )
        changes = SubscriptionChanges(
            add=_parse_url_list(data, "add"),
            remove=_parse_url_list(data, "remove"),
            timestamp=_parse_timestamp(data),
            update_urls=_parse_update_urls(data),
        )
        for url in changes.add:
            logger.info(f"Podcast added remotely: {url}")
        for url in changes.remove:
            logger.info(f"Podcast removed remotely: {url}")
        return changes

    def upload_subscription_changes(
        self, add: Sequence[str] = (), remove: Sequence[str] = ()
    ) -> UploadResult:
        data = self._request_object(
            "POST",
            f"subscriptions/{self.username}/{self.device_id}.json",
            payload={"add": list(add), "remove": list(remove)},
        )
        result = UploadResult(timestamp=_parse_timestamp(data), update_urls=_parse_update_urls(data))
        for old, new in result.update_urls:
            logger.info(f"URL changed {old} {new}")
        return result

    # --- Episode actions ---

    def upload_episode_actions(self, actions: Sequence[EpisodeAction]) -> UploadResult:
        """Upload episode actions. The server accepts a request entirely or not at all."""
        payload = [action.to_wire(self.device_id) for action in actions]
        data = self._request_object("POST", f"episodes/{self.username}.json", payload=payload)
        result = UploadResult(timestamp=_parse_timestamp(data), update_urls=_parse_update_urls(data))
        logger.info(f"Uploaded {len(payload)} episode actions")
        return result

    def get_episode_actions(self, since: int = 0) -> EpisodeActionChanges:
        """Fetch episode actions from all devices since a server timestamp."""
        data = self._request_object(
            "GET", f"episodes/{self.username}.json", params={"since": int(since)}
        )
        raw_actions = data.get("actions")
        if not isinstance(raw_actions, list):
            raise SyncMalformedResponseError("Response has no 'actions' list")

        changes = EpisodeActionChanges(timestamp=_parse_timestamp(data))
        for item in raw_actions:
            try:
                changes.actions.append(EpisodeAction.from_wire(item))
            except ValueError as e:
                changes.skipped += 1
                logger.warning(f"Skipping invalid episode action: {e}")
        logger.debug(
            f"Fetched {len(changes.actions)} episode actions since {since} "
            f"(skipped {changes.skipped})"
        )
        return changes

    def close(self) -> None:
        self.session.close()
