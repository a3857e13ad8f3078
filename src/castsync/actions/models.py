"""Episode action value objects and their gpodder wire form."""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Dict, Optional

from ..db.models import ActionOrigin, EpisodeActionRecord

WIRE_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"


class ActionKind:
    """Values of `EpisodeAction.kind`."""

    PLAY = "play"
    DOWNLOAD = "download"
    DELETE = "delete"
    NEW = "new"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"

    # Sent to the episodes endpoint
    EPISODE_KINDS = (PLAY, DOWNLOAD, DELETE, NEW)
    # Sent to the subscriptions endpoint
    SUBSCRIPTION_KINDS = (SUBSCRIBE, UNSUBSCRIBE)


def now_timestamp() -> int:
    return int(datetime.now(UTC).timestamp())


def format_wire_timestamp(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, UTC).strftime(WIRE_TIMESTAMP_FORMAT)


def parse_wire_timestamp(value: Any) -> int:
    """Parse an ISO 8601 timestamp (naive means UTC) or epoch seconds into epoch seconds.

    Raises:
        ValueError: If the value is not a timestamp
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid timestamp: {value!r}")

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return int(parsed.timestamp())


def _optional_int(data: Dict[str, Any], key: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid {key}: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid {key}: {value!r}") from e


@dataclass(frozen=True)
class EpisodeAction:
    """One immutable entry of the action log.

    `seq` is None until the action has been appended to the log.
    """

    kind: str
    podcast_url: str
    timestamp: int
    origin: str = ActionOrigin.LOCAL
    episode_url: Optional[str] = None
    episode_guid: Optional[str] = None
    episode_id: Optional[str] = None
    position: Optional[int] = None
    total: Optional[int] = None
    started: Optional[int] = None
    device: Optional[str] = None
    seq: Optional[int] = None
    pushed: bool = False

    def identity(self) -> tuple:
        """Fields that make two log entries the same action."""
        return (self.podcast_url, self.episode_url, self.kind, self.timestamp, self.position)

    @classmethod
    def from_record(cls, record: EpisodeActionRecord) -> "EpisodeAction":
        return cls(
            kind=record.kind,
            podcast_url=record.podcast_url,
            timestamp=record.timestamp,
            origin=record.origin,
            episode_url=record.episode_url,
            episode_guid=record.episode_guid,
            episode_id=record.episode_id,
            position=record.position,
            total=record.total,
            started=record.started,
            device=record.device,
            seq=record.seq,
            pushed=bool(record.pushed),
        )

    def to_record_fields(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "origin": self.origin,
            "podcast_url": self.podcast_url,
            "episode_url": self.episode_url,
            "episode_guid": self.episode_guid,
            "episode_id": self.episode_id,
            "position": self.position,
            "total": self.total,
            "started": self.started,
            "timestamp": self.timestamp,
            "device": self.device,
            "pushed": self.pushed,
        }

    def to_wire(self, device: Optional[str] = None) -> Dict[str, Any]:
        """Serialize for the gpodder episodes endpoint."""
        data = {
            "podcast": self.podcast_url,
            "episode": self.episode_url,
            "action": self.kind,
            "timestamp": format_wire_timestamp(self.timestamp),
        }
        if device or self.device:
            data["device"] = device or self.device
        if self.episode_guid:
            data["guid"] = self.episode_guid
        if self.kind == ActionKind.PLAY:
            data["started"] = self.started if self.started is not None else 0
            data["position"] = self.position if self.position is not None else 0
            if self.total is not None:
                data["total"] = self.total
        return data

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "EpisodeAction":
        """Build a remote action from a gpodder episode action object.

        Raises:
            ValueError: If required fields are missing or have the wrong type
        """
        if not isinstance(data, dict):
            raise ValueError(f"Episode action must be an object, got {type(data).__name__}")

        try:
            podcast_url = data["podcast"]
            episode_url = data["episode"]
            kind = str(data["action"]).lower()
            timestamp = parse_wire_timestamp(data["timestamp"])
        except KeyError as e:
            raise ValueError(f"Episode action missing field {e}") from e

        if not isinstance(podcast_url, str) or not isinstance(episode_url, str):
            raise ValueError("Episode action podcast/episode must be strings")
        if kind not in ActionKind.EPISODE_KINDS:
            raise ValueError(f"Unknown episode action: {kind}")

        return cls(
            kind=kind,
            podcast_url=podcast_url,
            episode_url=episode_url,
            episode_guid=data.get("guid"),
            timestamp=timestamp,
            origin=ActionOrigin.REMOTE,
            position=_optional_int(data, "position"),
            total=_optional_int(data, "total"),
            started=_optional_int(data, "started"),
            device=data.get("device"),
        )
