"""Episode action log and merge logic."""

from .models import ActionKind, EpisodeAction
from .log import ActionLog
from .merge import ActionMerger, ApplyOutcome

__all__ = [
    "ActionKind",
    "EpisodeAction",
    "ActionLog",
    "ActionMerger",
    "ApplyOutcome",
]
