"""Download policy for newly discovered episodes.

Kept apart from reconciliation: the reconciler reports what is new, this
module decides what to do about it.
"""

from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

from ..db.models import Episode

POLICY_ALWAYS = "always"
POLICY_ASK_SELECTED = "ask-selected"
POLICY_ASK_UNSELECTED = "ask-unselected"
POLICY_NEVER = "never"

DOWNLOAD_POLICIES = (POLICY_ALWAYS, POLICY_ASK_SELECTED, POLICY_ASK_UNSELECTED, POLICY_NEVER)
DEFAULT_POLICY = POLICY_ASK_UNSELECTED


@dataclass
class DownloadDecision:
    """What to do with a batch of new episodes.

    Attributes:
        auto: Episode ids to enqueue for download right away
        prompt: (episode id, preselected) pairs for the user to confirm
    """

    auto: List[str] = field(default_factory=list)
    prompt: List[Tuple[str, bool]] = field(default_factory=list)

    @property
    def needs_prompt(self) -> bool:
        return bool(self.prompt)


def evaluate_download_policy(policy: str, new_episodes: Sequence[Episode]) -> DownloadDecision:
    """
    Apply a download policy to the episodes a feed refresh just discovered.

    Parameters:
        policy (str): One of "always", "ask-selected", "ask-unselected" or "never".
        new_episodes (Sequence[Episode]): Episodes reported as new by the reconciler.

    Returns:
        DownloadDecision: Episodes to download now and episodes to offer to the user.

    Raises:
        ValueError: If `policy` is not a known policy name.
    """
    if policy not in DOWNLOAD_POLICIES:
        raise ValueError(f"Unknown download policy: {policy}")

    decision = DownloadDecision()
    if not new_episodes or policy == POLICY_NEVER:
        return decision

    if policy == POLICY_ALWAYS:
        decision.auto = [episode.id for episode in new_episodes]
    else:
        preselected = policy == POLICY_ASK_SELECTED
        decision.prompt = [(episode.id, preselected) for episode in new_episodes]
    return decision
