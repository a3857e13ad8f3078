"""Podcast download and synchronization engine.

Provides:
- A catalog of podcasts, episodes, queue and sync state (SQLAlchemy)
- Feed fetching and reconciliation
- Bounded concurrent downloads
- An append-only episode action log
- gpodder-compatible state synchronization
"""

__version__ = "0.1.0"

USER_AGENT = f"castsync/{__version__}"
