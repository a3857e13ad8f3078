"""Headless runner: refresh feeds, sync with the server and run auto-downloads.

Usage:
    python -m castsync [--env-file PATH] [--log-level LEVEL] [--no-download]
"""

import argparse
import logging
import sys
from typing import List, Optional

from .config import Config
from .engine import PodcastEngine
from .podcast.policy import POLICY_NEVER

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="castsync",
        description="Refresh podcast feeds, download new episodes and sync with a gpodder server",
    )
    parser.add_argument("-e", "--env-file", help="Path to a custom .env file", default=None)
    parser.add_argument(
        "-l",
        "--log-level",
        help="Set log level (DEBUG, INFO, WARNING, ERROR)",
        default="INFO",
    )
    parser.add_argument(
        "--no-download",
        action="store_true",
        help="Refresh and sync only; do not start any download",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the headless runner. Returns the process exit code."""
    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        config = Config(env_file=args.env_file)
        if args.no_download:
            config.DOWNLOAD_NEW_EPISODES = POLICY_NEVER
        # Refresh and sync always run here, whatever SYNC_ON_START says
        config.SYNC_ON_START = True
        engine = PodcastEngine(config)
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 2

    exit_code = 0
    with engine:
        summary = engine.start()

        feeds = summary["feeds"] or {}
        print(
            f"Feeds: {feeds.get('synced', 0)} synced, {feeds.get('failed', 0)} failed, "
            f"{feeds.get('new_episodes', 0)} new episodes"
        )

        sync = summary["sync"]
        if sync is not None:
            if sync.success:
                print(
                    f"Sync: pushed {sync.pushed_actions}, pulled {sync.pulled_actions}, "
                    f"applied {sync.applied_actions}"
                )
            else:
                retry = "retryable" if sync.retryable else "not retryable"
                print(f"Sync failed during {sync.phase} ({retry}): {sync.error}")
                exit_code = 1

        prompts = engine.pending_download_prompts()
        if prompts:
            waiting = sum(len(items) for items in prompts.values())
            print(f"{waiting} new episodes are waiting for a download decision")

        engine.downloads.wait()

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
