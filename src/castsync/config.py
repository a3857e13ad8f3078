import logging
import os
import socket
import subprocess
from typing import Optional

from dotenv import load_dotenv

from .podcast.policy import DEFAULT_POLICY, DOWNLOAD_POLICIES

logger = logging.getLogger(__name__)


def _get_int_env(
    name: str,
    default: int,
    min_val: Optional[int] = None,
    max_val: Optional[int] = None,
) -> int:
    """Parse an integer from an environment variable with validation.

    Args:
        name: Environment variable name.
        default: Default value if env var is not set.
        min_val: Minimum allowed value (inclusive), or None for no minimum.
        max_val: Maximum allowed value (inclusive), or None for no maximum.

    Returns:
        The parsed and validated integer value.

    Raises:
        ValueError: If the value cannot be parsed as an integer or is out of range.
    """
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default

    try:
        value = int(raw)
    except ValueError:
        raise ValueError(
            f"Invalid value for {name}: '{raw}' is not a valid integer"
        )

    if min_val is not None and value < min_val:
        raise ValueError(
            f"Invalid value for {name}: {value} must be >= {min_val}"
        )

    if max_val is not None and value > max_val:
        raise ValueError(
            f"Invalid value for {name}: {value} must be <= {max_val}"
        )

    return value


def _get_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _default_device_id() -> str:
    hostname = socket.gethostname().split(".")[0] or "localhost"
    return f"castsync-{hostname}"


class Config:
    def __init__(self, env_file=None):
        """
        Initialize configuration by loading environment variables and setting default attributes.

        Loads environment variables from the provided .env file path when `env_file` is given; otherwise
        loads from the default environment. After loading, sets the catalog, download, retry and sync
        settings using environment values with defaults.

        Parameters:
            env_file (str | None): Optional path to a .env file to load environment variables from.
        """
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv()

        # Database configuration
        self.DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./castsync.db")
        self.DB_POOL_SIZE = _get_int_env("DB_POOL_SIZE", 5, min_val=1)
        self.DB_MAX_OVERFLOW = _get_int_env("DB_MAX_OVERFLOW", 10, min_val=0)
        self.DB_ECHO = _get_bool_env("DB_ECHO", False)

        # Download configuration
        self.DOWNLOAD_PATH = os.path.expanduser(
            os.getenv("DOWNLOAD_PATH", "~/.local/share/castsync")
        )
        self.SIMULTANEOUS_DOWNLOADS = _get_int_env("SIMULTANEOUS_DOWNLOADS", 3, min_val=1)
        self.MAX_RETRIES = _get_int_env("MAX_RETRIES", 3, min_val=1)
        self.DOWNLOAD_TIMEOUT = _get_int_env("DOWNLOAD_TIMEOUT", 120, min_val=1)
        self.CONNECT_TIMEOUT = _get_int_env("CONNECT_TIMEOUT", 10, min_val=1)
        self.FEED_TIMEOUT = _get_int_env("FEED_TIMEOUT", 20, min_val=1)
        self.DOWNLOAD_CHUNK_SIZE = _get_int_env("DOWNLOAD_CHUNK_SIZE", 8192, min_val=512)
        self.RETRY_BACKOFF_SECONDS = float(os.getenv("RETRY_BACKOFF_SECONDS", "1.0"))
        if self.RETRY_BACKOFF_SECONDS < 0:
            raise ValueError(
                f"RETRY_BACKOFF_SECONDS must be >= 0, got {self.RETRY_BACKOFF_SECONDS}"
            )

        policy = os.getenv("DOWNLOAD_NEW_EPISODES", DEFAULT_POLICY).strip().lower()
        if policy not in DOWNLOAD_POLICIES:
            logger.warning(
                f"Unknown DOWNLOAD_NEW_EPISODES value '{policy}', using '{DEFAULT_POLICY}'"
            )
            policy = DEFAULT_POLICY
        self.DOWNLOAD_NEW_EPISODES = policy

        # gpodder sync configuration
        self.SYNC_ENABLED = _get_bool_env("SYNC_ENABLED", False)
        self.SYNC_SERVER = os.getenv("SYNC_SERVER", "").rstrip("/")
        if self.SYNC_SERVER and not self.SYNC_SERVER.lower().startswith(("http://", "https://")):
            raise ValueError(
                f"SYNC_SERVER must start with http:// or https://, got: {self.SYNC_SERVER}"
            )
        self.SYNC_USERNAME = os.getenv("SYNC_USERNAME", "")
        self.SYNC_PASSWORD = os.getenv("SYNC_PASSWORD", "")
        self.SYNC_PASSWORD_EVAL = os.getenv("SYNC_PASSWORD_EVAL", "")
        self.SYNC_DEVICE_ID = os.getenv("SYNC_DEVICE_ID", "") or _default_device_id()
        self.SYNC_ON_START = _get_bool_env("SYNC_ON_START", True)
        self.SYNC_TIMEOUT = _get_int_env("SYNC_TIMEOUT", 30, min_val=1)
        self.SYNC_BATCH_SIZE = _get_int_env("SYNC_BATCH_SIZE", 30, min_val=1)

    def resolve_sync_password(self) -> str:
        """
        Return the sync password, running SYNC_PASSWORD_EVAL when no password is set.

        The command is run through the shell and its trimmed stdout is used as the password.

        Raises:
            ValueError: If the command fails or prints nothing.
        """
        if self.SYNC_PASSWORD:
            return self.SYNC_PASSWORD
        if not self.SYNC_PASSWORD_EVAL:
            return ""

        try:
            completed = subprocess.run(
                self.SYNC_PASSWORD_EVAL,
                shell=True,
                capture_output=True,
                text=True,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            raise ValueError(
                f"SYNC_PASSWORD_EVAL exited with status {e.returncode}"
            ) from e

        password = completed.stdout.strip()
        if not password:
            raise ValueError("SYNC_PASSWORD_EVAL produced an empty password")
        return password

    def validate_sync(self):
        """
        Validate that the settings needed for gpodder sync are present.

        Raises:
            ValueError: If sync is enabled but the server, username or password is missing
        """
        if not self.SYNC_ENABLED:
            return
        missing = []
        if not self.SYNC_SERVER:
            missing.append("SYNC_SERVER")
        if not self.SYNC_USERNAME:
            missing.append("SYNC_USERNAME")
        if not (self.SYNC_PASSWORD or self.SYNC_PASSWORD_EVAL):
            missing.append("SYNC_PASSWORD or SYNC_PASSWORD_EVAL")
        if missing:
            raise ValueError(
                f"SYNC_ENABLED is set but {', '.join(missing)} not configured"
            )
