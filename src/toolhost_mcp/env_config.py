"""
Environment configuration for toolhost-mcp.

Loads environment variables from:
1. The .env file named by TOOLHOST_ENV_FILE (default ~/.toolhost/.env), if it exists
2. System environment variables (which override .env values)
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

# Path to the per-user .env file
ENV_FILE = Path(os.getenv("TOOLHOST_ENV_FILE", str(Path.home() / ".toolhost" / ".env")))

DEFAULT_HOME = Path.home() / ".toolhost"


def load_env_file(env_file: Optional[Path] = None):
    """Load environment variables from .env file if it exists."""
    env_file = env_file or ENV_FILE
    if not env_file.exists():
        return

    with open(env_file) as f:
        for line in f:
            line = line.strip()

            # Skip comments and empty lines
            if not line or line.startswith("#"):
                continue

            # Parse KEY=VALUE
            if "=" in line:
                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip().strip('"').strip("'")

                # Only set if not already in environment
                if key not in os.environ:
                    os.environ[key] = value


# Load .env file when module is imported
load_env_file()


def get_env(key: str, default: Optional[str] = None) -> Optional[str]:
    """Get environment variable with optional default."""
    return os.getenv(key, default)


def get_int_env(key: str, default: int) -> int:
    """Get an integer environment variable, raising ValueError on garbage."""
    value = os.getenv(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {value!r}")


def get_float_env(key: str, default: float) -> float:
    """Get a float environment variable, raising ValueError on garbage."""
    value = os.getenv(key)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {value!r}")


@dataclass
class ClientSettings:
    """Tunables for the MCP client, read from the environment."""

    config_path: Path = DEFAULT_HOME / "mcp.json"
    log_dir: Path = DEFAULT_HOME / "logs"
    health_interval: float = 30.0
    failure_threshold: int = 3
    backoff_base: float = 1.0
    backoff_cap: float = 30.0
    max_connect_attempts: int = 5
    test_timeout: float = 15.0
    sentry_dsn: Optional[str] = None
    sentry_environment: str = "development"
    sentry_release: Optional[str] = None
    api_token: Optional[str] = None

    @classmethod
    def from_env(cls) -> "ClientSettings":
        settings = cls(
            config_path=Path(get_env("TOOLHOST_CONFIG_PATH", str(DEFAULT_HOME / "mcp.json"))).expanduser(),
            log_dir=Path(get_env("TOOLHOST_LOG_DIR", str(DEFAULT_HOME / "logs"))).expanduser(),
            health_interval=get_float_env("TOOLHOST_HEALTH_INTERVAL", 30.0),
            failure_threshold=get_int_env("TOOLHOST_FAILURE_THRESHOLD", 3),
            backoff_base=get_float_env("TOOLHOST_BACKOFF_BASE", 1.0),
            backoff_cap=get_float_env("TOOLHOST_BACKOFF_CAP", 30.0),
            max_connect_attempts=get_int_env("TOOLHOST_MAX_CONNECT_ATTEMPTS", 5),
            test_timeout=get_float_env("TOOLHOST_TEST_TIMEOUT", 15.0),
            sentry_dsn=get_env("SENTRY_DSN") or None,
            sentry_environment=get_env("SENTRY_ENVIRONMENT", "development"),
            sentry_release=get_env("SENTRY_RELEASE") or None,
            api_token=get_env("TOOLHOST_API_TOKEN") or None,
        )
        if settings.failure_threshold < 1:
            raise ValueError("TOOLHOST_FAILURE_THRESHOLD must be at least 1")
        if settings.max_connect_attempts < 1:
            raise ValueError("TOOLHOST_MAX_CONNECT_ATTEMPTS must be at least 1")
        return settings

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based): base doubling, capped."""
        return min(self.backoff_base * (2 ** max(attempt - 1, 0)), self.backoff_cap)
