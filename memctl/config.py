"""Configuration for the memctl client.

Credential resolution from config files lives with the CLI; this module only
describes what a client instance needs and how to read it from the environment.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

DEFAULT_CACHE_DIR = Path.home() / ".memctl"


def default_cache_dir() -> Path:
    """Directory for the offline cache database and pending writes file."""
    override = os.environ.get("MEMCTL_CACHE_DIR")
    if override:
        return Path(override).expanduser()
    return DEFAULT_CACHE_DIR


@dataclass
class ClientConfig:
    """Settings for a SyncClient instance."""

    base_url: str
    token: str
    org: str
    project: str
    cache_dir: Path = field(default_factory=default_cache_dir)

    # Network
    request_timeout: float = 30.0
    probe_timeout: float = 5.0

    # In-memory freshness cache
    fresh_window: float = 30.0
    stale_window: Optional[float] = None  # None: serve stale until replaced

    # Offline store
    durable_cache: bool = True  # False: in-memory offline cache only
    offline_stale_after: float = 300.0
    queue_failed_writes: bool = True

    def __post_init__(self):
        self.base_url = self.base_url.rstrip("/")
        self.cache_dir = Path(self.cache_dir).expanduser()

    @property
    def database_path(self) -> Path:
        return self.cache_dir / "cache.db"

    @property
    def pending_writes_path(self) -> Path:
        return self.cache_dir / "pending-writes.json"

    @classmethod
    def from_env(cls, **overrides) -> "ClientConfig":
        """Build a config from MEMCTL_* environment variables.

        Args:
            **overrides: Values that take precedence over the environment

        Returns:
            ClientConfig

        Raises:
            ValueError: A required setting is missing
        """
        values = {
            "base_url": os.environ.get("MEMCTL_API_URL"),
            "token": os.environ.get("MEMCTL_TOKEN"),
            "org": os.environ.get("MEMCTL_ORG"),
            "project": os.environ.get("MEMCTL_PROJECT"),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})

        missing = [
            name
            for name in ("base_url", "token", "org", "project")
            if not values.get(name)
        ]
        if missing:
            raise ValueError(f"Missing memctl settings: {', '.join(missing)}")

        timeout = os.environ.get("MEMCTL_REQUEST_TIMEOUT")
        if timeout and "request_timeout" not in overrides:
            values["request_timeout"] = float(timeout)

        return cls(**values)
