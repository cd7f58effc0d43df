# backend/possync/client/config.py
from __future__ import annotations

import os
from dataclasses import dataclass


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


@dataclass
class ClientConfig:
    """Device-side settings. Every field can be overridden from the environment."""

    # Sync server base URL (routes live under /api)
    api_url: str = "http://localhost:5000"

    # Seconds before a request counts as failed (offline, not hanging)
    timeout: float = 5.0

    # Minimum seconds between automatic syncs (manual sync ignores it)
    min_sync_interval: float = 3600.0

    # Embedded store location; ":memory:" keeps everything in-process
    local_db: str = "possync-local.sqlite3"

    # Rows per push request; keep at or below the server SYNC_MAX_BATCH
    push_batch_size: int = 500

    @classmethod
    def from_env(cls, **overrides) -> "ClientConfig":
        cfg = cls(
            api_url=os.environ.get("POSSYNC_API_URL", cls.api_url),
            timeout=_env_float("POSSYNC_TIMEOUT", cls.timeout),
            min_sync_interval=_env_float("POSSYNC_MIN_SYNC_INTERVAL", cls.min_sync_interval),
            local_db=os.environ.get("POSSYNC_LOCAL_DB", cls.local_db),
            push_batch_size=_env_int("POSSYNC_PUSH_BATCH_SIZE", cls.push_batch_size),
        )
        for key, value in overrides.items():
            setattr(cfg, key, value)
        return cfg

    @property
    def local_db_url(self) -> str:
        if "://" in self.local_db:
            return self.local_db
        if self.local_db in ("", ":memory:"):
            return "sqlite://"
        return f"sqlite:///{self.local_db}"
