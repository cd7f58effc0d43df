# backend/possync/client/triggers.py
"""
When to sync.

Triggers: app resume, connectivity restored (offline -> online only), manual
(pull-to-refresh) and force. Automatic triggers respect a minimum interval
since the last completed sync; manual and force do not.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional


logger = logging.getLogger(__name__)

LAST_TRIGGERED_SYNC_KEY = "last_triggered_sync_at"

APP_RESUME = "app_resume"
NETWORK_RESTORED = "network_restored"
MANUAL = "manual"
FORCE = "force"

_BYPASS_INTERVAL = (MANUAL, FORCE)


@dataclass
class TriggerResult:
    triggered: bool
    reason: str
    message: str
    result: Optional[object] = None


class SyncTriggerManager:
    def __init__(self, engine, store, *, min_interval: float = 3600.0,
                 clock: Callable[[], float] = time.time, is_online: bool = True):
        self.engine = engine
        self.store = store
        self.min_interval = min_interval
        self.clock = clock
        self.is_online = is_online
        self.last_sync_at = self._load_last_sync()

    @classmethod
    def from_config(cls, engine, store, config) -> "SyncTriggerManager":
        return cls(engine, store, min_interval=config.min_sync_interval)

    def _load_last_sync(self) -> Optional[float]:
        raw = self.store.get_setting(LAST_TRIGGERED_SYNC_KEY)
        if raw is None:
            return None
        try:
            return float(raw)
        except ValueError:
            logger.warning("Ignoring unreadable %s setting: %r", LAST_TRIGGERED_SYNC_KEY, raw)
            return None

    # Events -------------------------------------------------------------------

    def on_app_resume(self) -> TriggerResult:
        return self.trigger(APP_RESUME)

    def on_connectivity_change(self, is_online: bool) -> Optional[TriggerResult]:
        """Returns None when the change does not call for a sync."""
        was_offline = not self.is_online
        self.is_online = bool(is_online)
        if was_offline and self.is_online:
            logger.info("Network restored; triggering sync")
            return self.trigger(NETWORK_RESTORED)
        return None

    def manual_sync(self) -> TriggerResult:
        return self.trigger(MANUAL)

    def force_sync(self) -> TriggerResult:
        self.last_sync_at = None
        return self.trigger(FORCE)

    # Core ---------------------------------------------------------------------

    def trigger(self, reason: str = MANUAL) -> TriggerResult:
        if self.engine.is_syncing:
            return TriggerResult(False, reason, "Sync in progress")
        if not self.is_online:
            return TriggerResult(False, reason, "Device is offline")
        if reason not in _BYPASS_INTERVAL and self.last_sync_at is not None:
            if self.clock() - self.last_sync_at < self.min_interval:
                logger.debug("Too soon since last sync; skipping %s", reason)
                return TriggerResult(False, reason, "Too soon since last sync")

        logger.info("Starting sync (reason: %s)", reason)
        result = self.engine.sync()
        if result.skipped:
            return TriggerResult(False, reason, result.reason or "Sync in progress", result)
        if not result.success:
            return TriggerResult(False, reason, "Sync failed", result)

        self.last_sync_at = self.clock()
        self.store.set_setting(LAST_TRIGGERED_SYNC_KEY, repr(self.last_sync_at))
        return TriggerResult(True, reason, "Sync completed", result)

    def status(self) -> dict:
        return {
            "is_syncing": self.engine.is_syncing,
            "is_online": self.is_online,
            "last_sync_at": self.last_sync_at,
        }
