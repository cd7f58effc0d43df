# Overview: Pytest coverage for sync trigger throttling and connectivity handling.

import pytest

from possync.client import ClientConfig, LocalStore, SyncResult, SyncTriggerManager
from possync.client.triggers import LAST_TRIGGERED_SYNC_KEY


class FakeEngine:
    def __init__(self):
        self.is_syncing = False
        self.calls = 0
        self.next_result = SyncResult(success=True)

    def sync(self):
        self.calls += 1
        return self.next_result


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def store():
    store = LocalStore("sqlite://")
    yield store
    store.close()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manager(engine, store, clock):
    return SyncTriggerManager(engine, store, min_interval=3600, clock=clock)


class TestThrottle:
    def test_first_resume_syncs(self, manager, engine):
        result = manager.on_app_resume()
        assert result.triggered is True
        assert result.message == "Sync completed"
        assert engine.calls == 1

    def test_resume_inside_interval_is_skipped(self, manager, engine, clock):
        manager.on_app_resume()
        clock.advance(600)

        result = manager.on_app_resume()

        assert result.triggered is False
        assert result.message == "Too soon since last sync"
        assert engine.calls == 1

    def test_resume_after_interval_syncs(self, manager, engine, clock):
        manager.on_app_resume()
        clock.advance(3601)
        assert manager.on_app_resume().triggered is True
        assert engine.calls == 2

    def test_manual_sync_ignores_interval(self, manager, engine, clock):
        manager.on_app_resume()
        clock.advance(5)
        result = manager.manual_sync()
        assert result.triggered is True
        assert result.reason == "manual"
        assert engine.calls == 2

    def test_force_sync_resets_last_sync(self, manager, engine, clock):
        manager.on_app_resume()
        clock.advance(5)
        assert manager.force_sync().triggered is True
        assert manager.last_sync_at == clock.now

    def test_failed_sync_does_not_move_the_clock(self, manager, engine, clock):
        engine.next_result = SyncResult(success=False, error="timed out")
        result = manager.on_app_resume()

        assert result.triggered is False
        assert result.message == "Sync failed"
        assert manager.last_sync_at is None

        # Next automatic trigger is not throttled by the failure
        engine.next_result = SyncResult(success=True)
        clock.advance(1)
        assert manager.on_app_resume().triggered is True


class TestRefusals:
    def test_sync_in_progress(self, manager, engine):
        engine.is_syncing = True
        result = manager.manual_sync()
        assert result.triggered is False
        assert result.message == "Sync in progress"
        assert engine.calls == 0

    def test_engine_guard_skip_is_reported(self, manager, engine):
        engine.next_result = SyncResult(success=False, skipped=True, reason="Sync in progress")
        result = manager.manual_sync()
        assert result.triggered is False
        assert result.message == "Sync in progress"
        assert manager.last_sync_at is None

    def test_offline(self, manager, engine):
        manager.on_connectivity_change(False)
        result = manager.manual_sync()
        assert result.triggered is False
        assert result.message == "Device is offline"
        assert engine.calls == 0


class TestConnectivity:
    def test_only_offline_to_online_triggers(self, manager, engine):
        assert manager.on_connectivity_change(True) is None
        assert manager.on_connectivity_change(False) is None
        assert engine.calls == 0

        result = manager.on_connectivity_change(True)
        assert result.triggered is True
        assert result.reason == "network_restored"
        assert engine.calls == 1

    def test_restored_network_still_respects_interval(self, manager, engine, clock):
        manager.on_app_resume()
        manager.on_connectivity_change(False)
        clock.advance(60)

        result = manager.on_connectivity_change(True)

        assert result.triggered is False
        assert result.message == "Too soon since last sync"

    def test_status(self, manager):
        manager.on_connectivity_change(False)
        assert manager.status() == {"is_syncing": False, "is_online": False, "last_sync_at": None}


class TestPersistence:
    def test_last_sync_survives_restart(self, store, engine, clock):
        SyncTriggerManager(engine, store, clock=clock).on_app_resume()
        assert float(store.get_setting(LAST_TRIGGERED_SYNC_KEY)) == clock.now

        clock.advance(60)
        restarted = SyncTriggerManager(engine, store, clock=clock)

        assert restarted.last_sync_at == clock.now - 60
        assert restarted.on_app_resume().message == "Too soon since last sync"

    def test_unreadable_setting_is_ignored(self, store, engine, clock):
        store.set_setting(LAST_TRIGGERED_SYNC_KEY, "yesterday")
        manager = SyncTriggerManager(engine, store, clock=clock)
        assert manager.last_sync_at is None

    def test_interval_from_config(self, store, engine):
        manager = SyncTriggerManager.from_config(engine, store, ClientConfig(min_sync_interval=10))
        assert manager.min_interval == 10
