# =============================================================================
# tests/integration/test_continuous_sync.py
# Integration Tests for notification-driven sync (Feed ↔ Engine ↔ Publisher)
# =============================================================================

import threading
import time

import pytest

from conftest import make_patient


def wait_until(condition, timeout=5.0):
    """Poll until condition() is true."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.005)
    return False


class TestLiveCycles:
    """One merged collection per remote change"""

    def test_each_notification_yields_one_collection(self, engine, remote):
        from booking_core.models import EntityType

        live = engine.subscribe_continuous(EntityType.PATIENT)
        sizes = []
        for i in range(3):
            remote.put_remote(make_patient(f"p{i}", f"Patient {i}"))
            sizes.append(len(next(live)))
        live.cancel()

        assert sizes == [1, 2, 3]
        assert live.cycles == 3
        with pytest.raises(StopIteration):
            next(live)

    def test_burst_of_notifications_is_not_dropped(self, engine, remote):
        """Three changes in quick succession -> exactly three cycles"""
        from booking_core.models import EntityType

        live = engine.subscribe_continuous(EntityType.APPOINTMENT)
        for _ in range(3):
            remote.emit_change(EntityType.APPOINTMENT, event="INSERT")

        emitted = [next(live) for _ in range(3)]
        live.cancel()

        assert len(emitted) == 3
        assert live.cycles == 3
        assert list(live) == []

    def test_cycle_persists_locally_without_pushing(self, engine, store, remote, alice, bob):
        from booking_core.models import EntityType

        store.upsert(alice)
        live = engine.subscribe_continuous(EntityType.PATIENT)
        remote.put_remote(bob)

        merged = next(live)
        live.cancel()

        assert set(merged) == {alice, bob}
        assert set(store.snapshot(EntityType.PATIENT)) == {alice, bob}
        assert remote.sync_up_calls == []

    def test_feed_opened_at_subscription(self, engine, remote, alice):
        """A change made before the first next() is not missed"""
        from booking_core.models import EntityType

        live = engine.subscribe_continuous(EntityType.PATIENT)
        assert remote.feed_count(EntityType.PATIENT) == 1

        remote.put_remote(alice)
        assert next(live) == [alice]
        live.cancel()


class TestCancellation:

    def test_cancel_from_another_thread(self, engine, remote):
        from booking_core.models import EntityType

        live = engine.subscribe_continuous(EntityType.APPOINTMENT)
        collected = []
        reader = threading.Thread(target=lambda: collected.extend(live))
        reader.start()

        time.sleep(0.05)
        live.cancel()
        reader.join(timeout=5)

        assert not reader.is_alive()
        assert collected == []
        assert remote.feed_count(EntityType.APPOINTMENT) == 0

    def test_cancel_before_iterating(self, engine):
        from booking_core.models import EntityType

        live = engine.subscribe_continuous(EntityType.PATIENT)
        live.cancel()

        assert list(live) == []
        assert live.cancelled


class TestCycleErrors:
    """Transient failures skip a cycle; local store failures end the sequence"""

    @pytest.mark.parametrize("error_name", ["RemoteUnavailable", "RemoteRejected", "MergeInvariantViolation"])
    def test_transient_error_skips_cycle(self, engine, remote, monkeypatch, error_name):
        from booking_core import errors
        from booking_core.models import EntityType

        error_cls = getattr(errors, error_name)
        real_refresh = engine.refresh
        calls = []

        def flaky_refresh(entity_type):
            calls.append(entity_type)
            if len(calls) == 1:
                raise error_cls("first cycle fails")
            return real_refresh(entity_type)

        monkeypatch.setattr(engine, "refresh", flaky_refresh)
        live = engine.subscribe_continuous(EntityType.PATIENT)
        remote.emit_change(EntityType.PATIENT)
        remote.put_remote(make_patient("a", "Alice"))

        merged = next(live)
        live.cancel()

        assert [p.id for p in merged] == ["a"]
        assert len(calls) == 2
        assert live.cycles == 1

    def test_duplicate_remote_records_skip_cycle(self, store, publisher, sync_config):
        from booking_core.data import InMemoryRemoteClient
        from booking_core.models import EntityType
        from booking_core.offline import SyncEngine

        class Duplicating(InMemoryRemoteClient):
            broken = True

            def fetch_all(self, entity_type):
                entities = super().fetch_all(entity_type)
                return entities + entities if self.broken else entities

        remote = Duplicating()
        engine = SyncEngine(store, remote, publisher, sync_config)

        def heal(state):
            if state.phase.value == "failed":
                remote.broken = False

        engine.register_callback(heal)
        live = engine.subscribe_continuous(EntityType.PATIENT)
        remote.put_remote(make_patient("a", "Alice"))
        remote.emit_change(EntityType.PATIENT)

        merged = next(live)
        live.cancel()

        assert [p.id for p in merged] == ["a"]
        assert engine.state(EntityType.PATIENT).failed_count == 1

    def test_local_store_error_is_terminal(self, engine, remote, monkeypatch):
        from booking_core.errors import LocalStoreError
        from booking_core.models import EntityType

        def broken_refresh(entity_type):
            raise LocalStoreError("disk I/O error", table=entity_type.table, operation="upsert")

        monkeypatch.setattr(engine, "refresh", broken_refresh)
        live = engine.subscribe_continuous(EntityType.PATIENT)
        remote.emit_change(EntityType.PATIENT)

        with pytest.raises(LocalStoreError):
            next(live)
        with pytest.raises(StopIteration):
            next(live)
        assert remote.feed_count(EntityType.PATIENT) == 0


class TestResubscribe:
    """Dead change feeds are reopened with backoff"""

    def test_lost_feed_is_reopened(self, engine, remote, alice):
        from booking_core.models import EntityType

        live = engine.subscribe_continuous(EntityType.PATIENT)
        remote.fail_feeds(EntityType.PATIENT)

        results = []
        reader = threading.Thread(target=lambda: results.append(next(live)))
        reader.start()

        assert wait_until(lambda: remote.feed_count(EntityType.PATIENT) == 1)
        remote.put_remote(alice)
        reader.join(timeout=5)
        live.cancel()

        assert results == [[alice]]

    def test_subscribe_while_offline_recovers(self, engine, remote, alice):
        from booking_core.models import EntityType

        remote.unavailable.add(EntityType.PATIENT)
        live = engine.subscribe_continuous(EntityType.PATIENT)
        assert remote.feed_count(EntityType.PATIENT) == 0
        remote.unavailable.clear()

        results = []
        reader = threading.Thread(target=lambda: results.append(next(live)))
        reader.start()

        assert wait_until(lambda: remote.feed_count(EntityType.PATIENT) == 1)
        remote.put_remote(alice)
        reader.join(timeout=5)
        live.cancel()

        assert results == [[alice]]

    def test_gives_up_after_max_attempts(self, engine, remote):
        from booking_core.errors import RemoteUnavailable
        from booking_core.models import EntityType

        live = engine.subscribe_continuous(EntityType.PATIENT)
        remote.unavailable.add(EntityType.PATIENT)
        remote.fail_feeds(EntityType.PATIENT)

        with pytest.raises(RemoteUnavailable, match="resubscribe"):
            next(live)
        with pytest.raises(StopIteration):
            next(live)


class TestBackgroundSync:
    """engine.start() drives every type and publishes the results"""

    def test_start_publishes_remote_changes(self, engine, remote, publisher, alice):
        from booking_core.models import EntityType

        received = threading.Event()
        publisher.subscribe(
            EntityType.PATIENT,
            lambda items: alice in items and received.set(),
        )

        engine.start()
        assert wait_until(lambda: remote.feed_count(EntityType.PATIENT) == 1
                          and remote.feed_count(EntityType.APPOINTMENT) == 1)
        assert engine.get_status_display()["patients"]["live"]

        remote.put_remote(alice)
        assert received.wait(timeout=5)

        engine.stop()
        assert not engine.get_status_display()["patients"]["live"]
        assert remote.feed_count(EntityType.PATIENT) == 0

    def test_start_twice_keeps_one_loop_per_type(self, engine, remote):
        from booking_core.models import EntityType

        engine.start()
        engine.start()

        assert remote.feed_count(EntityType.APPOINTMENT) == 1
        engine.stop()
