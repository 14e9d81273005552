# =============================================================================
# tests/unit/test_memory_client.py
# Unit Tests for the in-memory backend and change feeds
# =============================================================================

import threading

import pytest

from conftest import make_patient


class TestInMemoryRemoteClient:

    def test_sync_up_is_idempotent(self, remote, alice):
        from booking_core.models import EntityType

        feed = remote.subscribe(EntityType.PATIENT)
        remote.sync_up(EntityType.PATIENT, [alice])
        remote.sync_up(EntityType.PATIENT, [alice])
        feed.close()

        assert remote.fetch_all(EntityType.PATIENT) == [alice]
        # Only the first call changed anything
        assert len(list(feed)) == 1

    def test_fetch_by_id(self, remote, alice):
        from booking_core.models import EntityType

        remote.put_remote(alice)

        assert remote.fetch_by_id(EntityType.PATIENT, "a") == alice
        assert remote.fetch_by_id(EntityType.PATIENT, "b") is None

    def test_delete(self, remote, alice, bob):
        from booking_core.models import EntityType

        remote.put_remote(alice, bob)

        assert remote.delete(EntityType.PATIENT, ["a", "zzz"]) == 1
        assert remote.remote_ids(EntityType.PATIENT) == {"b"}

    def test_unavailable_switch(self, remote):
        from booking_core.errors import RemoteUnavailable
        from booking_core.models import EntityType

        remote.unavailable.add(EntityType.APPOINTMENT)

        with pytest.raises(RemoteUnavailable):
            remote.fetch_all(EntityType.APPOINTMENT)
        assert remote.fetch_all(EntityType.PATIENT) == []

    def test_rejected_ids(self, remote, alice, bob):
        from booking_core.errors import RemoteRejected
        from booking_core.models import EntityType

        remote.rejected_ids.add("b")

        with pytest.raises(RemoteRejected):
            remote.sync_up(EntityType.PATIENT, [alice, bob])
        assert remote.remote_ids(EntityType.PATIENT) == set()

    def test_malformed_remote_record_skipped(self, remote, alice):
        from booking_core.models import EntityType

        remote.put_remote(alice)
        remote.put_raw(EntityType.PATIENT, {"id": "junk", "name": "Junk"})

        assert remote.fetch_all(EntityType.PATIENT) == [alice]


class TestChangeFeed:

    def test_each_subscribe_is_independent(self, remote, alice):
        from booking_core.models import EntityType

        first = remote.subscribe(EntityType.PATIENT)
        second = remote.subscribe(EntityType.PATIENT)
        first.close()
        remote.put_remote(alice)

        assert next(second).entity_type is EntityType.PATIENT
        assert remote.feed_count(EntityType.PATIENT) == 1
        second.close()

    def test_close_wakes_blocked_reader(self, remote):
        from booking_core.models import EntityType

        feed = remote.subscribe(EntityType.APPOINTMENT)
        results = []
        reader = threading.Thread(target=lambda: results.extend(feed))
        reader.start()
        feed.close()
        reader.join(timeout=5)

        assert not reader.is_alive()
        assert results == []

    def test_failed_feed_raises_after_queued_signals(self, remote, alice):
        from booking_core.errors import RemoteUnavailable
        from booking_core.models import EntityType

        feed = remote.subscribe(EntityType.PATIENT)
        remote.put_remote(alice)
        remote.fail_feeds(EntityType.PATIENT)

        assert next(feed).event == "UPDATE"
        with pytest.raises(RemoteUnavailable):
            next(feed)
        with pytest.raises(RemoteUnavailable):
            next(feed)
        assert feed.failed

    def test_push_after_close_is_ignored(self):
        from booking_core.data import ChangeFeed
        from booking_core.models import EntityType

        feed = ChangeFeed(EntityType.PATIENT)
        feed.close()
        feed.push()

        assert list(feed) == []

    def test_update_on_other_type_not_delivered(self, remote):
        from booking_core.models import EntityType

        feed = remote.subscribe(EntityType.APPOINTMENT)
        remote.put_remote(make_patient("c", "Carol"))
        feed.close()

        assert list(feed) == []
