# =============================================================================
# tests/unit/test_merge.py
# Unit Tests for the merge engine
# =============================================================================

import pytest

from conftest import make_appointment, make_patient


class TestMergeProperties:
    """Algebraic properties every merge must satisfy"""

    def test_merge_with_itself_is_identity(self, alice, bob):
        """merge(X, X) == X"""
        from booking_core.offline.merge import merge

        collection = [alice, bob]
        assert set(merge(collection, collection)) == set(collection)

    def test_every_identifier_survives(self, alice, bob):
        """Every id present on either side is present in the result"""
        from booking_core.offline.merge import merge

        local = [alice, make_patient("c", "Carol")]
        remote = [bob, make_patient("c", "Caroline", updated_at=2_000)]

        assert {e.id for e in merge(local, remote)} == {"a", "b", "c"}

    def test_disjoint_sides_lose_nothing(self, alice, bob):
        """Disjoint inputs produce |L| + |R| records"""
        from booking_core.offline.merge import merge

        local = [alice, make_patient("c", "Carol")]
        remote = [bob]

        result = merge(local, remote)
        assert len(result) == 3
        assert set(result) == {alice, bob, local[1]}

    def test_empty_inputs(self):
        from booking_core.offline.merge import merge

        assert merge([], []) == []


class TestConflictResolution:
    """Same identifier on both sides"""

    def test_latest_update_wins(self):
        from booking_core.offline.merge import merge

        older = make_patient("a", "Alice", updated_at=1_000)
        newer = make_patient("a", "Alice Cooper", updated_at=2_000)

        assert merge([older], [newer]) == [newer]
        assert merge([newer], [older]) == [newer]

    def test_equal_stamps_resolve_the_same_either_way(self):
        """Differing notes, same stamp: one winner regardless of argument order"""
        from booking_core.offline.merge import merge

        mine = make_appointment("x", "a", notes="bring referral")
        theirs = make_appointment("x", "a", notes="fasting required")

        forward = merge([mine], [theirs])
        backward = merge([theirs], [mine])

        assert len(forward) == 1
        assert forward == backward
        assert forward[0] in (mine, theirs)

    def test_resolve_conflict_is_symmetric(self):
        from booking_core.offline.merge import resolve_conflict

        a = make_appointment("x", "a", notes="one")
        b = make_appointment("x", "a", notes="two")

        assert resolve_conflict(a, b) == resolve_conflict(b, a)

    def test_reconcile_counts(self, alice, bob):
        from booking_core.offline.merge import reconcile

        changed = make_patient("b", "Bobby", updated_at=5_000)
        result = reconcile([alice, bob], [changed, make_patient("c", "Carol")])

        assert result.local_only == 1
        assert result.remote_only == 1
        assert result.conflicts == 1
        assert result.summary()["merged"] == 3


class TestTombstones:
    """Delete-log handling"""

    def test_tombstone_suppresses_older_record(self, alice):
        """A remote copy older than the local delete is not resurrected"""
        from booking_core.offline.merge import reconcile

        result = reconcile([], [alice], tombstones={"a": 1_500})

        assert result.entities == []
        assert result.suppressed == ["a"]

    def test_tombstone_at_same_stamp_suppresses(self, alice):
        from booking_core.offline.merge import merge

        assert merge([], [alice], tombstones={"a": alice.updated_at}) == []

    def test_edit_after_delete_revives(self):
        from booking_core.offline.merge import reconcile

        edited = make_patient("a", "Alice", updated_at=3_000)
        result = reconcile([], [edited], tombstones={"a": 2_000})

        assert result.entities == [edited]
        assert result.revived == ["a"]

    def test_unrelated_tombstones_are_ignored(self, alice, bob):
        from booking_core.offline.merge import merge

        assert set(merge([alice], [bob], tombstones={"zzz": 9_999})) == {alice, bob}


class TestInvariantViolations:
    """Malformed inputs are surfaced, never silently resolved"""

    def test_duplicate_identifier_in_one_side(self, alice):
        from booking_core.errors import MergeInvariantViolation
        from booking_core.offline.merge import merge

        twin = make_patient("a", "Alice Twin")

        with pytest.raises(MergeInvariantViolation) as exc_info:
            merge([alice, twin], [])

        assert exc_info.value.details["side"] == "local"
        assert exc_info.value.details["entity_id"] == "a"
        assert not exc_info.value.recoverable

    def test_mixed_entity_types(self, alice):
        from booking_core.errors import MergeInvariantViolation
        from booking_core.offline.merge import merge

        with pytest.raises(MergeInvariantViolation):
            merge([alice], [make_appointment("x", "a")])
