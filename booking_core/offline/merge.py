# =============================================================================
# booking_core/offline/merge.py
# Deterministic reconciliation of local and remote collections
# =============================================================================
"""
Merge engine - pure functions, no I/O.

For every identifier present on either side:
    - only local   -> local version
    - only remote  -> remote version
    - both         -> resolve_conflict(): latest ``updated_at`` wins; on equal
                      stamps the version whose canonical record orders greater
                      wins, which is symmetric in its arguments

A tombstone (identifier -> deletion stamp) removes the winner unless the winner
was modified after the deletion.

The result order is not meaningful; callers compare results as sets.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

from booking_core.errors import MergeInvariantViolation
from booking_core.models import Entity, canonical_form


@dataclass
class MergeResult:
    """Merged collection plus what happened to produce it."""
    entities: List[Entity] = field(default_factory=list)
    local_only: int = 0
    remote_only: int = 0
    identical: int = 0
    conflicts: int = 0
    suppressed: List[str] = field(default_factory=list)    # dropped by a tombstone
    revived: List[str] = field(default_factory=list)       # edited after their tombstone

    def summary(self) -> Dict[str, int]:
        return {
            "merged": len(self.entities),
            "local_only": self.local_only,
            "remote_only": self.remote_only,
            "identical": self.identical,
            "conflicts": self.conflicts,
            "suppressed": len(self.suppressed),
            "revived": len(self.revived),
        }


def index_by_id(entities: Iterable[Entity], side: str) -> Dict[str, Entity]:
    """
    Key a collection by identifier.

    Raises:
        MergeInvariantViolation: if an identifier repeats within the collection
    """
    indexed: Dict[str, Entity] = {}
    for entity in entities:
        if entity.id in indexed:
            raise MergeInvariantViolation(
                f"Duplicate identifier in {side} collection",
                side=side,
                entity_id=entity.id,
            )
        indexed[entity.id] = entity
    return indexed


def resolve_conflict(a: Entity, b: Entity) -> Entity:
    """Pick the surviving version of one identifier; resolve_conflict(a, b) == resolve_conflict(b, a)."""
    if a == b:
        return a
    if a.updated_at != b.updated_at:
        return a if a.updated_at > b.updated_at else b
    return a if canonical_form(a) >= canonical_form(b) else b


def reconcile(
    local: Iterable[Entity],
    remote: Iterable[Entity],
    tombstones: Optional[Mapping[str, int]] = None,
) -> MergeResult:
    """
    Merge two collections of the same entity type.

    Args:
        local: Records from the on-device store
        remote: Records from the backend
        tombstones: Deleted identifier -> deletion stamp (epoch ms)

    Returns:
        MergeResult

    Raises:
        MergeInvariantViolation: duplicate identifiers within one side, or
            collections of different entity types
    """
    local_by_id = index_by_id(local, "local")
    remote_by_id = index_by_id(remote, "remote")
    tombstones = tombstones or {}

    types = {e.entity_type for e in local_by_id.values()} | {e.entity_type for e in remote_by_id.values()}
    if len(types) > 1:
        raise MergeInvariantViolation(
            "Cannot merge collections of different entity types",
            details={"types": sorted(t.value for t in types)},
        )

    result = MergeResult()
    for entity_id in local_by_id.keys() | remote_by_id.keys():
        mine = local_by_id.get(entity_id)
        theirs = remote_by_id.get(entity_id)

        if theirs is None:
            winner = mine
            result.local_only += 1
        elif mine is None:
            winner = theirs
            result.remote_only += 1
        else:
            if mine == theirs:
                result.identical += 1
            else:
                result.conflicts += 1
            winner = resolve_conflict(mine, theirs)

        deleted_at = tombstones.get(entity_id)
        if deleted_at is not None:
            if deleted_at >= winner.updated_at:
                result.suppressed.append(entity_id)
                continue
            result.revived.append(entity_id)

        result.entities.append(winner)

    return result


def merge(
    local: Iterable[Entity],
    remote: Iterable[Entity],
    tombstones: Optional[Mapping[str, int]] = None,
) -> List[Entity]:
    """Merged collection of local and remote (see reconcile())."""
    return reconcile(local, remote, tombstones).entities
