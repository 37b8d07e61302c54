"""Semantic conflict detection between memory items sharing a topic/key slot."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable

from .models import MemoryEnv, MemoryItem, MemoryScope, MemoryStatus, same_value

ACTIVE_ONLY: frozenset[MemoryStatus] = frozenset({MemoryStatus.ACTIVE})
UNRESOLVED: frozenset[MemoryStatus] = frozenset({MemoryStatus.ACTIVE, MemoryStatus.PENDING})


@dataclass(frozen=True)
class ConflictPair:
    pair_id: str
    topic: str
    key: str
    left: MemoryItem
    right: MemoryItem

    def as_dict(self) -> dict[str, Any]:
        return {
            "pair_id": self.pair_id,
            "topic": self.topic,
            "key": self.key,
            "left": self.left.as_dict(),
            "right": self.right.as_dict(),
        }


def dates_overlap(a_start: date, a_end: date, b_start: date, b_end: date) -> bool:
    return a_start <= b_end and b_start <= a_end


def scopes_intersect(a: MemoryScope, b: MemoryScope) -> bool:
    if not (a.env == MemoryEnv.ALL or b.env == MemoryEnv.ALL or a.env == b.env):
        return False
    if a.service and b.service and a.service != b.service:
        return False
    if a.region and b.region and a.region != b.region:
        return False
    return True


def conflicts(a: MemoryItem, b: MemoryItem) -> bool:
    """Same slot, different value, intersecting scope and overlapping window."""
    if a.topic != b.topic or a.key != b.key:
        return False
    if same_value(a.value, b.value):
        return False
    if not scopes_intersect(a.scope, b.scope):
        return False
    return dates_overlap(a.effective_from, a.expires, b.effective_from, b.expires)


def is_conflict_pair(
    a: MemoryItem,
    b: MemoryItem,
    statuses: Iterable[MemoryStatus] = ACTIVE_ONLY,
) -> bool:
    allowed = frozenset(statuses)
    if a.status not in allowed or b.status not in allowed:
        return False
    return conflicts(a, b)


def is_active_conflict_pair(a: MemoryItem, b: MemoryItem) -> bool:
    return is_conflict_pair(a, b, ACTIVE_ONLY)


def is_unresolved_conflict_pair(a: MemoryItem, b: MemoryItem) -> bool:
    return is_conflict_pair(a, b, UNRESOLVED)


def conflict_pair_id(a_id: str, b_id: str) -> str:
    left_id, right_id = sorted((a_id, b_id))
    return f"{left_id}__{right_id}"


def list_conflict_pairs(
    items: Iterable[MemoryItem],
    statuses: Iterable[MemoryStatus] = ACTIVE_ONLY,
) -> list[ConflictPair]:
    """Enumerate conflicting pairs among items whose status is in `statuses`.

    Candidates are grouped by (topic, key) first; only items in the same slot
    are compared pairwise. Results are ordered by pair id.
    """
    allowed = frozenset(statuses)
    slots: dict[tuple[str, str], list[MemoryItem]] = {}
    for item in items:
        if item.status in allowed:
            slots.setdefault(item.slot, []).append(item)

    pairs: list[ConflictPair] = []
    for (topic, key), members in slots.items():
        members = sorted(members, key=lambda item: item.id)
        for i, left in enumerate(members):
            for right in members[i + 1 :]:
                if not conflicts(left, right):
                    continue
                pairs.append(
                    ConflictPair(
                        pair_id=conflict_pair_id(left.id, right.id),
                        topic=topic,
                        key=key,
                        left=left,
                        right=right,
                    )
                )
    return sorted(pairs, key=lambda pair: pair.pair_id)


def list_active_conflict_pairs(items: Iterable[MemoryItem]) -> list[ConflictPair]:
    return list_conflict_pairs(items, ACTIVE_ONLY)


def list_unresolved_conflict_pairs(items: Iterable[MemoryItem]) -> list[ConflictPair]:
    return list_conflict_pairs(items, UNRESOLVED)
