"""Memory item and status bucket models."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Iterable, Iterator, Union

MemoryValue = Union[str, int, float, bool]

ID_PATTERN = re.compile(r"^MEM-\d{4}-\d{2}-\d{3}$")
ISO_DAY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class MemoryStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    DEPRECATED = "deprecated"


class MemoryEnv(str, Enum):
    ALL = "all"
    PROD = "prod"
    STAGING = "staging"
    DEV = "dev"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


STATUS_ORDER: tuple[MemoryStatus, ...] = (
    MemoryStatus.ACTIVE,
    MemoryStatus.PENDING,
    MemoryStatus.DEPRECATED,
)


@dataclass(frozen=True)
class MemoryScope:
    env: MemoryEnv = MemoryEnv.ALL
    service: str | None = None
    region: str | None = None

    def as_record(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"env": self.env.value}
        if self.service:
            payload["service"] = self.service
        if self.region:
            payload["region"] = self.region
        return payload

    def label(self) -> str:
        parts = [f"env={self.env.value}"]
        if self.service:
            parts.append(f"service={self.service}")
        if self.region:
            parts.append(f"region={self.region}")
        return ", ".join(parts)


@dataclass(frozen=True)
class MemoryItem:
    id: str
    topic: str
    key: str
    value: MemoryValue
    status: MemoryStatus
    source: str
    effective_from: date
    expires: date
    scope: MemoryScope = field(default_factory=MemoryScope)
    updated: date | None = None
    confidence: Confidence | None = None
    next: str | None = None

    @property
    def slot(self) -> tuple[str, str]:
        return (self.topic, self.key)

    def with_changes(self, **changes: Any) -> "MemoryItem":
        return replace(self, **changes)

    def is_expired(self, today: date) -> bool:
        return self.expires < today

    def as_record(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "topic": self.topic,
            "key": self.key,
            "value": self.value,
            "status": self.status.value,
            "source": self.source,
            "effective_from": self.effective_from,
            "expires": self.expires,
            "scope": self.scope.as_record(),
        }
        if self.updated is not None:
            payload["updated"] = self.updated
        if self.confidence is not None:
            payload["confidence"] = self.confidence.value
        if self.next:
            payload["next"] = self.next
        return payload

    def as_dict(self) -> dict[str, Any]:
        """JSON-friendly view (dates as ISO strings)."""
        payload = self.as_record()
        for name in ("effective_from", "expires", "updated"):
            if name in payload:
                payload[name] = payload[name].isoformat()
        return payload


def sort_key(item: MemoryItem) -> tuple[str, str, str]:
    return (item.topic, item.key, item.id)


def sort_items(items: Iterable[MemoryItem]) -> list[MemoryItem]:
    return sorted(items, key=sort_key)


def same_value(left: MemoryValue, right: MemoryValue) -> bool:
    # bool is an int subclass; True must not equal 1 here.
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    return left == right


def is_scalar_value(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


def parse_iso_day(value: Any) -> date | None:
    if isinstance(value, datetime):
        return None
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not ISO_DAY_PATTERN.match(value.strip()):
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        return None


def coerce_status(value: Any) -> MemoryStatus | None:
    if isinstance(value, MemoryStatus):
        return value
    if not isinstance(value, str):
        return None
    try:
        return MemoryStatus(value.strip().lower())
    except ValueError:
        return None


def utc_today() -> date:
    return datetime.now(tz=timezone.utc).date()


@dataclass
class StatusBuckets:
    """Owned snapshot of the three status partitions."""

    active: list[MemoryItem] = field(default_factory=list)
    pending: list[MemoryItem] = field(default_factory=list)
    deprecated: list[MemoryItem] = field(default_factory=list)
    issues: list[Any] = field(default_factory=list)

    def bucket(self, status: MemoryStatus) -> list[MemoryItem]:
        return getattr(self, MemoryStatus(status).value)

    def __iter__(self) -> Iterator[tuple[MemoryStatus, list[MemoryItem]]]:
        for status in STATUS_ORDER:
            yield status, self.bucket(status)

    def locate(self, item_id: str) -> tuple[MemoryStatus, int, MemoryItem] | None:
        for status, items in self:
            for index, item in enumerate(items):
                if item.id == item_id:
                    return status, index, item
        return None

    def remove(self, item_id: str) -> MemoryItem | None:
        located = self.locate(item_id)
        if located is None:
            return None
        status, index, _ = located
        return self.bucket(status).pop(index)

    def add(self, item: MemoryItem) -> None:
        self.bucket(item.status).append(item)

    def counts(self) -> dict[str, int]:
        return {status.value: len(items) for status, items in self}

    def flatten(self) -> list[MemoryItem]:
        return sort_items([*self.active, *self.pending, *self.deprecated])

