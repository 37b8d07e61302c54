"""Transactional three-bucket status store for memory items.

Every mutation runs as lock -> snapshot -> load -> mutate -> save -> audit,
and either commits every derived artifact (bucket files, canonical file,
runtime projection) or restores all of them byte-for-byte.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Callable, Sequence, TypeVar

from .audit import (
    DEFAULT_SOURCE_PREFIXES,
    EXIT_SEVERE,
    AuditIssue,
    audit_exit_code,
    audit_file,
    read_memory_items,
)
from .config import LockSettings, MemoryStatusPaths, StoreSettings, build_settings
from .conflicts import (
    ConflictPair,
    conflict_pair_id,
    is_unresolved_conflict_pair,
    list_unresolved_conflict_pairs,
)
from .errors import InvalidArgumentError, ItemNotFoundError, SevereAuditError
from .locks import FileLock
from .models import (
    STATUS_ORDER,
    MemoryItem,
    MemoryStatus,
    MemoryValue,
    StatusBuckets,
    coerce_status,
    is_scalar_value,
    parse_iso_day,
    sort_items,
    utc_today,
)
from .render import (
    build_active_topic_shards,
    build_memory_markdown,
    build_topic_shard_index_markdown,
    build_topic_shard_markdown,
)
from .storage import ArtifactSnapshot, write_memory_items, write_text_atomic

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class StatusChangeResult:
    from_status: MemoryStatus
    to_status: MemoryStatus
    item: MemoryItem
    counts: dict[str, int]

    def as_dict(self) -> dict[str, Any]:
        return {
            "from": self.from_status.value,
            "to": self.to_status.value,
            "item": self.item.as_dict(),
            "counts": dict(self.counts),
        }


@dataclass(frozen=True)
class MergeResult:
    merged_id: str
    deprecated_id: str
    counts: dict[str, int]
    pair_id: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "mergedId": self.merged_id,
            "deprecatedId": self.deprecated_id,
            "counts": dict(self.counts),
            "pairId": self.pair_id,
        }


@dataclass(frozen=True)
class InitResult:
    paths: MemoryStatusPaths
    counts: dict[str, int]

    def as_dict(self) -> dict[str, Any]:
        return {"paths": self.paths.as_dict(), "counts": dict(self.counts)}


def resolve_day(today: date | str | None) -> date:
    if today is None:
        return utc_today()
    parsed = parse_iso_day(today)
    if parsed is None:
        raise InvalidArgumentError(f"invalid date '{today}' (use YYYY-MM-DD)")
    return parsed


class StatusStore:
    """Sole writer of the on-disk memory state.

    The store holds no cache between calls: each operation re-reads the
    buckets from disk under the `status-store` lock.
    """

    def __init__(
        self,
        paths: MemoryStatusPaths,
        *,
        lock: LockSettings | None = None,
        source_prefixes: Sequence[str] = DEFAULT_SOURCE_PREFIXES,
    ) -> None:
        self.paths = paths
        self.lock_settings = lock or LockSettings()
        self.source_prefixes = tuple(source_prefixes)

    @classmethod
    def from_settings(cls, settings: StoreSettings) -> "StatusStore":
        return cls(
            settings.resolve_paths(),
            lock=settings.lock,
            source_prefixes=settings.source_prefixes,
        )

    def _lock(self) -> FileLock:
        return FileLock(
            self.paths.lock_path,
            timeout=self.lock_settings.timeout_seconds,
            poll_interval=self.lock_settings.poll_seconds,
            stale_after=self.lock_settings.stale_seconds,
        )

    def _locked(self, task: Callable[[], T]) -> T:
        with self._lock().hold():
            return task()

    def bucket_path(self, status: MemoryStatus) -> Path:
        return {
            MemoryStatus.ACTIVE: self.paths.active_path,
            MemoryStatus.PENDING: self.paths.pending_path,
            MemoryStatus.DEPRECATED: self.paths.deprecated_path,
        }[MemoryStatus(status)]

    # Persistence -----------------------------------------------------------

    def ensure_buckets(self) -> None:
        if not self._seed_buckets():
            self.save(self.load())

    def _seed_buckets(self) -> bool:
        """Partition the canonical file into buckets when none exist yet."""
        if any(path.exists() for path in self.paths.bucket_paths):
            return False
        buckets = StatusBuckets()
        items, issues = read_memory_items(
            self.paths.memory_path, source_prefixes=self.source_prefixes
        )
        for item in items:
            buckets.add(item)
        if self.paths.memory_path.exists() and issues:
            logger.warning(
                "MEM seed skipped records path=%s issues=%d", self.paths.memory_path, len(issues)
            )
        logger.info("MEM buckets seeded from=%s counts=%s", self.paths.memory_path, buckets.counts())
        self.save(buckets)
        return True

    def load(self) -> StatusBuckets:
        buckets = StatusBuckets()
        for status in STATUS_ORDER:
            path = self.bucket_path(status)
            if not path.exists():
                continue
            items, issues = read_memory_items(path, source_prefixes=self.source_prefixes)
            for item in items:
                # The bucket a record lives in is authoritative for its status.
                buckets.bucket(status).append(item.with_changes(status=status))
            if issues:
                logger.warning("MEM bucket invalid records path=%s issues=%d", path, len(issues))
                buckets.issues.extend(issues)
        return buckets

    def save(self, buckets: StatusBuckets) -> None:
        for status, items in buckets:
            write_memory_items(self.bucket_path(status), sort_items(items))

    def rebuild_canonical(self, buckets: StatusBuckets) -> None:
        write_memory_items(self.paths.memory_path, buckets.flatten())

    def render_runtime(self, buckets: StatusBuckets) -> None:
        items = buckets.flatten()
        source_path = str(self.paths.memory_path)
        write_text_atomic(
            self.paths.workspace_memory_path,
            build_memory_markdown(source_path=source_path, items=items),
        )
        topic_dir = self.paths.workspace_topic_dir
        shards = build_active_topic_shards(items)
        targets: set[Path] = set()
        for shard in shards:
            target = topic_dir / shard.filename
            targets.add(target)
            write_text_atomic(target, build_topic_shard_markdown(source_path=source_path, shard=shard))
        write_text_atomic(
            self.paths.workspace_topic_index_path,
            build_topic_shard_index_markdown(source_path=source_path, shards=shards),
        )
        for entry in topic_dir.glob("topic-*.md"):
            if entry.is_file() and entry not in targets:
                entry.unlink(missing_ok=True)

    def _snapshot(self) -> ArtifactSnapshot:
        paths = self.paths
        return ArtifactSnapshot.capture(
            [
                *paths.bucket_paths,
                paths.memory_path,
                paths.workspace_memory_path,
                paths.workspace_topic_index_path,
            ],
            globbed={paths.workspace_topic_dir: "topic-*.md"},
        )

    # Transaction -----------------------------------------------------------

    def _transaction(
        self,
        action: str,
        today: date,
        mutate: Callable[[StatusBuckets], tuple[T, bool]],
    ) -> T:
        """Run `mutate` on a fresh snapshot of the buckets and commit or restore.

        `mutate` returns its result and whether it changed anything. Any error
        after the snapshot is taken, including a severe audit verdict, restores
        every artifact to its exact pre-call bytes.
        """

        def _task() -> T:
            snapshot = self._snapshot()
            try:
                self._seed_buckets()
                current = self.load()
                result, changed = mutate(current)
                if changed:
                    self._commit(current, today=today, action=action)
            except Exception:
                logger.warning("MEM %s rolled back", action)
                snapshot.restore()
                raise
            return result

        return self._locked(_task)

    def _commit(self, buckets: StatusBuckets, *, today: date, action: str) -> None:
        self.save(buckets)
        self.rebuild_canonical(buckets)
        summary = audit_file(self.paths.memory_path, today, source_prefixes=self.source_prefixes)
        issues: list[AuditIssue] = [*buckets.issues, *summary.issues]
        if audit_exit_code(issues) == EXIT_SEVERE:
            raise SevereAuditError(action, [issue for issue in issues if issue.severe])
        self.render_runtime(buckets)

    # Operations ------------------------------------------------------------

    def init(self) -> InitResult:
        def _task() -> dict[str, int]:
            self.ensure_buckets()
            buckets = self.load()
            self.save(buckets)
            self.rebuild_canonical(buckets)
            self.render_runtime(buckets)
            return buckets.counts()

        counts = self._locked(_task)
        logger.info("MEM init root=%s counts=%s", self.paths.memory_root, counts)
        return InitResult(paths=self.paths, counts=counts)

    def change_status(
        self,
        item_id: str,
        to: MemoryStatus | str,
        today: date | str | None = None,
    ) -> StatusChangeResult:
        target = coerce_status(to)
        if target is None:
            raise InvalidArgumentError(f"invalid status '{to}' (use active|pending|deprecated)")
        day = resolve_day(today)

        def _mutate(current: StatusBuckets) -> tuple[StatusChangeResult, bool]:
            located = current.locate(item_id)
            if located is None:
                raise ItemNotFoundError(item_id)
            from_status, _, item = located
            if from_status == target:
                # Same-status requests leave the item (and its `updated` stamp) untouched.
                logger.info("MEM status unchanged id=%s status=%s", item_id, target.value)
                return StatusChangeResult(from_status, target, item, current.counts()), False
            current.remove(item_id)
            moved = item.with_changes(status=target, updated=day)
            current.add(moved)
            return StatusChangeResult(from_status, target, moved, current.counts()), True

        result = self._transaction("status change", day, _mutate)
        if result.from_status != result.to_status:
            logger.info(
                "MEM status changed id=%s from=%s to=%s",
                item_id,
                result.from_status.value,
                result.to_status.value,
            )
        return result

    def merge_conflict(
        self,
        left_id: str,
        right_id: str,
        merged_value: MemoryValue,
        keep_id: str | None = None,
        today: date | str | None = None,
    ) -> MergeResult:
        if left_id == right_id:
            raise InvalidArgumentError("conflict merge requires two distinct item ids")
        if not is_scalar_value(merged_value):
            raise InvalidArgumentError("merged value must be a string, number or boolean")
        keep_id = left_id if keep_id is None else keep_id
        if keep_id not in (left_id, right_id):
            raise InvalidArgumentError(
                f"invalid keep id '{keep_id}', must match one of the conflict ids"
            )
        day = resolve_day(today)
        other_id = right_id if keep_id == left_id else left_id
        pair_id = conflict_pair_id(left_id, right_id)

        def _mutate(current: StatusBuckets) -> tuple[MergeResult, bool]:
            left = current.locate(left_id)
            right = current.locate(right_id)
            if left is None or right is None:
                missing = [item_id for item_id, found in ((left_id, left), (right_id, right)) if found is None]
                raise ItemNotFoundError(*missing)
            if not is_unresolved_conflict_pair(left[2], right[2]):
                raise InvalidArgumentError(
                    f"items {left_id} and {right_id} are not an unresolved conflict pair"
                )
            keep = current.remove(keep_id)
            other = current.remove(other_id)
            merged = keep.with_changes(
                status=MemoryStatus.ACTIVE,
                value=merged_value,
                updated=day,
                next=f"Merged conflict {pair_id}; resolved by keeping {keep_id}.",
            )
            deprecated = other.with_changes(
                status=MemoryStatus.DEPRECATED,
                updated=day,
                next=f"Deprecated after conflict merge {pair_id} into {keep_id}.",
            )
            current.add(merged)
            current.add(deprecated)
            result = MergeResult(
                merged_id=merged.id,
                deprecated_id=deprecated.id,
                counts=current.counts(),
                pair_id=pair_id,
            )
            return result, True

        result = self._transaction("conflict merge", day, _mutate)
        logger.info("MEM conflict merged pair=%s kept=%s deprecated=%s", pair_id, keep_id, other_id)
        return result

    # Read accessors --------------------------------------------------------

    def flatten(self) -> list[MemoryItem]:
        return self.load().flatten()

    def list_conflicts(self) -> list[ConflictPair]:
        return list_unresolved_conflict_pairs(self.flatten())

    def counts(self) -> dict[str, int]:
        return self.load().counts()


def build_status_store(
    *,
    memory_root: str | Path | None = None,
    workspace_root: str | Path | None = None,
    **overrides: Any,
) -> StatusStore:
    settings = build_settings(
        memory_root=str(memory_root) if memory_root is not None else None,
        workspace_root=str(workspace_root) if workspace_root is not None else None,
        **overrides,
    )
    return StatusStore.from_settings(settings)
