from __future__ import annotations

import json
import os
import threading
import time
from datetime import date
from pathlib import Path

import pytest
import yaml

from memory_governance import store as store_module
from memory_governance.errors import (
    InvalidArgumentError,
    ItemNotFoundError,
    LockTimeoutError,
    SevereAuditError,
)
from memory_governance.models import MemoryStatus
from memory_governance.store import StatusStore, build_status_store

TODAY = "2026-01-15"


def _record(item_id: str, **overrides) -> dict:
    record = {
        "id": item_id,
        "topic": "deploy",
        "key": "mode",
        "value": "canary",
        "status": "active",
        "source": "docs/deploy.md",
        "effective_from": "2026-01-01",
        "expires": "2026-12-31",
        "scope": {"env": "all"},
    }
    record.update(overrides)
    return {key: value for key, value in record.items() if value is not None}


def _store(tmp_path: Path, records: list[dict] | None = None, **overrides) -> StatusStore:
    store = build_status_store(
        memory_root=tmp_path / "memory",
        workspace_root=tmp_path / "workspace",
        **overrides,
    )
    if records is not None:
        store.paths.memory_path.parent.mkdir(parents=True, exist_ok=True)
        store.paths.memory_path.write_text(yaml.safe_dump(records, sort_keys=False), encoding="utf-8")
    return store


def _bucket(store: StatusStore, status: MemoryStatus) -> list[dict]:
    return yaml.safe_load(store.bucket_path(status).read_text(encoding="utf-8"))


def _state(store: StatusStore) -> dict[str, bytes | None]:
    paths = [*store.paths.bucket_paths, store.paths.memory_path, store.paths.workspace_memory_path]
    state = {str(path): (path.read_bytes() if path.exists() else None) for path in paths}
    topic_dir = store.paths.workspace_topic_dir
    if topic_dir.exists():
        for entry in sorted(topic_dir.iterdir()):
            state[str(entry)] = entry.read_bytes()
    return state


def _conflicting_pair() -> list[dict]:
    return [
        _record("MEM-2026-01-001"),
        _record("MEM-2026-01-002", value="blue-green", status="pending", scope={"env": "prod"}),
        _record("MEM-2026-01-003", topic="release", key="train", value="weekly"),
    ]


def test_init_partitions_canonical_file_and_renders_runtime(tmp_path: Path) -> None:
    store = _store(
        tmp_path,
        [
            _record("MEM-2026-01-001"),
            _record("MEM-2026-01-002", key="region", value="eu", status="pending"),
            _record("MEM-2026-01-003", topic="Release Train", key="cadence", value="weekly"),
        ],
    )
    result = store.init()

    assert result.counts == {"active": 2, "pending": 1, "deprecated": 0}
    assert [record["id"] for record in _bucket(store, MemoryStatus.PENDING)] == ["MEM-2026-01-002"]
    assert _bucket(store, MemoryStatus.DEPRECATED) == []

    runtime = store.paths.workspace_memory_path.read_text(encoding="utf-8")
    assert "### MEM-2026-01-001 | active | deploy.mode" in runtime
    assert "MEM-2026-01-002" not in runtime
    topic_files = sorted(entry.name for entry in store.paths.workspace_topic_dir.iterdir())
    assert topic_files == ["README.md", "topic-deploy.md", "topic-release-train.md"]
    assert result.as_dict()["counts"]["active"] == 2


def test_init_is_idempotent_for_stored_state(tmp_path: Path) -> None:
    store = _store(tmp_path, _conflicting_pair()[:1])
    store.init()
    paths = [*store.paths.bucket_paths, store.paths.memory_path]
    first = [path.read_bytes() for path in paths]
    store.init()
    assert [path.read_bytes() for path in paths] == first


def test_init_without_canonical_file_creates_empty_buckets(tmp_path: Path) -> None:
    store = _store(tmp_path)
    result = store.init()
    assert result.counts == {"active": 0, "pending": 0, "deprecated": 0}
    assert all(path.read_text(encoding="utf-8") == "[]\n" for path in store.paths.bucket_paths)
    assert "_None_" in store.paths.workspace_memory_path.read_text(encoding="utf-8")


def test_init_drops_invalid_canonical_records(tmp_path: Path) -> None:
    store = _store(
        tmp_path,
        [_record("MEM-2026-01-001"), _record("MEM-2026-01-002", key="region", source=None)],
    )
    result = store.init()
    assert result.counts == {"active": 1, "pending": 0, "deprecated": 0}
    assert [item.id for item in store.flatten()] == ["MEM-2026-01-001"]


def test_pending_item_is_promoted_to_active(tmp_path: Path) -> None:
    store = _store(tmp_path, [_record("MEM-2024-01-001", status="pending")])
    store.init()

    result = store.change_status("MEM-2024-01-001", "active", today=TODAY)

    assert result.from_status == MemoryStatus.PENDING
    assert result.to_status == MemoryStatus.ACTIVE
    assert result.counts == {"active": 1, "pending": 0, "deprecated": 0}
    assert result.as_dict()["from"] == "pending"
    assert _bucket(store, MemoryStatus.PENDING) == []
    active = _bucket(store, MemoryStatus.ACTIVE)
    assert [record["id"] for record in active] == ["MEM-2024-01-001"]
    assert active[0]["status"] == "active"
    assert active[0]["updated"] == date(2026, 1, 15)

    canonical = yaml.safe_load(store.paths.memory_path.read_text(encoding="utf-8"))
    assert canonical == active
    assert "MEM-2024-01-001" in store.paths.workspace_memory_path.read_text(encoding="utf-8")


def test_change_status_seeds_buckets_on_first_use(tmp_path: Path) -> None:
    store = _store(tmp_path, [_record("MEM-2026-01-001", status="pending")])
    result = store.change_status("MEM-2026-01-001", MemoryStatus.DEPRECATED, today=TODAY)
    assert result.counts == {"active": 0, "pending": 0, "deprecated": 1}


def test_same_status_is_a_no_op(tmp_path: Path) -> None:
    store = _store(tmp_path, [_record("MEM-2026-01-001")])
    store.init()
    before = _state(store)

    result = store.change_status("MEM-2026-01-001", "active", today=TODAY)

    assert result.from_status == result.to_status == MemoryStatus.ACTIVE
    assert result.item.updated is None
    assert _state(store) == before


def test_unknown_item_and_bad_arguments(tmp_path: Path) -> None:
    store = _store(tmp_path, [_record("MEM-2026-01-001")])
    store.init()
    before = _state(store)

    with pytest.raises(ItemNotFoundError) as excinfo:
        store.change_status("MEM-2099-01-001", "active", today=TODAY)
    assert excinfo.value.code == "ITEM_NOT_FOUND"
    with pytest.raises(InvalidArgumentError):
        store.change_status("MEM-2026-01-001", "archived", today=TODAY)
    with pytest.raises(InvalidArgumentError):
        store.change_status("MEM-2026-01-001", "pending", today="15/01/2026")

    assert _state(store) == before
    assert not store.paths.lock_path.exists()


def test_promotion_into_conflict_rolls_back_everything(tmp_path: Path) -> None:
    store = _store(tmp_path, _conflicting_pair())
    store.init()
    before = _state(store)

    with pytest.raises(SevereAuditError) as excinfo:
        store.change_status("MEM-2026-01-002", "active", today=TODAY)

    assert excinfo.value.code == "AUDIT_SEVERE"
    assert "audit failed after status change" in str(excinfo.value)
    assert _state(store) == before
    assert not store.paths.lock_path.exists()


def test_duplicate_id_across_buckets_rolls_back(tmp_path: Path) -> None:
    store = _store(
        tmp_path,
        [
            _record("MEM-2026-01-001"),
            _record("MEM-2026-01-002", topic="release", key="train", status="pending"),
        ],
    )
    store.init()
    duplicate = _record("MEM-2026-01-001", status="pending", key="other")
    pending = _bucket(store, MemoryStatus.PENDING) + [duplicate]
    store.paths.pending_path.write_text(yaml.safe_dump(pending, sort_keys=False), encoding="utf-8")
    before = _state(store)

    with pytest.raises(SevereAuditError) as excinfo:
        store.change_status("MEM-2026-01-002", "active", today=TODAY)

    assert any(issue.code.value == "duplicate-id" for issue in excinfo.value.issues)
    assert _state(store) == before


def test_invalid_bucket_record_blocks_mutation(tmp_path: Path) -> None:
    store = _store(tmp_path, [_record("MEM-2026-01-001", status="pending")])
    store.init()
    broken = _bucket(store, MemoryStatus.DEPRECATED) + [
        _record("MEM-2026-01-009", key="region", status="deprecated", source=None)
    ]
    store.paths.deprecated_path.write_text(yaml.safe_dump(broken, sort_keys=False), encoding="utf-8")
    before = _state(store)

    with pytest.raises(SevereAuditError):
        store.change_status("MEM-2026-01-001", "active", today=TODAY)
    assert _state(store) == before


def test_bucket_placement_wins_over_record_status(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.init()
    misplaced = [_record("MEM-2026-01-001", status="active")]
    store.paths.pending_path.write_text(yaml.safe_dump(misplaced, sort_keys=False), encoding="utf-8")

    assert store.counts() == {"active": 0, "pending": 1, "deprecated": 0}
    assert store.flatten()[0].status == MemoryStatus.PENDING


def test_list_conflicts_covers_active_and_pending(tmp_path: Path) -> None:
    store = _store(tmp_path, _conflicting_pair())
    store.init()

    pairs = store.list_conflicts()

    assert [pair.pair_id for pair in pairs] == ["MEM-2026-01-001__MEM-2026-01-002"]
    assert (pairs[0].topic, pairs[0].key) == ("deploy", "mode")


def test_merge_keeps_left_by_default(tmp_path: Path) -> None:
    store = _store(tmp_path, _conflicting_pair())
    store.init()
    untouched = next(
        record
        for record in yaml.safe_load(store.paths.memory_path.read_text(encoding="utf-8"))
        if record["id"] == "MEM-2026-01-003"
    )

    result = store.merge_conflict("MEM-2026-01-002", "MEM-2026-01-001", "rolling", today=TODAY)

    assert result.merged_id == "MEM-2026-01-002"
    assert result.deprecated_id == "MEM-2026-01-001"
    assert result.pair_id == "MEM-2026-01-001__MEM-2026-01-002"
    assert result.counts == {"active": 2, "pending": 0, "deprecated": 1}
    assert result.as_dict()["mergedId"] == "MEM-2026-01-002"

    merged = next(r for r in _bucket(store, MemoryStatus.ACTIVE) if r["id"] == "MEM-2026-01-002")
    assert merged["value"] == "rolling"
    assert merged["status"] == "active"
    assert merged["updated"] == date(2026, 1, 15)
    assert merged["next"] == (
        "Merged conflict MEM-2026-01-001__MEM-2026-01-002; resolved by keeping MEM-2026-01-002."
    )
    deprecated = _bucket(store, MemoryStatus.DEPRECATED)
    assert [record["id"] for record in deprecated] == ["MEM-2026-01-001"]
    assert deprecated[0]["next"] == (
        "Deprecated after conflict merge MEM-2026-01-001__MEM-2026-01-002 into MEM-2026-01-002."
    )
    assert store.list_conflicts() == []

    canonical = yaml.safe_load(store.paths.memory_path.read_text(encoding="utf-8"))
    assert next(record for record in canonical if record["id"] == "MEM-2026-01-003") == untouched


def test_merge_with_explicit_keep_and_typed_value(tmp_path: Path) -> None:
    store = _store(tmp_path, _conflicting_pair())
    store.init()

    result = store.merge_conflict(
        "MEM-2026-01-001", "MEM-2026-01-002", True, keep_id="MEM-2026-01-002", today=TODAY
    )

    assert result.merged_id == "MEM-2026-01-002"
    assert result.deprecated_id == "MEM-2026-01-001"
    merged = next(r for r in _bucket(store, MemoryStatus.ACTIVE) if r["id"] == "MEM-2026-01-002")
    assert merged["value"] is True


def test_merge_rejects_invalid_requests(tmp_path: Path) -> None:
    store = _store(tmp_path, _conflicting_pair())
    store.init()
    before = _state(store)

    with pytest.raises(InvalidArgumentError):
        store.merge_conflict("MEM-2026-01-001", "MEM-2026-01-001", "x", today=TODAY)
    with pytest.raises(InvalidArgumentError):
        store.merge_conflict("MEM-2026-01-001", "MEM-2026-01-002", "x", keep_id="MEM-2026-01-003")
    with pytest.raises(InvalidArgumentError):
        store.merge_conflict("MEM-2026-01-001", "MEM-2026-01-002", ["x"], today=TODAY)
    with pytest.raises(InvalidArgumentError):
        store.merge_conflict("MEM-2026-01-001", "MEM-2026-01-003", "x", today=TODAY)
    with pytest.raises(ItemNotFoundError) as excinfo:
        store.merge_conflict("MEM-2026-01-001", "MEM-2099-01-001", "x", today=TODAY)
    assert excinfo.value.item_ids == ("MEM-2099-01-001",)

    assert _state(store) == before


def test_deprecating_last_item_of_topic_removes_its_shard(tmp_path: Path) -> None:
    store = _store(tmp_path, _conflicting_pair())
    store.init()
    shard = store.paths.workspace_topic_dir / "topic-release.md"
    assert shard.exists()

    store.change_status("MEM-2026-01-003", "deprecated", today=TODAY)

    assert not shard.exists()
    index = store.paths.workspace_topic_index_path.read_text(encoding="utf-8")
    assert "- Topics: 1" in index


def test_held_lock_times_out(tmp_path: Path) -> None:
    store = _store(
        tmp_path,
        [_record("MEM-2026-01-001", status="pending")],
        lock={"timeout_seconds": 0.2, "poll_seconds": 0.05},
    )
    store.init()
    lock_path = store.paths.lock_path
    lock_path.write_text(json.dumps({"pid": 1, "acquired_at": "now"}), encoding="utf-8")
    before = _state(store)

    with pytest.raises(LockTimeoutError):
        store.change_status("MEM-2026-01-001", "active", today=TODAY)
    assert _state(store) == before
    assert lock_path.exists()


def test_stale_lock_is_reclaimed_by_mutation(tmp_path: Path) -> None:
    store = _store(tmp_path, [_record("MEM-2026-01-001", status="pending")])
    store.init()
    lock_path = store.paths.lock_path
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.write_text(json.dumps({"pid": 1, "acquired_at": "then"}), encoding="utf-8")
    old = time.time() - 3600
    os.utime(lock_path, (old, old))

    result = store.change_status("MEM-2026-01-001", "active", today=TODAY)

    assert result.to_status == MemoryStatus.ACTIVE
    assert not lock_path.exists()


def test_concurrent_status_changes_are_serialized(tmp_path: Path) -> None:
    records = [
        _record(f"MEM-2026-01-00{n}", key=f"slot{n}", status="pending") for n in range(1, 7)
    ]
    store = _store(tmp_path, records, lock={"poll_seconds": 0.01})
    store.init()
    errors: list[Exception] = []

    def _promote(item_id: str) -> None:
        try:
            store.change_status(item_id, "active", today=TODAY)
        except Exception as exc:  # pragma: no cover - surfaced through the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=_promote, args=(record["id"],)) for record in records]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert store.counts() == {"active": 6, "pending": 0, "deprecated": 0}
    canonical = yaml.safe_load(store.paths.memory_path.read_text(encoding="utf-8"))
    assert sorted(record["id"] for record in canonical) == [record["id"] for record in records]


def test_stale_only_verdict_still_commits(tmp_path: Path) -> None:
    store = _store(
        tmp_path,
        [
            _record("MEM-2026-01-001", expires="2026-01-10"),
            _record("MEM-2026-01-002", key="region", value="eu", status="pending"),
        ],
    )
    store.init()

    result = store.change_status("MEM-2026-01-002", "active", today=TODAY)

    assert result.counts == {"active": 2, "pending": 0, "deprecated": 0}
    assert sorted(record["id"] for record in _bucket(store, MemoryStatus.ACTIVE)) == [
        "MEM-2026-01-001",
        "MEM-2026-01-002",
    ]
    assert "MEM-2026-01-002" in store.paths.workspace_memory_path.read_text(encoding="utf-8")


def test_write_failure_during_commit_restores_everything(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    store = _store(tmp_path, _conflicting_pair())
    store.init()
    before = _state(store)
    real_write = store_module.write_text_atomic
    calls: list[Path] = []

    def _fail_second_write(path: Path, content: str) -> Path:
        calls.append(path)
        if len(calls) > 1:
            raise OSError("disk full")
        return real_write(path, content)

    monkeypatch.setattr(store_module, "write_text_atomic", _fail_second_write)

    with pytest.raises(OSError, match="disk full"):
        store.change_status("MEM-2026-01-003", "deprecated", today=TODAY)

    assert calls[0] == store.paths.workspace_memory_path
    assert _state(store) == before
    assert not store.paths.lock_path.exists()


def test_empty_keep_id_is_rejected(tmp_path: Path) -> None:
    store = _store(tmp_path, _conflicting_pair())
    store.init()

    with pytest.raises(InvalidArgumentError):
        store.merge_conflict("MEM-2026-01-001", "MEM-2026-01-002", "rolling", keep_id="", today=TODAY)
    assert len(store.list_conflicts()) == 1


def test_yaml_11_booleans_are_stored_as_booleans(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.paths.memory_path.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = []
    for item_id, key, value in (
        ("MEM-2026-01-001", "enabled", "yes"),
        ("MEM-2026-01-002", "answer", "'yes'"),
    ):
        lines.extend(
            [
                f"- id: {item_id}",
                "  topic: flags",
                f"  key: {key}",
                f"  value: {value}",
                "  status: active",
                "  source: docs/flags.md",
                "  effective_from: 2026-01-01",
                "  expires: 2026-12-31",
            ]
        )
    store.paths.memory_path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    store.init()

    values = {item.id: item.value for item in store.flatten()}
    assert values == {"MEM-2026-01-001": True, "MEM-2026-01-002": "yes"}
    text = store.paths.active_path.read_text(encoding="utf-8")
    assert "value: true" in text
    assert "value: 'yes'" in text
