"""CLI for the memory status store."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from .audit import audit_file, default_report_path, write_audit_report
from .config import build_settings, load_settings
from .errors import InvalidArgumentError, MemoryStoreError, reason_code
from .logging_utils import configure_logging
from .models import MemoryStatus, MemoryValue, coerce_status
from .store import StatusStore, resolve_day

logger = logging.getLogger(__name__)

EXIT_FAILURE = 2


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Memory governance status store")
    parser.add_argument("--config", default=None, help="Path to a store settings YAML profile")
    parser.add_argument(
        "--root",
        default=None,
        help="Memory root (defaults to MEMORY_GOVERNANCE_ROOT or ~/.memory-governance/memory)",
    )
    parser.add_argument("--workspace-root", default=None)
    parser.add_argument("--status-dir", default=None)
    parser.add_argument("--file", default=None, help="Canonical MEMORY.yml path")
    parser.add_argument("--output", default=None, help="Runtime MEMORY.md path")
    parser.add_argument("--topic-dir", default=None)
    parser.add_argument("--verbose", action="store_true")
    subparsers = parser.add_subparsers(dest="cmd", required=True)

    subparsers.add_parser("init", help="Create or normalize the status buckets")

    status_set = subparsers.add_parser("set-status", help="Move one item to another status")
    status_set.add_argument("--id", required=True)
    status_set.add_argument("--to", required=True, choices=[status.value for status in MemoryStatus])
    status_set.add_argument("--today", default=None)

    merge = subparsers.add_parser("merge", help="Resolve one conflict pair into a single value")
    merge.add_argument("--left", required=True)
    merge.add_argument("--right", required=True)
    merge.add_argument("--value", required=True)
    merge.add_argument("--value-type", choices=["string", "number", "boolean"], default="string")
    merge.add_argument("--keep", default=None, help="Id to keep (defaults to --left)")
    merge.add_argument("--today", default=None)

    subparsers.add_parser("conflicts", help="List unresolved (active+pending) conflict pairs")

    listing = subparsers.add_parser("list", help="List items, optionally for one status")
    listing.add_argument("--status", default=None)

    audit = subparsers.add_parser("audit", help="Audit the canonical file and write a report")
    audit.add_argument("--today", default=None)
    audit.add_argument("--report", default=None)
    return parser


def _settings(args: argparse.Namespace):
    overrides = {
        "memory_root": args.root,
        "workspace_root": args.workspace_root,
        "status_dir": args.status_dir,
        "memory_file": args.file,
        "runtime_file": args.output,
        "topic_dir": args.topic_dir,
    }
    if args.config:
        return load_settings(Path(args.config), **overrides)
    return build_settings(**overrides)


def parse_value(raw: str, value_type: str) -> MemoryValue:
    if value_type == "boolean":
        lowered = raw.strip().lower()
        if lowered not in {"true", "false"}:
            raise InvalidArgumentError(f"invalid boolean '{raw}'")
        return lowered == "true"
    if value_type == "number":
        try:
            number = float(raw)
        except ValueError as exc:
            raise InvalidArgumentError(f"invalid number '{raw}'") from exc
        return int(number) if number.is_integer() and "." not in raw else number
    return raw


def _emit(payload: Any) -> None:
    print(json.dumps(payload, sort_keys=True, ensure_ascii=True))


def _run(args: argparse.Namespace) -> int:
    settings = _settings(args)
    store = StatusStore.from_settings(settings)

    if args.cmd == "init":
        _emit(store.init().as_dict())
        return 0
    if args.cmd == "set-status":
        _emit(store.change_status(args.id, args.to, today=args.today).as_dict())
        return 0
    if args.cmd == "merge":
        result = store.merge_conflict(
            args.left,
            args.right,
            parse_value(args.value, args.value_type),
            keep_id=args.keep,
            today=args.today,
        )
        _emit(result.as_dict())
        return 0
    if args.cmd == "conflicts":
        _emit([pair.as_dict() for pair in store.list_conflicts()])
        return 0
    if args.cmd == "list":
        status = coerce_status(args.status) if args.status else None
        if args.status and status is None:
            raise InvalidArgumentError(f"invalid status '{args.status}'")
        items = [item for item in store.flatten() if status is None or item.status == status]
        _emit([item.as_dict() for item in items])
        return 0

    summary = audit_file(
        store.paths.memory_path, resolve_day(args.today), source_prefixes=store.source_prefixes
    )
    report_path = Path(args.report) if args.report else default_report_path(
        store.paths.memory_root, summary.today
    )
    write_audit_report(summary, report_path)
    payload = summary.as_dict()
    payload["report"] = str(report_path)
    _emit(payload)
    return summary.exit_code


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.WARNING)
    try:
        return _run(args)
    except MemoryStoreError as exc:
        logger.debug("memory %s failed code=%s", args.cmd, reason_code(exc))
        print(f"memory {args.cmd} failed: {exc}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
