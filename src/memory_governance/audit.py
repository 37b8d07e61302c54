"""Record validation and global audit checks for memory items.

The audit verdict is the single commit gate for every store mutation:

- 2 (severe): any schema, duplicate-id, no-source or conflict issue
- 1 (stale-only): otherwise, any active item past its expiry date
- 0 (clean)
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import yaml

from .conflicts import list_active_conflict_pairs
from .errors import RecordValidationError
from .models import (
    ISO_DAY_PATTERN,
    Confidence,
    MemoryEnv,
    MemoryItem,
    MemoryScope,
    MemoryStatus,
    parse_iso_day,
    sort_items,
)
from .schema import MEMORY_ITEM_SCHEMA, MemorySchemaRegistry, default_registry
from .storage import write_text_atomic

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_PREFIXES: tuple[str, ...] = ("https://", "docs/", "memory/", "src/")

EXIT_CLEAN = 0
EXIT_STALE = 1
EXIT_SEVERE = 2

_DATE_FIELDS = ("effective_from", "expires", "updated")
_LOWERED_FIELDS = ("status", "confidence")


class IssueCode(str, Enum):
    SCHEMA = "schema"
    DUPLICATE_ID = "duplicate-id"
    NO_SOURCE = "no-source"
    STALE = "stale"
    CONFLICT = "conflict"


SEVERE_CODES: frozenset[IssueCode] = frozenset(
    {IssueCode.SCHEMA, IssueCode.DUPLICATE_ID, IssueCode.NO_SOURCE, IssueCode.CONFLICT}
)

REPORT_ORDER: tuple[IssueCode, ...] = (
    IssueCode.SCHEMA,
    IssueCode.DUPLICATE_ID,
    IssueCode.NO_SOURCE,
    IssueCode.CONFLICT,
    IssueCode.STALE,
)


@dataclass(frozen=True)
class AuditIssue:
    code: IssueCode
    message: str
    ids: tuple[str, ...] = ()

    @property
    def severe(self) -> bool:
        return self.code in SEVERE_CODES

    def as_dict(self) -> dict[str, Any]:
        return {"code": self.code.value, "message": self.message, "ids": list(self.ids)}


@dataclass
class AuditSummary:
    today: date
    items: list[MemoryItem]
    issues: list[AuditIssue]
    file_path: Path | None = None

    @property
    def exit_code(self) -> int:
        return audit_exit_code(self.issues)

    @property
    def severe(self) -> bool:
        return self.exit_code == EXIT_SEVERE

    def grouped(self) -> dict[IssueCode, list[AuditIssue]]:
        return group_issues(self.issues)

    def as_dict(self) -> dict[str, Any]:
        return {
            "file": str(self.file_path) if self.file_path else None,
            "today": self.today.isoformat(),
            "items": len(self.items),
            "exit_code": self.exit_code,
            "issues": [issue.as_dict() for issue in self.issues],
        }


@dataclass
class _RecordContext:
    index: int
    item_id: str | None
    issues: list[AuditIssue] = field(default_factory=list)

    @property
    def label(self) -> str:
        return self.item_id or f"#{self.index + 1}"

    def add(self, code: IssueCode, text: str) -> None:
        ids = (self.item_id,) if self.item_id else ()
        self.issues.append(AuditIssue(code, f"Item {self.label} {text}", ids))


def _normalize_scalar(name: str, value: Any) -> Any:
    if name == "value":
        if isinstance(value, date):
            return value.isoformat()
        return value
    if isinstance(value, str):
        value = value.strip()
        if name in _LOWERED_FIELDS:
            value = value.lower()
        return value or None
    if name in _DATE_FIELDS and isinstance(value, date) and not isinstance(value, datetime):
        return value.isoformat()
    return value


def normalize_record(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Trim strings, drop blanks and render YAML dates as ISO strings."""
    record: dict[str, Any] = {}
    for name, value in raw.items():
        name = str(name)
        if name == "scope":
            record[name] = _normalize_scope(value)
            continue
        normalized = _normalize_scalar(name, value)
        if normalized is None and name != "value":
            continue
        record[name] = normalized
    confidence = record.get("confidence")
    if confidence is not None and confidence not in {c.value for c in Confidence}:
        record.pop("confidence")
    return record


def _normalize_scope(value: Any) -> Any:
    if not isinstance(value, Mapping):
        return value
    scope: dict[str, Any] = {}
    for name, entry in value.items():
        name = str(name)
        if isinstance(entry, str):
            entry = entry.strip()
            if name == "env":
                entry = entry.lower()
            if not entry:
                continue
        scope[name] = entry
    return scope


def parse_record(
    raw: Any,
    index: int,
    *,
    source_prefixes: Sequence[str] = DEFAULT_SOURCE_PREFIXES,
    registry: MemorySchemaRegistry | None = None,
) -> MemoryItem:
    """Build one `MemoryItem` or raise `RecordValidationError` with every issue found."""
    if not isinstance(raw, Mapping):
        raise RecordValidationError(
            [AuditIssue(IssueCode.SCHEMA, f"Item #{index + 1} is not a valid object")]
        )
    record = normalize_record(raw)
    item_id = record.get("id") if isinstance(record.get("id"), str) else None
    ctx = _RecordContext(index=index, item_id=item_id)

    for finding in (registry or default_registry()).findings(MEMORY_ITEM_SCHEMA, record):
        code = IssueCode.NO_SOURCE if finding.prop == "source" else IssueCode.SCHEMA
        ctx.add(code, f"has invalid '{finding.path}': {finding.message}")

    source = record.get("source")
    if source is None:
        ctx.add(IssueCode.NO_SOURCE, "is missing 'source'")
    elif isinstance(source, str) and not source.startswith(tuple(source_prefixes)):
        ctx.add(IssueCode.NO_SOURCE, f"has invalid source '{source}'")

    days: dict[str, date | None] = {}
    for name in _DATE_FIELDS:
        if name not in record:
            continue
        days[name] = parse_iso_day(record[name])
        raw_day = record[name]
        if days[name] is None and isinstance(raw_day, str) and ISO_DAY_PATTERN.match(raw_day):
            ctx.add(IssueCode.SCHEMA, f"has invalid '{name}' date")
    start, end = days.get("effective_from"), days.get("expires")
    if start is not None and end is not None and start > end:
        ctx.add(IssueCode.SCHEMA, "has effective_from after expires")

    if ctx.issues:
        raise RecordValidationError(ctx.issues, detail=ctx.label)

    scope = record.get("scope") or {}
    confidence = record.get("confidence")
    return MemoryItem(
        id=record["id"],
        topic=record["topic"],
        key=record["key"],
        value=record["value"],
        status=MemoryStatus(record["status"]),
        source=record["source"],
        effective_from=days["effective_from"],
        expires=days["expires"],
        scope=MemoryScope(
            env=MemoryEnv(scope.get("env", MemoryEnv.ALL.value)),
            service=scope.get("service"),
            region=scope.get("region"),
        ),
        updated=days.get("updated"),
        confidence=Confidence(confidence) if confidence else None,
        next=record.get("next"),
    )


def parse_records(
    records: Iterable[Any],
    *,
    source_prefixes: Sequence[str] = DEFAULT_SOURCE_PREFIXES,
) -> tuple[list[MemoryItem], list[AuditIssue]]:
    items: list[MemoryItem] = []
    issues: list[AuditIssue] = []
    for index, raw in enumerate(records):
        try:
            items.append(parse_record(raw, index, source_prefixes=source_prefixes))
        except RecordValidationError as exc:
            issues.extend(exc.issues)
    return items, issues


def read_memory_records(path: Path) -> tuple[list[Any], list[AuditIssue]]:
    """Read a YAML list of raw records; file-level problems become schema issues."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return [], [AuditIssue(IssueCode.SCHEMA, f"Missing memory file: {path}")]
    try:
        parsed = yaml.safe_load(text)
    except (yaml.YAMLError, ValueError) as exc:
        # PyYAML raises ValueError for timestamp-shaped scalars like 2024-13-01.
        return [], [AuditIssue(IssueCode.SCHEMA, f"Failed to parse YAML in {path}: {exc}")]
    if not isinstance(parsed, list):
        return [], [AuditIssue(IssueCode.SCHEMA, f"{path} must contain a top-level YAML list")]
    return parsed, []


def read_memory_items(
    path: Path,
    *,
    source_prefixes: Sequence[str] = DEFAULT_SOURCE_PREFIXES,
) -> tuple[list[MemoryItem], list[AuditIssue]]:
    records, issues = read_memory_records(path)
    items, record_issues = parse_records(records, source_prefixes=source_prefixes)
    return items, [*issues, *record_issues]


def run_audit(
    items: Sequence[MemoryItem],
    initial_issues: Iterable[AuditIssue],
    today: date,
) -> list[AuditIssue]:
    issues = list(initial_issues)

    counts = Counter(item.id for item in items)
    for item_id, count in counts.items():
        if count > 1:
            issues.append(
                AuditIssue(
                    IssueCode.DUPLICATE_ID,
                    f"Duplicate id '{item_id}' appears {count} times",
                    (item_id,),
                )
            )

    for item in items:
        if item.status == MemoryStatus.ACTIVE and item.is_expired(today):
            issues.append(
                AuditIssue(
                    IssueCode.STALE,
                    f"Item {item.id} is active but expired on {item.expires.isoformat()}",
                    (item.id,),
                )
            )

    for pair in list_active_conflict_pairs(items):
        issues.append(
            AuditIssue(
                IssueCode.CONFLICT,
                f"Conflict between {pair.left.id} and {pair.right.id} "
                "(same topic/key with overlapping scope+time but different value)",
                (pair.left.id, pair.right.id),
            )
        )
    return issues


def audit(
    records: Iterable[Any],
    today: date,
    *,
    source_prefixes: Sequence[str] = DEFAULT_SOURCE_PREFIXES,
) -> AuditSummary:
    items, parse_issues = parse_records(records, source_prefixes=source_prefixes)
    issues = run_audit(items, parse_issues, today)
    return AuditSummary(today=today, items=sort_items(items), issues=issues)


def audit_file(
    path: Path,
    today: date,
    *,
    source_prefixes: Sequence[str] = DEFAULT_SOURCE_PREFIXES,
) -> AuditSummary:
    records, file_issues = read_memory_records(path)
    items, parse_issues = parse_records(records, source_prefixes=source_prefixes)
    issues = run_audit(items, [*file_issues, *parse_issues], today)
    summary = AuditSummary(today=today, items=sort_items(items), issues=issues, file_path=Path(path))
    if summary.exit_code != EXIT_CLEAN:
        logger.info(
            "MEM audit path=%s exit_code=%s issues=%d", path, summary.exit_code, len(issues)
        )
    return summary


def audit_exit_code(issues: Iterable[AuditIssue]) -> int:
    codes = {issue.code for issue in issues}
    if codes & SEVERE_CODES:
        return EXIT_SEVERE
    if IssueCode.STALE in codes:
        return EXIT_STALE
    return EXIT_CLEAN


def group_issues(issues: Iterable[AuditIssue]) -> dict[IssueCode, list[AuditIssue]]:
    groups: dict[IssueCode, list[AuditIssue]] = {code: [] for code in IssueCode}
    for issue in issues:
        groups[issue.code].append(issue)
    return groups


def render_audit_report(summary: AuditSummary) -> str:
    lines = [
        "# Memory Audit Report",
        "",
        f"- Date: {summary.today.isoformat()}",
        f"- File: {summary.file_path or '-'}",
        f"- Items: {len(summary.items)}",
        "",
        "## Result",
        "",
    ]
    if not summary.issues:
        lines.append("No issues found.")
        return "\n".join(lines) + "\n"

    groups = summary.grouped()
    for code in REPORT_ORDER:
        entries = groups[code]
        if not entries:
            continue
        lines.append(f"### {code.value} ({len(entries)})")
        lines.append("")
        for issue in entries:
            suffix = f" [{', '.join(issue.ids)}]" if issue.ids else ""
            lines.append(f"- {issue.message}{suffix}")
        lines.append("")
    return "\n".join(lines)


def write_audit_report(summary: AuditSummary, report_path: Path) -> Path:
    return write_text_atomic(report_path, render_audit_report(summary))


def default_report_path(memory_root: Path, today: date) -> Path:
    return Path(memory_root) / "reports" / f"{today.isoformat()}.md"
