"""Markdown rendering of the runtime (active-only) memory projection."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Sequence

from .models import MemoryItem, MemoryStatus, MemoryValue

KEYWORD_LIMIT = 10

_WHITESPACE = re.compile(r"\s+")
_TOKEN = re.compile(r"[\w-]+", re.UNICODE)
_SLUG_UNSAFE = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class TopicShard:
    topic: str
    slug: str
    items: tuple[MemoryItem, ...]

    @property
    def filename(self) -> str:
        return f"topic-{self.slug}.md"


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def normalize_whitespace(value: str) -> str:
    return _WHITESPACE.sub(" ", value).strip()


def scalar_text(value: MemoryValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return normalize_whitespace(str(value))


def tokenize(value: str) -> list[str]:
    return [token for token in _TOKEN.findall(value.lower()) if len(token) >= 2]


def keywords_for(item: MemoryItem) -> str:
    pool = [
        *tokenize(item.topic),
        *tokenize(item.key.replace("_", " ")),
        *tokenize(scalar_text(item.value)),
    ]
    seen: list[str] = []
    for token in pool:
        if token in seen:
            continue
        seen.append(token)
        if len(seen) >= KEYWORD_LIMIT:
            break
    return ", ".join(seen)


def item_block(item: MemoryItem) -> list[str]:
    lines = [
        f"### {item.id} | {item.status.value} | {item.topic}.{item.key}",
        "",
        f"- Canonical: {scalar_text(item.value)}",
        f"- Scope: {item.scope.label()}",
        f"- Source: {item.source}",
        f"- Valid: {item.effective_from.isoformat()} -> {item.expires.isoformat()}",
        f"- Keywords: {keywords_for(item)}",
    ]
    if item.confidence:
        lines.append(f"- Confidence: {item.confidence.value}")
    if item.next:
        lines.append(f"- Next: {normalize_whitespace(item.next)}")
    lines.append("")
    return lines


def topic_slug(topic: str) -> str:
    return _SLUG_UNSAFE.sub("-", topic.lower()).strip("-") or "misc"


def _quick_index(items: Sequence[MemoryItem]) -> list[str]:
    lines = ["## Quick Index", ""]
    if not items:
        return [*lines, "_None_", ""]
    by_slot: dict[str, list[str]] = {}
    for item in items:
        by_slot.setdefault(f"{item.topic}.{item.key}", []).append(item.id)
    for slot in sorted(by_slot):
        lines.append(f"- {slot}: {', '.join(by_slot[slot])}")
    lines.append("")
    return lines


def _status_section(status: MemoryStatus, items: Sequence[MemoryItem]) -> list[str]:
    scoped = sorted((item for item in items if item.status == status), key=lambda item: item.id)
    lines = [f"## {status.value.capitalize()} ({len(scoped)})", ""]
    if not scoped:
        return [*lines, "_None_", ""]
    for item in scoped:
        lines.extend(item_block(item))
    return lines


def build_memory_markdown(
    *,
    source_path: str,
    items: Iterable[MemoryItem],
    statuses: Sequence[MemoryStatus] = (MemoryStatus.ACTIVE,),
    runtime_note: str = "Runtime file optimized for retrieval precision (active memory only).",
    generated_at: str | None = None,
) -> str:
    filtered = [item for item in items if item.status in statuses]
    lines = [
        "# MEMORY (Generated)",
        "",
        f"- Source: {source_path}",
        f"- Generated: {generated_at or _now_iso()}",
        f"- Render mode: {', '.join(status.value for status in statuses)}",
        f"- {runtime_note}",
        "- Search tip: match by topic.key, keywords, and canonical line.",
        "",
    ]
    lines.extend(_quick_index(filtered))
    for status in statuses:
        lines.extend(_status_section(status, filtered))
    return "\n".join(lines) + "\n"


def build_active_topic_shards(items: Iterable[MemoryItem]) -> list[TopicShard]:
    by_topic: dict[str, list[MemoryItem]] = {}
    for item in items:
        if item.status == MemoryStatus.ACTIVE:
            by_topic.setdefault(item.topic, []).append(item)

    used: set[str] = set()
    shards: list[TopicShard] = []
    for topic in sorted(by_topic):
        base = topic_slug(topic)
        slug = base
        sequence = 2
        while slug in used:
            slug = f"{base}-{sequence}"
            sequence += 1
        used.add(slug)
        members = tuple(sorted(by_topic[topic], key=lambda item: item.id))
        shards.append(TopicShard(topic=topic, slug=slug, items=members))
    return shards


def build_topic_shard_markdown(
    *,
    source_path: str,
    shard: TopicShard,
    generated_at: str | None = None,
) -> str:
    lines = [
        f"# MEMORY Topic: {shard.topic}",
        "",
        f"- Source: {source_path}",
        f"- Generated: {generated_at or _now_iso()}",
        "- Status: active",
        "- Scope: topic shard for retrieval precision.",
        "",
        "## Quick Index",
        "",
    ]
    if not shard.items:
        return "\n".join([*lines, "_None_", ""]) + "\n"
    lines.extend(f"- {item.key}: {item.id}" for item in shard.items)
    lines.extend(["", "## Active", ""])
    for item in shard.items:
        lines.extend(item_block(item))
    return "\n".join(lines) + "\n"


def build_topic_shard_index_markdown(
    *,
    source_path: str,
    shards: Sequence[TopicShard],
    generated_at: str | None = None,
) -> str:
    lines = [
        "# Memory Topic Shards (Generated)",
        "",
        f"- Source: {source_path}",
        f"- Generated: {generated_at or _now_iso()}",
        f"- Topics: {len(shards)}",
        "",
    ]
    if not shards:
        return "\n".join([*lines, "_None_", ""]) + "\n"
    lines.extend(f"- {shard.topic}: {shard.filename} ({len(shard.items)})" for shard in shards)
    lines.append("")
    return "\n".join(lines) + "\n"
