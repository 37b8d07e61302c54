"""Crash-safe persistence for memory artifacts (temp write + rename)."""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Iterable

import yaml

from .models import MemoryItem, sort_items

logger = logging.getLogger(__name__)


def temp_sibling(path: Path) -> Path:
    stamp = format(time.time_ns(), "x")
    return path.parent / f".{path.name}.{os.getpid()}.{stamp}.tmp"


def write_bytes_atomic(path: Path, data: bytes) -> Path:
    """Write `data` next to `path` and rename it into place.

    Readers either see the previous content or the new content, never a
    partial file. The temp name is salted with the pid and a nanosecond
    stamp so concurrent writers never share a temp file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = temp_sibling(path)
    try:
        with tmp_path.open("wb") as handle:
            handle.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return path


def write_text_atomic(path: Path, content: str) -> Path:
    return write_bytes_atomic(path, content.encode("utf-8"))


def read_bytes(path: Path) -> bytes | None:
    try:
        return Path(path).read_bytes()
    except FileNotFoundError:
        return None


def serialize_items(items: Iterable[MemoryItem]) -> str:
    records = [item.as_record() for item in sort_items(items)]
    return yaml.safe_dump(
        records,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
        width=2**31 - 1,
    )


def write_memory_items(path: Path, items: Iterable[MemoryItem]) -> Path:
    return write_text_atomic(path, serialize_items(items))


class ArtifactSnapshot:
    """Byte-exact capture of a set of files, restorable after a failed commit."""

    def __init__(self, contents: dict[Path, bytes | None], globbed: dict[Path, str]) -> None:
        self.contents = contents
        self.globbed = globbed

    @classmethod
    def capture(
        cls,
        paths: Iterable[Path],
        globbed: dict[Path, str] | None = None,
    ) -> "ArtifactSnapshot":
        contents: dict[Path, bytes | None] = {}
        for path in paths:
            contents[Path(path)] = read_bytes(Path(path))
        patterns = dict(globbed or {})
        for directory, pattern in patterns.items():
            if not directory.is_dir():
                continue
            for entry in sorted(directory.glob(pattern)):
                if entry.is_file():
                    contents[entry] = read_bytes(entry)
        return cls(contents, patterns)

    def restore(self) -> None:
        for directory, pattern in self.globbed.items():
            if not directory.is_dir():
                continue
            for entry in directory.glob(pattern):
                if entry.is_file() and entry not in self.contents:
                    entry.unlink(missing_ok=True)
        for path, data in self.contents.items():
            if data is None:
                path.unlink(missing_ok=True)
            else:
                write_bytes_atomic(path, data)
        logger.info("MEM snapshot restored files=%d", len(self.contents))
