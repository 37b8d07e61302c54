"""Configuration loader for memory store roots, paths and lock timing."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .audit import DEFAULT_SOURCE_PREFIXES
from .errors import ConfigError
from .locks import (
    DEFAULT_LOCK_POLL_SECONDS,
    DEFAULT_LOCK_STALE_SECONDS,
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    resolve_lock_path,
)

ROOT_ENV = "MEMORY_GOVERNANCE_ROOT"
WORKSPACE_ENV = "MEMORY_GOVERNANCE_WORKSPACE"
STATUS_STORE_LOCK = "status-store"

_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


class LockSettings(BaseModel):
    timeout_seconds: float = Field(DEFAULT_LOCK_TIMEOUT_SECONDS, gt=0)
    poll_seconds: float = Field(DEFAULT_LOCK_POLL_SECONDS, gt=0)
    stale_seconds: float = Field(DEFAULT_LOCK_STALE_SECONDS, gt=0)


class StoreSettings(BaseModel):
    memory_root: str
    workspace_root: str
    status_dir: str | None = None
    memory_file: str | None = None
    runtime_file: str | None = None
    topic_dir: str | None = None
    lock: LockSettings = Field(default_factory=LockSettings)
    source_prefixes: list[str] = Field(default_factory=lambda: list(DEFAULT_SOURCE_PREFIXES))

    @field_validator("source_prefixes")
    @classmethod
    def _non_empty_prefixes(cls, value: list[str]) -> list[str]:
        cleaned = [prefix for prefix in (item.strip() for item in value) if prefix]
        if not cleaned:
            raise ValueError("source_prefixes must list at least one prefix")
        return cleaned

    def resolve_paths(self) -> "MemoryStatusPaths":
        memory_root = Path(self.memory_root).expanduser().resolve()
        workspace_root = Path(self.workspace_root).expanduser().resolve()
        status_dir = _resolve(self.status_dir) or memory_root / "status"
        topic_dir = _resolve(self.topic_dir) or workspace_root / "memory" / "topics"
        return MemoryStatusPaths(
            memory_root=memory_root,
            workspace_root=workspace_root,
            memory_path=_resolve(self.memory_file) or memory_root / "MEMORY.yml",
            workspace_memory_path=_resolve(self.runtime_file) or workspace_root / "MEMORY.md",
            workspace_topic_dir=topic_dir,
            workspace_topic_index_path=topic_dir / "README.md",
            status_dir=status_dir,
            active_path=status_dir / "active.yml",
            pending_path=status_dir / "pending.yml",
            deprecated_path=status_dir / "deprecated.yml",
        )


@dataclass(frozen=True)
class MemoryStatusPaths:
    memory_root: Path
    workspace_root: Path
    memory_path: Path
    workspace_memory_path: Path
    workspace_topic_dir: Path
    workspace_topic_index_path: Path
    status_dir: Path
    active_path: Path
    pending_path: Path
    deprecated_path: Path

    @property
    def lock_path(self) -> Path:
        return resolve_lock_path(self.memory_root, STATUS_STORE_LOCK)

    @property
    def bucket_paths(self) -> tuple[Path, Path, Path]:
        return (self.active_path, self.pending_path, self.deprecated_path)

    def as_dict(self) -> dict[str, str]:
        return {
            "memory_root": str(self.memory_root),
            "workspace_root": str(self.workspace_root),
            "memory_path": str(self.memory_path),
            "workspace_memory_path": str(self.workspace_memory_path),
            "workspace_topic_dir": str(self.workspace_topic_dir),
            "status_dir": str(self.status_dir),
        }


def _resolve(value: str | None) -> Path | None:
    if not value:
        return None
    return Path(value).expanduser().resolve()


def _expand_str(value: str) -> str:
    def replacer(match: re.Match[str]) -> str:
        token = match.group(1)
        if ":-" in token:
            key, default = token.split(":-", 1)
            actual = os.getenv(key, "")
            return actual if actual.strip() else default
        actual = os.getenv(token, "")
        if not actual.strip():
            raise ConfigError(f"missing environment variable: {token}")
        return actual

    return _VAR_PATTERN.sub(replacer, value)


def _expand_payload(value: Any) -> Any:
    if isinstance(value, str):
        return _expand_str(value)
    if isinstance(value, list):
        return [_expand_payload(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _expand_payload(item) for key, item in value.items()}
    return value


def default_memory_root() -> str:
    return os.getenv(ROOT_ENV, "").strip() or str(Path.home() / ".memory-governance" / "memory")


def default_workspace_root() -> str:
    return os.getenv(WORKSPACE_ENV, "").strip() or str(
        Path.home() / ".memory-governance" / "workspace"
    )


def build_settings(**overrides: Any) -> StoreSettings:
    """Settings from explicit overrides, falling back to the environment defaults."""
    payload = {key: value for key, value in overrides.items() if value is not None}
    payload.setdefault("memory_root", default_memory_root())
    payload.setdefault("workspace_root", default_workspace_root())
    try:
        return StoreSettings(**payload)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc


def load_settings(path: Path, **overrides: Any) -> StoreSettings:
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"{path}: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: settings must be a mapping")
    expanded = _expand_payload(data)
    expanded.update({key: value for key, value in overrides.items() if value is not None})
    return build_settings(**expanded)
