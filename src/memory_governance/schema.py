"""Schema loader/validator for memory item records."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml
from jsonschema import Draft202012Validator

from .errors import ConfigError

MEMORY_ITEM_SCHEMA = "memory_item.schema.yaml"

_DEFAULT_ROOT = Path(__file__).resolve().parent / "contracts"


@dataclass(frozen=True)
class SchemaFinding:
    path: str
    prop: str | None
    message: str


@dataclass
class MemorySchemaRegistry:
    root: Path = _DEFAULT_ROOT
    _validators: dict[str, Draft202012Validator] = field(default_factory=dict, init=False, repr=False)

    def findings(self, schema_name: str, payload: Mapping[str, Any]) -> list[SchemaFinding]:
        validator = self._validator(schema_name)
        errors = sorted(validator.iter_errors(dict(payload)), key=lambda item: list(item.path))
        results: list[SchemaFinding] = []
        for error in errors:
            parts = [str(part) for part in error.path]
            if error.validator == "required":
                missing = _missing_property(error.message)
                if missing:
                    parts = [*parts, missing]
            path = ".".join(parts) or "<root>"
            results.append(
                SchemaFinding(path=path, prop=parts[0] if parts else None, message=error.message)
            )
        return results

    def _validator(self, schema_name: str) -> Draft202012Validator:
        cached = self._validators.get(schema_name)
        if cached is not None:
            return cached
        schema = self._load_schema(schema_name)
        Draft202012Validator.check_schema(schema)
        validator = Draft202012Validator(schema)
        self._validators[schema_name] = validator
        return validator

    def _load_schema(self, schema_name: str) -> dict[str, Any]:
        name = str(schema_name or "").strip()
        if not name:
            raise ConfigError("schema_name is required")
        path = self.root / name
        if not path.exists():
            raise ConfigError(f"schema not found: {path}")
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ConfigError(f"schema is not a mapping: {path}")
        return payload


def _missing_property(message: str) -> str | None:
    # jsonschema reports required failures as "'name' is a required property".
    if message.startswith("'") and "' is a required property" in message:
        return message[1:].split("'", 1)[0]
    return None


_DEFAULT_REGISTRY: MemorySchemaRegistry | None = None


def default_registry() -> MemorySchemaRegistry:
    global _DEFAULT_REGISTRY
    if _DEFAULT_REGISTRY is None:
        _DEFAULT_REGISTRY = MemorySchemaRegistry()
    return _DEFAULT_REGISTRY
