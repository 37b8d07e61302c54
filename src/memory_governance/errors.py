"""Memory store error taxonomy and helpers."""

from __future__ import annotations

from typing import Any, Sequence


class MemoryStoreError(RuntimeError):
    """Stable, caller-facing error surfaced as a reason code."""

    code = "MEMORY_STORE_ERROR"

    def __init__(self, detail: str | None = None, *, code: str | None = None) -> None:
        if code:
            self.code = code
        self.detail = detail
        message = f"{self.code}:{detail}" if detail else self.code
        super().__init__(message)


class RecordValidationError(MemoryStoreError):
    """One raw record failed field validation; carries every issue found for it."""

    code = "RECORD_INVALID"

    def __init__(self, issues: Sequence[Any], detail: str | None = None) -> None:
        self.issues = list(issues)
        super().__init__(detail or f"{len(self.issues)} issue(s)")


class SevereAuditError(MemoryStoreError):
    code = "AUDIT_SEVERE"

    def __init__(self, action: str, issues: Sequence[Any]) -> None:
        self.action = action
        self.issues = list(issues)
        messages = "; ".join(str(getattr(issue, "message", issue)) for issue in self.issues)
        super().__init__(f"audit failed after {action}: {messages}")


class ItemNotFoundError(MemoryStoreError):
    code = "ITEM_NOT_FOUND"

    def __init__(self, *item_ids: str) -> None:
        self.item_ids = tuple(item_ids)
        super().__init__(", ".join(self.item_ids))


class InvalidArgumentError(MemoryStoreError):
    code = "INVALID_ARGUMENT"


class LockTimeoutError(MemoryStoreError):
    code = "LOCK_TIMEOUT"


class LockAcquisitionError(MemoryStoreError):
    code = "LOCK_ACQUISITION_FAILED"


class ConfigError(MemoryStoreError):
    code = "CONFIG_INVALID"


def reason_code(exc: Exception) -> str:
    if isinstance(exc, MemoryStoreError):
        return exc.code
    text = str(exc or "").strip()
    if text.isupper():
        return text
    if ":" in text:
        head = text.split(":", 1)[0].strip()
        if head.isupper():
            return head
    return "INTERNAL_ERROR"
