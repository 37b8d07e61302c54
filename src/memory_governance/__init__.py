"""Memory governance package: audited, lock-protected status store for memory items."""

from .audit import AuditIssue, AuditSummary, IssueCode, audit, audit_file
from .config import MemoryStatusPaths, StoreSettings, build_settings, load_settings
from .conflicts import ConflictPair, conflicts, list_active_conflict_pairs, list_unresolved_conflict_pairs
from .errors import (
    ConfigError,
    InvalidArgumentError,
    ItemNotFoundError,
    LockAcquisitionError,
    LockTimeoutError,
    MemoryStoreError,
    RecordValidationError,
    SevereAuditError,
)
from .locks import FileLock, with_lock
from .models import MemoryItem, MemoryScope, MemoryStatus, StatusBuckets
from .storage import write_text_atomic
from .store import StatusStore, build_status_store

__all__ = [
    "AuditIssue",
    "AuditSummary",
    "ConfigError",
    "ConflictPair",
    "FileLock",
    "InvalidArgumentError",
    "IssueCode",
    "ItemNotFoundError",
    "LockAcquisitionError",
    "LockTimeoutError",
    "MemoryItem",
    "MemoryScope",
    "MemoryStatus",
    "MemoryStatusPaths",
    "MemoryStoreError",
    "RecordValidationError",
    "SevereAuditError",
    "StatusBuckets",
    "StatusStore",
    "StoreSettings",
    "audit",
    "audit_file",
    "build_settings",
    "build_status_store",
    "conflicts",
    "list_active_conflict_pairs",
    "list_unresolved_conflict_pairs",
    "load_settings",
    "with_lock",
    "write_text_atomic",
]
