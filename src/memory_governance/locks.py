"""Advisory cross-process locks backed by exclusively-created lock files."""

from __future__ import annotations

import json
import logging
import os
import re
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, TypeVar

from .errors import LockAcquisitionError, LockTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_LOCK_TIMEOUT_SECONDS = 30.0
DEFAULT_LOCK_POLL_SECONDS = 0.2
DEFAULT_LOCK_STALE_SECONDS = 15 * 60.0

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class LockHandle:
    lock_path: Path
    pid: int
    token: str
    acquired_at_utc: str

    def payload(self) -> dict[str, object]:
        return {"pid": self.pid, "acquired_at": self.acquired_at_utc, "token": self.token}


def resolve_lock_path(memory_root: Path, lock_name: str) -> Path:
    safe_name = _UNSAFE_NAME.sub("-", lock_name)
    return Path(memory_root) / "locks" / f"{safe_name}.lock"


def lock_age_seconds(lock_path: Path) -> float | None:
    try:
        mtime = lock_path.stat().st_mtime
    except FileNotFoundError:
        return None
    return time.time() - mtime


class FileLock:
    """Mutual exclusion over one named resource among cooperating processes.

    A holder that crashes leaves its lock file behind; the next contender
    deletes it once it is older than `stale_after` seconds.
    """

    def __init__(
        self,
        lock_path: Path,
        *,
        timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        poll_interval: float = DEFAULT_LOCK_POLL_SECONDS,
        stale_after: float = DEFAULT_LOCK_STALE_SECONDS,
    ) -> None:
        self.lock_path = Path(lock_path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.stale_after = stale_after

    def acquire(self) -> LockHandle:
        started = time.monotonic()
        while True:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                age = lock_age_seconds(self.lock_path)
                if age is not None and age > self.stale_after:
                    self._reclaim_stale()
                    continue
                if time.monotonic() - started >= self.timeout:
                    raise LockTimeoutError(str(self.lock_path)) from None
                time.sleep(self.poll_interval)
                continue
            except OSError as exc:
                raise LockAcquisitionError(f"{self.lock_path}: {exc}") from exc
            handle = LockHandle(
                lock_path=self.lock_path,
                pid=os.getpid(),
                token=uuid.uuid4().hex,
                acquired_at_utc=datetime.now(tz=timezone.utc).isoformat(),
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as stream:
                    stream.write(json.dumps(handle.payload(), indent=2, sort_keys=True) + "\n")
            except OSError as exc:
                self.lock_path.unlink(missing_ok=True)
                raise LockAcquisitionError(f"{self.lock_path}: {exc}") from exc
            logger.debug("MEM lock acquired path=%s pid=%s", self.lock_path, handle.pid)
            return handle

    def _reclaim_stale(self) -> None:
        """Move the lock file aside and delete it only if the moved file is still stale.

        The age seen by the caller may be out of date: another contender can
        reclaim the old lock and create a fresh one in between. The fresh
        lock is then linked back into place instead of being deleted.
        """
        aside = self.lock_path.with_name(
            f".{self.lock_path.name}.{os.getpid()}.{uuid.uuid4().hex}.stale"
        )
        try:
            os.rename(self.lock_path, aside)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise LockAcquisitionError(f"{self.lock_path}: {exc}") from exc
        age = time.time() - aside.stat().st_mtime
        if age > self.stale_after:
            aside.unlink(missing_ok=True)
            logger.warning(
                "MEM lock stale reclaimed path=%s age_seconds=%.1f", self.lock_path, age
            )
            return
        try:
            # link() never overwrites, so a lock created meanwhile is kept.
            os.link(aside, self.lock_path)
        except FileExistsError:
            logger.warning("MEM lock restore lost race path=%s", self.lock_path)
        except OSError:
            # No hard links on this filesystem.
            os.replace(aside, self.lock_path)
            return
        aside.unlink(missing_ok=True)

    def release(self, handle: LockHandle) -> None:
        # Only remove the file if it is still ours; a stale reclaim may have
        # handed the resource to another holder in the meantime.
        try:
            current = json.loads(self.lock_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.warning("MEM lock already gone path=%s", self.lock_path)
            return
        except (OSError, ValueError):
            current = {}
        if isinstance(current, dict) and current.get("token") not in (None, handle.token):
            logger.warning("MEM lock taken over path=%s; leaving it in place", self.lock_path)
            return
        self.lock_path.unlink(missing_ok=True)
        logger.debug("MEM lock released path=%s", self.lock_path)

    @contextmanager
    def hold(self) -> Iterator[LockHandle]:
        handle = self.acquire()
        try:
            yield handle
        finally:
            self.release(handle)


def with_lock(
    lock_path: Path,
    task: Callable[[], T],
    *,
    timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
    poll_interval: float = DEFAULT_LOCK_POLL_SECONDS,
    stale_after: float = DEFAULT_LOCK_STALE_SECONDS,
) -> T:
    lock = FileLock(lock_path, timeout=timeout, poll_interval=poll_interval, stale_after=stale_after)
    with lock.hold():
        return task()
