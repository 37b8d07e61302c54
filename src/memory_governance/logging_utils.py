"""Logging helpers for the memory store."""

from __future__ import annotations

import logging
import os
from pathlib import Path

LOG_PATH_ENV = "MEMORY_GOVERNANCE_LOG"


def configure_logging(level: int = logging.INFO, log_path: str | Path | None = None) -> None:
    """Configure default logging if no handlers are present."""
    root = logging.getLogger()
    if root.handlers:
        return
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    target = log_path or (os.getenv(LOG_PATH_ENV) or "").strip()
    if target:
        path = Path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )
