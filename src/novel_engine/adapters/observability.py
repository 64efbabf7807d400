"""Process-wide logging setup for the engine's API and CLI entrypoints."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

DEFAULT_LOG_PATH = "work/logs/novel_engine.log"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_CONFIGURED = False


def int_env(name: str, default: int, *, minimum: int, maximum: int) -> int:
    """Read a clamped integer from the environment, falling back on bad input."""
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, min(maximum, value))


def _level_env(name: str, default: int) -> int:
    level_name = os.environ.get(name, "").strip().upper()
    if not level_name:
        return default
    level = logging.getLevelName(level_name)
    return level if isinstance(level, int) else default


def configure_runtime_logging(*, force: bool = False) -> Path:
    """Attach console and size-rotated file handlers to the root logger once.

    Returns the log file path so callers can report where output lands.
    """
    global _CONFIGURED
    log_path = Path(os.environ.get("NOVEL_ENGINE_LOG_PATH", "").strip() or DEFAULT_LOG_PATH)
    if _CONFIGURED and not force:
        return log_path

    level = _level_env("NOVEL_ENGINE_LOG_LEVEL", logging.INFO)
    max_bytes = int_env(
        "NOVEL_ENGINE_LOG_MAX_BYTES",
        5 * 1024 * 1024,
        minimum=64 * 1024,
        maximum=100 * 1024 * 1024,
    )
    backup_count = int_env("NOVEL_ENGINE_LOG_BACKUP_COUNT", 10, minimum=1, maximum=120)

    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z")
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    rotating = RotatingFileHandler(
        filename=log_path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    rotating.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.addHandler(console)
    root.addHandler(rotating)

    logging.getLogger("uvicorn.access").setLevel(
        _level_env("NOVEL_ENGINE_ACCESS_LOG_LEVEL", logging.WARNING)
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    _CONFIGURED = True
    return log_path
