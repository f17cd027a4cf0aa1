"""Logging helpers for Blackbook."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys
from typing import Optional, Union

from .configuration import Settings
from .paths import get_cache_dir

LOG_SUBPATH = Path("logs") / "blackbook.log"
STRUCTURED_LOG_SUBPATH = Path("logs") / "blackbook.jsonl"
MAX_BYTES = 2 * 1024 * 1024  # 2 MB per log segment
BACKUP_COUNT = 3
REPO_ROOT = Path(__file__).resolve().parent.parent
FALLBACK_ROOT = REPO_ROOT / ".blackbook_runtime"


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        if hasattr(record, "extra") and record.extra:
            log_entry["extra"] = record.extra
        return json.dumps(log_entry)


def setup_logging(
    cache_dir: Path,
    level: Union[str, int] = logging.WARNING,
    structured: bool = False,
    console: bool = True,
) -> Path:
    """Configure the ``blackbook`` logger.

    Args:
        cache_dir: Blackbook cache directory; logs go under ``logs/``.
        level: Logging level (string name or int constant).
        structured: Also write JSON lines next to the text log.
        console: Mirror records to stderr.

    Returns:
        Path to the primary (text) log file.
    """
    log_path = _resolve_log_path(cache_dir, LOG_SUBPATH)

    resolved_level = _resolve_level(level)
    text_formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setFormatter(text_formatter)

    logger = logging.getLogger("blackbook")
    _reset_handlers(logger)
    logger.setLevel(resolved_level)
    logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(text_formatter)
        logger.addHandler(console_handler)

    if structured:
        json_path = _resolve_log_path(cache_dir, STRUCTURED_LOG_SUBPATH)
        json_handler = RotatingFileHandler(
            json_path,
            maxBytes=MAX_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        json_handler.setFormatter(JSONFormatter())
        logger.addHandler(json_handler)

    logger.propagate = False
    return log_path


def configure_logging(
    settings: Settings,
    cache_dir: Optional[Path] = None,
    structured: bool = False,
    console: bool = True,
) -> Path:
    """Set up logging at ``settings.log_level`` under the Blackbook cache dir."""
    return setup_logging(
        Path(cache_dir) if cache_dir is not None else get_cache_dir(),
        level=settings.log_level,
        structured=structured,
        console=console,
    )


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.WARNING)
    return int(level)


def _resolve_log_path(cache_dir: Path, subpath: Path) -> Path:
    primary = cache_dir / subpath
    try:
        primary.parent.mkdir(parents=True, exist_ok=True)
        return primary
    except PermissionError:
        fallback = FALLBACK_ROOT / subpath
        fallback.parent.mkdir(parents=True, exist_ok=True)
        print(
            f"[logging] Unable to write logs under '{cache_dir}'; "
            f"falling back to '{fallback.parent}'.",
            file=sys.stderr,
        )
        return fallback


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


__all__ = [
    "FALLBACK_ROOT",
    "JSONFormatter",
    "LOG_SUBPATH",
    "STRUCTURED_LOG_SUBPATH",
    "configure_logging",
    "setup_logging",
]
