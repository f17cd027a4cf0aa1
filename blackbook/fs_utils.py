"""Crash-safe file writes and cross-process file locks.

Every mutation of persisted state (manifest, config, synced files) goes
through :func:`atomic_write`, and every manifest or config save is wrapped
in :func:`file_lock`. The lock is advisory: it is a sibling ``.lock``
marker created with ``O_EXCL`` so creation fails when another process
already holds it.
"""

from __future__ import annotations

import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, TypeVar, Union

from .errors import LockTimeout, WriteFailure

logger = logging.getLogger("blackbook.fs_utils")

LOCK_RETRY_COUNT = 5
LOCK_RETRY_DELAY = 0.05  # seconds, multiplied by the attempt number
LOCK_STALE_SECONDS = 30.0

T = TypeVar("T")
PathLike = Union[str, Path]


def lock_path_for(path: PathLike) -> Path:
    path = Path(path)
    return path.with_name(path.name + ".lock")


def atomic_write(path: PathLike, content: Union[str, bytes]) -> None:
    """Write ``content`` to ``path`` so readers never see a partial file.

    The data lands in a temp file in the destination directory, is fsynced,
    and is renamed over ``path``. If anything fails before the rename the
    destination is left untouched.
    """
    target = Path(path)
    data = content.encode("utf-8") if isinstance(content, str) else content

    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        temp_path = _write_temp(target, data)
    except OSError as exc:
        raise WriteFailure(target, exc) from exc

    try:
        os.replace(temp_path, target)
    except OSError as exc:
        _discard(temp_path)
        raise WriteFailure(target, exc) from exc

    logger.debug("Wrote %s (%d bytes)", target, len(data))


def _write_temp(target: Path, data: bytes) -> Path:
    temp_path = target.parent / f".{target.name}.{os.getpid()}.{time.time_ns()}.tmp"
    fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
    except OSError:
        _discard(temp_path)
        raise
    return temp_path


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove temp file %s: %s", path, exc)


@contextmanager
def file_lock(path: PathLike) -> Iterator[Path]:
    """Hold an exclusive cross-process lock keyed on ``path``.

    Acquisition is retried with linear backoff; a marker older than
    ``LOCK_STALE_SECONDS`` is treated as abandoned and reclaimed. Raises
    :class:`LockTimeout` when the retry budget runs out.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    marker = lock_path_for(target)
    fd = _acquire(target, marker)
    try:
        yield marker
    finally:
        try:
            os.close(fd)
        except OSError:
            pass
        try:
            marker.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not release lock %s: %s", marker, exc)


def with_file_lock(path: PathLike, fn: Callable[[], T]) -> T:
    """Run ``fn`` while holding the lock for ``path`` and return its result."""
    with file_lock(path):
        return fn()


def _acquire(target: Path, marker: Path) -> int:
    attempt = 0
    while attempt <= LOCK_RETRY_COUNT:
        try:
            fd = os.open(marker, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            if _reclaim_if_stale(marker):
                attempt += 1
                continue
            if attempt == LOCK_RETRY_COUNT:
                break
            attempt += 1
            time.sleep(LOCK_RETRY_DELAY * attempt)
            continue

        os.write(fd, str(os.getpid()).encode("ascii"))
        return fd

    raise LockTimeout(target)


def _reclaim_if_stale(marker: Path) -> bool:
    try:
        seen = marker.stat()
    except FileNotFoundError:
        # Released between our open and stat; retry right away.
        return True
    age = time.time() - seen.st_mtime
    if age <= LOCK_STALE_SECONDS:
        return False

    holder = _read_holder(marker)
    try:
        current = marker.stat()
    except FileNotFoundError:
        return True
    if (current.st_ino, current.st_mtime_ns) != (seen.st_ino, seen.st_mtime_ns):
        # Another process reclaimed it and now holds a fresh marker.
        logger.debug("Lock %s changed hands while reclaiming", marker)
        return True

    logger.warning(
        "Removing stale lock %s (age %.1fs, holder pid %s)",
        marker,
        age,
        holder or "unknown",
    )
    try:
        marker.unlink()
    except FileNotFoundError:
        pass
    return True


def _read_holder(marker: Path) -> str:
    try:
        return marker.read_text(encoding="ascii").strip()
    except (OSError, UnicodeDecodeError):
        return ""


__all__ = [
    "LOCK_RETRY_COUNT",
    "LOCK_RETRY_DELAY",
    "LOCK_STALE_SECONDS",
    "atomic_write",
    "file_lock",
    "lock_path_for",
    "with_file_lock",
]
