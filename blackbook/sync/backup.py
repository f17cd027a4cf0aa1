"""Timestamped backups taken before a sync overwrites something."""

from __future__ import annotations

import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional

logger = logging.getLogger("blackbook.sync.backup")

DEFAULT_BACKUP_RETENTION = 3


def backup_root(cache_dir: Path) -> Path:
    return Path(cache_dir) / "backups"


def _owner_dir(root: Path, owner: str) -> Path:
    # Owner keys look like "tool:instance"; keep them filesystem friendly.
    return root / owner.replace(":", "_").replace("/", "_")


def _new_snapshot_dir(root: Path, owner: str) -> Path:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    snapshot_dir = _owner_dir(root, owner) / stamp
    counter = 1
    while snapshot_dir.exists():
        snapshot_dir = _owner_dir(root, owner) / f"{stamp}-{counter}"
        counter += 1
    snapshot_dir.mkdir(parents=True)
    return snapshot_dir


def _copy_into(path: Path, snapshot_dir: Path) -> Path:
    backup_path = snapshot_dir / path.name
    if path.is_dir():
        shutil.copytree(path, backup_path)
    else:
        shutil.copy2(path, backup_path)
    return backup_path


def create_backup(path: Path, owner: str, root: Path) -> Optional[Path]:
    """Copy ``path`` into ``root/<owner>/<timestamp>/`` and return the copy."""
    path = Path(path)
    if not path.exists():
        return None

    backup_path = _copy_into(path, _new_snapshot_dir(root, owner))
    logger.info("Created backup: %s -> %s", path, backup_path)
    return backup_path


def create_snapshot(paths: Iterable[Path], owner: str, root: Path) -> Optional[Path]:
    """Copy several existing paths into one snapshot directory and return it.

    Used when a single apply overwrites many files, so that one apply uses
    one retention slot.
    """
    existing = [Path(path) for path in paths if Path(path).exists()]
    if not existing:
        return None

    snapshot_dir = _new_snapshot_dir(root, owner)
    for path in existing:
        _copy_into(path, snapshot_dir)
    logger.info("Created backup of %d path(s) in %s", len(existing), snapshot_dir)
    return snapshot_dir


def list_backups(owner: str, root: Path) -> List[Path]:
    """Snapshot directories for ``owner``, newest first."""
    owner_dir = _owner_dir(root, owner)
    if not owner_dir.exists():
        return []
    return sorted((entry for entry in owner_dir.iterdir() if entry.is_dir()), reverse=True)


def prune_backups(owner: str, root: Path, retention: int = DEFAULT_BACKUP_RETENTION) -> List[Path]:
    """Delete all but the newest ``retention`` snapshots; return what was removed."""
    removed = list_backups(owner, root)[retention:]
    for snapshot in removed:
        shutil.rmtree(snapshot, ignore_errors=True)
        logger.debug("Pruned backup %s", snapshot)
    return removed


__all__ = [
    "DEFAULT_BACKUP_RETENTION",
    "backup_root",
    "create_backup",
    "create_snapshot",
    "list_backups",
    "prune_backups",
]
