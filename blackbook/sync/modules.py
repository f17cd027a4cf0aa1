"""Sync modules: check and apply for single files, directory trees and globs.

:func:`module_for` picks the concrete module for an asset kind. ``check``
never touches the filesystem beyond reading; ``apply`` copies in the
requested direction through :func:`~blackbook.fs_utils.atomic_write`.
"""

from __future__ import annotations

import difflib
import logging
import os
import re
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from ..errors import SourceMissing
from ..fs_utils import atomic_write
from .backup import DEFAULT_BACKUP_RETENTION, create_backup, create_snapshot, prune_backups
from .hashing import compute_files_hash, hash_path, list_files

logger = logging.getLogger("blackbook.sync.modules")

BINARY_SNIFF_BYTES = 8192
DIFF_CONTEXT_LINES = 3
_GLOB_CHARS = re.compile(r"[*?\[]")


class ModuleStatus(str, Enum):
    """Outcome of comparing one source/target pair."""
    OK = "ok"
    MISSING = "missing"
    DRIFTED = "drifted"
    FAILED = "failed"


class Direction(str, Enum):
    """Which side an apply copies from."""
    FORWARD = "forward"  # source -> target
    PULLBACK = "pullback"  # target -> source


@dataclass(frozen=True)
class SyncRequest:
    source_path: Path
    target_path: Path
    owner: str = ""


@dataclass
class CheckResult:
    status: ModuleStatus
    message: str
    diff: Optional[str] = None


@dataclass
class ApplyResult:
    changed: bool
    message: str
    backup: Optional[Path] = None


def is_binary(data: bytes) -> bool:
    return b"\0" in data[:BINARY_SNIFF_BYTES]


def unified_diff(old: bytes, new: bytes, old_label: str, new_label: str) -> str:
    """Unified diff of two blobs, or a one-line marker when either is binary."""
    if is_binary(old) or is_binary(new):
        return f"Binary files {old_label} and {new_label} differ\n"
    old_lines = old.decode("utf-8", errors="replace").splitlines(keepends=True)
    new_lines = new.decode("utf-8", errors="replace").splitlines(keepends=True)
    lines = difflib.unified_diff(
        old_lines,
        new_lines,
        fromfile=old_label,
        tofile=new_label,
        n=DIFF_CONTEXT_LINES,
    )
    return "".join(line if line.endswith("\n") else line + "\n" for line in lines)


def is_glob(path: str) -> bool:
    return bool(_GLOB_CHARS.search(path))


def glob_base_dir(pattern: str) -> str:
    """Directory part of ``pattern`` before its first wildcard."""
    match = _GLOB_CHARS.search(pattern)
    if match is None:
        return os.path.dirname(pattern)
    return os.path.dirname(pattern[: match.start()])


def glob_matches(pattern: str) -> List[Path]:
    """Regular files matching ``pattern``, sorted."""
    base = glob_base_dir(pattern)
    relative = pattern[len(base):].lstrip("/" + os.sep)
    root = Path(base or ".")
    if not relative or not root.is_dir():
        return []
    return sorted(path for path in root.glob(relative) if path.is_file())


class SyncModule:
    """Shared check/apply flow; subclasses compare and copy their kind."""

    kind = ""

    def __init__(
        self,
        backup_dir: Optional[Path] = None,
        backup_retention: int = DEFAULT_BACKUP_RETENTION,
    ):
        self.backup_dir = backup_dir
        self.backup_retention = backup_retention

    def check(self, request: SyncRequest) -> CheckResult:
        source = Path(request.source_path)
        target = Path(request.target_path)

        if not source.exists():
            return CheckResult(ModuleStatus.FAILED, f"Source not found: {source}")
        if not target.exists():
            return CheckResult(ModuleStatus.MISSING, f"Target does not exist: {target}")
        return self._compare(source, target)

    def apply(self, request: SyncRequest, direction: Direction = Direction.FORWARD) -> ApplyResult:
        """Make the destination side an exact copy of the origin side."""
        if direction is Direction.FORWARD:
            origin, dest = Path(request.source_path), Path(request.target_path)
        else:
            origin, dest = Path(request.target_path), Path(request.source_path)

        if not origin.exists():
            raise SourceMissing(origin)

        if self._matches(origin, dest):
            return ApplyResult(False, f"{dest} already matches {origin}")

        backup = self.backup(dest, request.owner)
        self._copy(origin, dest)

        verb = "Copied" if direction is Direction.FORWARD else "Pulled back"
        logger.info("%s %s -> %s", verb, origin, dest)
        return ApplyResult(True, f"{verb} {origin} -> {dest}", backup=backup)

    def fingerprints(self, request: SyncRequest) -> Tuple[str, str]:
        """Content hashes of the source and target side, as stored in baselines."""
        return hash_path(request.source_path), hash_path(request.target_path)

    def remove(self, request: SyncRequest) -> ApplyResult:
        """Delete the synced target, keeping a backup first."""
        target = Path(request.target_path)
        if not target.exists() and not target.is_symlink():
            return ApplyResult(False, f"{target} is already absent")

        backup = self.backup(target, request.owner)
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        else:
            target.unlink()
        logger.info("Removed %s", target)
        return ApplyResult(True, f"Removed {target}", backup=backup)

    def backup(self, dest: Path, owner: str) -> Optional[Path]:
        if self.backup_dir is None or not dest.exists():
            return None
        owner = owner or "default"
        backup = create_backup(dest, owner, self.backup_dir)
        prune_backups(owner, self.backup_dir, self.backup_retention)
        return backup

    def _compare(self, source: Path, target: Path) -> CheckResult:
        raise NotImplementedError

    def _matches(self, origin: Path, dest: Path) -> bool:
        raise NotImplementedError

    def _copy(self, origin: Path, dest: Path) -> None:
        raise NotImplementedError


class FileSyncModule(SyncModule):
    """Sync a single file byte for byte."""

    kind = "file"

    def _compare(self, source: Path, target: Path) -> CheckResult:
        if target.is_dir():
            return CheckResult(ModuleStatus.DRIFTED, f"Target is a directory: {target}")

        source_bytes = source.read_bytes()
        target_bytes = target.read_bytes()
        if source_bytes == target_bytes:
            return CheckResult(ModuleStatus.OK, "Files match")

        diff = unified_diff(target_bytes, source_bytes, "target", "source")
        return CheckResult(ModuleStatus.DRIFTED, "Files differ", diff=diff)

    def _matches(self, origin: Path, dest: Path) -> bool:
        return dest.is_file() and origin.read_bytes() == dest.read_bytes()

    def _copy(self, origin: Path, dest: Path) -> None:
        if dest.is_dir():
            shutil.rmtree(dest)
        atomic_write(dest, origin.read_bytes())
        shutil.copymode(origin, dest)


class DirectorySyncModule(SyncModule):
    """Mirror a directory tree; any asymmetry or content mismatch is drift."""

    kind = "directory"

    def _compare(self, source: Path, target: Path) -> CheckResult:
        if not source.is_dir():
            return CheckResult(ModuleStatus.FAILED, f"Source is not a directory: {source}")
        if not target.is_dir():
            return CheckResult(ModuleStatus.DRIFTED, f"Target is not a directory: {target}")

        differing, source_only, target_only = _tree_delta(source, target)
        if not (differing or source_only or target_only):
            return CheckResult(ModuleStatus.OK, "All files match")

        problems = []
        if differing:
            problems.append(f"{len(differing)} file(s) differ")
        if source_only:
            problems.append(f"{len(source_only)} missing from target")
        if target_only:
            problems.append(f"{len(target_only)} only in target")

        parts: List[str] = []
        for rel in differing:
            parts.append(
                unified_diff(
                    (target / rel).read_bytes(),
                    (source / rel).read_bytes(),
                    f"target/{rel}",
                    f"source/{rel}",
                )
            )
        parts.extend(f"Only in source: {rel}\n" for rel in source_only)
        parts.extend(f"Only in target: {rel}\n" for rel in target_only)

        return CheckResult(ModuleStatus.DRIFTED, "; ".join(problems), diff="".join(parts))

    def _matches(self, origin: Path, dest: Path) -> bool:
        if not dest.is_dir():
            return False
        differing, origin_only, dest_only = _tree_delta(origin, dest)
        return not (differing or origin_only or dest_only)

    def _copy(self, origin: Path, dest: Path) -> None:
        if dest.exists() and not dest.is_dir():
            dest.unlink()
        dest.mkdir(parents=True, exist_ok=True)

        origin_dirs = set()
        for dirpath, _dirnames, _filenames in os.walk(origin):
            rel_dir = Path(dirpath).relative_to(origin)
            origin_dirs.add(rel_dir.as_posix())
            dest_dir = dest / rel_dir
            if not dest_dir.is_dir() and (dest_dir.exists() or dest_dir.is_symlink()):
                dest_dir.unlink()
            dest_dir.mkdir(parents=True, exist_ok=True)

        origin_files = list_files(origin)
        for rel in origin_files:
            src_file, dst_file = origin / rel, dest / rel
            if dst_file.is_dir():
                shutil.rmtree(dst_file)
            data = src_file.read_bytes()
            if dst_file.is_file() and dst_file.read_bytes() == data:
                continue
            atomic_write(dst_file, data)
            shutil.copymode(src_file, dst_file)

        keep = set(origin_files)
        for rel in list_files(dest):
            if rel not in keep:
                (dest / rel).unlink()
                logger.debug("Removed %s (not present in %s)", dest / rel, origin)

        for dirpath, _dirnames, filenames in os.walk(dest, topdown=False):
            rel_dir = Path(dirpath).relative_to(dest).as_posix()
            if rel_dir not in origin_dirs and not filenames and not os.listdir(dirpath):
                os.rmdir(dirpath)


class GlobSyncModule(SyncModule):
    """Copy every file matching a source pattern into a target directory.

    Each match lands at ``target/<basename>``. Pullback copies target files
    matching the pattern's last component back over the source match of the
    same name, or into the pattern's base directory for new names.
    """

    kind = "glob"

    def check(self, request: SyncRequest) -> CheckResult:
        pattern = str(request.source_path)
        target = Path(request.target_path)
        matches = glob_matches(pattern)

        if not matches:
            # The repo may legitimately have nothing to offer while the tool
            # still carries installed files.
            if target.exists():
                return CheckResult(ModuleStatus.OK, f"Source pattern matched 0 files: {pattern}")
            return CheckResult(ModuleStatus.MISSING, f"Source pattern matched 0 files: {pattern}")
        if target.exists() and not target.is_dir():
            return CheckResult(ModuleStatus.DRIFTED, f"Target is not a directory: {target}")

        missing = [match.name for match in matches if not (target / match.name).is_file()]
        if missing:
            return CheckResult(
                ModuleStatus.MISSING,
                f"{len(missing)} of {len(matches)} target file(s) missing",
            )

        parts: List[str] = []
        for match in matches:
            source_bytes = match.read_bytes()
            target_bytes = (target / match.name).read_bytes()
            if source_bytes != target_bytes:
                parts.append(
                    unified_diff(target_bytes, source_bytes, f"target/{match.name}", f"source/{match.name}")
                )
        if parts:
            return CheckResult(ModuleStatus.DRIFTED, f"{len(parts)} file(s) differ", diff="".join(parts))
        return CheckResult(ModuleStatus.OK, f"{len(matches)} file(s) match")

    def fingerprints(self, request: SyncRequest) -> Tuple[str, str]:
        return (
            compute_files_hash(glob_matches(str(request.source_path))),
            compute_files_hash(self._target_matches(request)),
        )

    def apply(self, request: SyncRequest, direction: Direction = Direction.FORWARD) -> ApplyResult:
        pattern = str(request.source_path)
        target = Path(request.target_path)
        pairs = self._pairs(request, direction)

        pending = [(origin, dest) for origin, dest in pairs if not _same_file_content(origin, dest)]
        if not pending:
            return ApplyResult(False, f"{len(pairs)} file(s) already match")

        overwritten = [dest for _origin, dest in pending if dest.exists()]
        if direction is Direction.FORWARD and target.exists() and not target.is_dir():
            overwritten.append(target)
        backup = self._snapshot(overwritten, request.owner)

        if direction is Direction.FORWARD and target.exists() and not target.is_dir():
            target.unlink()
        for origin, dest in pending:
            if dest.is_dir():
                shutil.rmtree(dest)
            atomic_write(dest, origin.read_bytes())
            shutil.copymode(origin, dest)

        if direction is Direction.FORWARD:
            message = f"Copied {len(pending)} file(s) {pattern} -> {target}"
        else:
            message = f"Pulled back {len(pending)} file(s) from {target} -> {glob_base_dir(pattern)}"
        logger.info("%s", message)
        return ApplyResult(True, message, backup=backup)

    def remove(self, request: SyncRequest) -> ApplyResult:
        """Delete only the target files this pattern installs."""
        target = Path(request.target_path)
        names = {match.name for match in glob_matches(str(request.source_path))}
        if names:
            doomed = [target / name for name in sorted(names) if (target / name).is_file()]
        else:
            doomed = self._target_matches(request)
        if not doomed:
            return ApplyResult(False, f"No installed files under {target}")

        backup = self._snapshot(doomed, request.owner)
        for path in doomed:
            path.unlink()
        logger.info("Removed %d file(s) from %s", len(doomed), target)
        return ApplyResult(True, f"Removed {len(doomed)} file(s) from {target}", backup=backup)

    def _pairs(self, request: SyncRequest, direction: Direction) -> List[Tuple[Path, Path]]:
        pattern = str(request.source_path)
        target = Path(request.target_path)
        sources = glob_matches(pattern)

        if direction is Direction.FORWARD:
            if not sources:
                raise SourceMissing(pattern)
            return [(match, target / match.name) for match in sources]

        origins = self._target_matches(request)
        if not origins:
            raise SourceMissing(target)
        by_name = {match.name: match for match in sources}
        base = Path(glob_base_dir(pattern) or ".")
        return [(origin, by_name.get(origin.name, base / origin.name)) for origin in origins]

    def _target_matches(self, request: SyncRequest) -> List[Path]:
        target = Path(request.target_path)
        if not target.is_dir():
            return []
        name_pattern = os.path.basename(str(request.source_path))
        return sorted(path for path in target.glob(name_pattern) if path.is_file())

    def _snapshot(self, paths: List[Path], owner: str) -> Optional[Path]:
        if self.backup_dir is None or not paths:
            return None
        owner = owner or "default"
        snapshot = create_snapshot(paths, owner, self.backup_dir)
        prune_backups(owner, self.backup_dir, self.backup_retention)
        return snapshot


def _same_file_content(origin: Path, dest: Path) -> bool:
    return dest.is_file() and origin.read_bytes() == dest.read_bytes()


def _tree_delta(left: Path, right: Path) -> Tuple[List[str], List[str], List[str]]:
    """Files whose content differs, files only in ``left``, files only in ``right``."""
    left_files = set(list_files(left))
    right_files = set(list_files(right))
    differing = [
        rel
        for rel in sorted(left_files & right_files)
        if (left / rel).read_bytes() != (right / rel).read_bytes()
    ]
    return differing, sorted(left_files - right_files), sorted(right_files - left_files)


def module_for(
    kind: str,
    backup_dir: Optional[Path] = None,
    backup_retention: int = DEFAULT_BACKUP_RETENTION,
) -> SyncModule:
    """Return the sync module for an asset kind (``file``, ``directory`` or ``glob``)."""
    if kind == "directory":
        return DirectorySyncModule(backup_dir, backup_retention)
    if kind == "glob":
        return GlobSyncModule(backup_dir, backup_retention)
    if kind == "file":
        return FileSyncModule(backup_dir, backup_retention)
    raise ValueError(f"Unknown asset kind: {kind!r}")


__all__ = [
    "ApplyResult",
    "CheckResult",
    "Direction",
    "DirectorySyncModule",
    "FileSyncModule",
    "GlobSyncModule",
    "ModuleStatus",
    "SyncModule",
    "SyncRequest",
    "glob_base_dir",
    "glob_matches",
    "is_binary",
    "is_glob",
    "module_for",
    "unified_diff",
]
