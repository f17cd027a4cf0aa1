"""Content fingerprints for files and directory trees."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Iterable, List, Union

PathLike = Union[str, Path]
CHUNK_SIZE = 8192


def compute_file_hash(file_path: PathLike) -> str:
    """Compute SHA-256 hash of a file."""
    hasher = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def list_files(root: PathLike) -> List[str]:
    """Sorted POSIX-style paths of every regular file under ``root``."""
    root = Path(root)
    results: List[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in filenames:
            full = Path(dirpath) / name
            if full.is_file():
                results.append(full.relative_to(root).as_posix())
    results.sort()
    return results


def compute_directory_hash(root: PathLike) -> str:
    """Hash a directory tree from its relative file names and file hashes."""
    root = Path(root)
    hasher = hashlib.sha256()
    for rel_path in list_files(root):
        hasher.update(rel_path.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(compute_file_hash(root / rel_path).encode("ascii"))
        hasher.update(b"\0")
    return hasher.hexdigest()


def compute_files_hash(paths: Iterable[PathLike]) -> str:
    """Hash a loose set of files by base name and content, in name order."""
    hasher = hashlib.sha256()
    for path in sorted((Path(p) for p in paths), key=lambda p: p.name):
        hasher.update(path.name.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(compute_file_hash(path).encode("ascii"))
        hasher.update(b"\0")
    return hasher.hexdigest()


def hash_path(path: PathLike) -> str:
    """Fingerprint a file or directory; directories hash their whole tree."""
    path = Path(path)
    if path.is_dir():
        return compute_directory_hash(path)
    return compute_file_hash(path)


__all__ = ["compute_directory_hash", "compute_file_hash", "compute_files_hash", "hash_path", "list_files"]
