"""Source-to-instance synchronization for Blackbook."""

from __future__ import annotations

from .conflict import (
    Conflict,
    ConflictAction,
    ConflictResolution,
    ConflictResolver,
    DriftPolicy,
    Orphan,
    find_orphans,
)
from .hashing import compute_file_hash, hash_path
from .manifest import InstalledItem, Manifest, load_manifest, manifest_path, save_manifest
from .modules import (
    ApplyResult,
    CheckResult,
    Direction,
    DirectorySyncModule,
    FileSyncModule,
    GlobSyncModule,
    ModuleStatus,
    SyncModule,
    SyncRequest,
    module_for,
)
from .status import DriftKind, FileInstanceStatus, FileStatus, classify_asset, classify_assets, summarize

__all__ = [
    # Manifest
    "InstalledItem",
    "Manifest",
    "load_manifest",
    "manifest_path",
    "save_manifest",
    # Hashing
    "compute_file_hash",
    "hash_path",
    # Modules
    "ApplyResult",
    "CheckResult",
    "Direction",
    "DirectorySyncModule",
    "FileSyncModule",
    "GlobSyncModule",
    "ModuleStatus",
    "SyncModule",
    "SyncRequest",
    "module_for",
    # Classification
    "DriftKind",
    "FileInstanceStatus",
    "FileStatus",
    "classify_asset",
    "classify_assets",
    "summarize",
    # Conflict
    "Conflict",
    "ConflictAction",
    "ConflictResolution",
    "ConflictResolver",
    "DriftPolicy",
    "Orphan",
    "find_orphans",
]
