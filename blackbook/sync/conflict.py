"""Applying synced assets and resolving conflicts between source and target."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from ..configuration import AssetSpec, Settings
from .backup import backup_root
from .manifest import InstalledItem, Manifest, item_id_for, save_manifest
from .modules import ApplyResult, Direction, ModuleStatus, SyncModule, SyncRequest, module_for
from .status import DriftKind, FileInstanceStatus, FileStatus

logger = logging.getLogger("blackbook.sync.conflict")


class ConflictAction(str, Enum):
    """The only legal answers to a both-changed conflict."""
    FORCE_FORWARD = "force-forward"
    FORCE_PULLBACK = "force-pullback"
    SKIP = "skip"


class ConflictState(str, Enum):
    PRESENTED = "presented"
    RESOLVED = "resolved"


class DriftPolicy(str, Enum):
    """Whether one-sided drift may be applied without asking."""
    PROMPT = "prompt"
    AUTO_FORWARD = "auto-forward"


@dataclass
class Conflict:
    """A both-changed pair waiting for a user decision."""

    file_name: str
    instance: str
    diff: Optional[str]
    status: FileInstanceStatus
    state: ConflictState = ConflictState.PRESENTED


@dataclass
class ConflictResolution:
    """Result of resolving one conflict."""

    conflict: Conflict
    action: ConflictAction
    changed: bool = False
    backup_path: Optional[Path] = None
    message: str = ""


@dataclass
class Orphan:
    """A manifest item whose asset is no longer declared."""

    tool_key: str
    item_id: str
    item: InstalledItem


class ConflictResolver:
    """Applies assets per instance and keeps manifest baselines current.

    The manifest is loaded by the caller and passed in; every change is
    saved straight away through the locked atomic writer.
    """

    def __init__(
        self,
        manifest: Manifest,
        cache_dir: Path,
        settings: Optional[Settings] = None,
    ):
        self.manifest = manifest
        self.cache_dir = Path(cache_dir)
        self.settings = settings or Settings()
        self.backup_dir = backup_root(self.cache_dir)

    @property
    def policy(self) -> DriftPolicy:
        return DriftPolicy(self.settings.drift_policy)

    def _module(self, kind: str) -> SyncModule:
        return module_for(kind, self.backup_dir, self.settings.backup_retention)

    def apply_instance(
        self,
        asset: AssetSpec,
        status: FileInstanceStatus,
        direction: Direction = Direction.FORWARD,
    ) -> ApplyResult:
        """Copy one pair in ``direction`` and record the new baseline.

        Raises ``SourceMissing`` when the side being copied from is absent,
        and ``LockTimeout``/``WriteFailure`` if the manifest cannot be saved.
        """
        result = self._module(status.kind).apply(status.request(), direction)
        self._record_baseline(asset, status, result)
        return result

    def _record_baseline(self, asset: AssetSpec, status: FileInstanceStatus, result: ApplyResult) -> None:
        item_id = item_id_for(asset.name)
        previous = self.manifest.get_item(status.instance_key, item_id)
        backup = str(result.backup) if result.backup else (previous.backup if previous else None)
        source_hash, target_hash = self._module(status.kind).fingerprints(status.request())
        self.manifest.record_item(
            status.instance_key,
            item_id,
            InstalledItem(
                kind=status.kind,
                name=asset.name,
                source=status.source_path,
                dest=status.target_path,
                source_hash=source_hash,
                target_hash=target_hash,
                owner=status.instance_key,
                backup=backup,
            ),
        )
        save_manifest(self.manifest, self.cache_dir)

    def pending_conflicts(self, statuses: Iterable[FileStatus]) -> List[Conflict]:
        """Every both-changed pair across ``statuses``."""
        conflicts: List[Conflict] = []
        for file_status in statuses:
            for inst in file_status.instances:
                if inst.conflicted:
                    conflicts.append(
                        Conflict(
                            file_name=file_status.name,
                            instance=inst.instance_name,
                            diff=inst.diff,
                            status=inst,
                        )
                    )
        return conflicts

    def resolve(self, asset: AssetSpec, conflict: Conflict, action: ConflictAction) -> ConflictResolution:
        """Carry out the user's decision for one conflict."""
        action = ConflictAction(action)
        status = conflict.status

        if action is ConflictAction.SKIP:
            conflict.state = ConflictState.RESOLVED
            logger.info("Skipped conflict for %s in %s", asset.name, status.instance_key)
            return ConflictResolution(
                conflict=conflict,
                action=action,
                message="Skipped; conflict will be reported again",
            )

        direction = Direction.FORWARD if action is ConflictAction.FORCE_FORWARD else Direction.PULLBACK
        result = self.apply_instance(asset, status, direction)
        conflict.state = ConflictState.RESOLVED
        logger.info("Resolved conflict for %s in %s with %s", asset.name, status.instance_key, action.value)
        return ConflictResolution(
            conflict=conflict,
            action=action,
            changed=result.changed,
            backup_path=result.backup,
            message=result.message,
        )

    def auto_resolve(self, asset: AssetSpec, status: FileInstanceStatus) -> Optional[ApplyResult]:
        """Apply one-sided drift when the configured policy allows it.

        Only source-changed drift and missing targets are applied, always
        forward. Target-changed drift and conflicts are left for the caller.
        """
        if self.policy is DriftPolicy.PROMPT:
            return None
        if status.status is ModuleStatus.MISSING or status.drift_kind is DriftKind.SOURCE_CHANGED:
            return self.apply_instance(asset, status, Direction.FORWARD)
        return None

    def apply_asset(
        self,
        asset: AssetSpec,
        file_status: FileStatus,
        direction: Direction = Direction.FORWARD,
    ) -> List[ApplyResult]:
        """Apply every missing or drifted instance of an asset.

        Conflicted instances are skipped; they only move through
        :meth:`resolve`.
        """
        results: List[ApplyResult] = []
        for inst in file_status.instances:
            if inst.status not in (ModuleStatus.MISSING, ModuleStatus.DRIFTED):
                continue
            if inst.conflicted:
                logger.warning("Not applying %s in %s: unresolved conflict", asset.name, inst.instance_key)
                continue
            if direction is Direction.PULLBACK and inst.status is ModuleStatus.MISSING:
                continue
            results.append(self.apply_instance(asset, inst, direction))
        return results

    def uninstall(self, asset: AssetSpec, status: FileInstanceStatus) -> bool:
        """Remove the synced target and forget its baseline."""
        removed = self._module(status.kind).remove(status.request()).changed

        if self.manifest.remove_item(status.instance_key, item_id_for(asset.name)) is not None:
            save_manifest(self.manifest, self.cache_dir)
            removed = True
        return removed

    def cleanup_orphans(self, orphans: Sequence[Orphan]) -> List[ApplyResult]:
        """Remove the targets of orphaned items (with a backup) and drop them from the manifest.

        A failure on one orphan is reported in its result and does not stop
        the others; the manifest is saved once at the end.
        """
        results: List[ApplyResult] = []
        for orphan in orphans:
            item = orphan.item
            request = SyncRequest(Path(item.source), Path(item.dest), owner=orphan.tool_key)
            try:
                result = self._module(item.kind).remove(request)
            except OSError as exc:
                logger.error("Failed to clean up %s: %s", item.dest, exc)
                results.append(ApplyResult(False, f"Failed to clean up {item.dest}: {exc}"))
                continue
            self.manifest.remove_item(orphan.tool_key, orphan.item_id)
            logger.info("Cleaned up orphaned %s in %s", item.name, orphan.tool_key)
            results.append(result)

        if orphans:
            save_manifest(self.manifest, self.cache_dir)
        return results


def find_orphans(manifest: Manifest, assets: Iterable[AssetSpec]) -> List[Orphan]:
    """Manifest items whose asset is no longer declared in configuration."""
    declared = {item_id_for(asset.name) for asset in assets}
    return [
        Orphan(tool_key=tool_key, item_id=item_id, item=item)
        for tool_key, items in sorted(manifest.tools.items())
        for item_id, item in sorted(items.items())
        if item_id not in declared
    ]


__all__ = [
    "Conflict",
    "ConflictAction",
    "ConflictResolution",
    "ConflictResolver",
    "ConflictState",
    "DriftPolicy",
    "Orphan",
    "find_orphans",
]
