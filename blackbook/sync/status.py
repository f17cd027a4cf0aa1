"""Status and drift classification across assets and tool instances."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..configuration import AssetSpec, ToolInstance
from ..paths import is_url, resolve_source_path, resolve_target_path
from .manifest import InstalledItem, Manifest, item_id_for
from .modules import ModuleStatus, SyncRequest, is_glob, module_for

logger = logging.getLogger("blackbook.sync.status")


class DriftKind(str, Enum):
    """Which side moved away from the last synced baseline."""
    SOURCE_CHANGED = "source-changed"
    TARGET_CHANGED = "target-changed"
    BOTH_CHANGED = "both-changed"


DRIFT_MESSAGES = {
    DriftKind.SOURCE_CHANGED: "Source changed",
    DriftKind.TARGET_CHANGED: "Target changed (pullback available)",
    DriftKind.BOTH_CHANGED: "Both source and target changed (conflict)",
}


@dataclass
class FileInstanceStatus:
    """Classification of one asset in one tool instance."""

    instance_name: str
    tool_id: str
    instance_id: str
    source_path: str
    target_path: str
    kind: str
    status: ModuleStatus
    message: str
    drift_kind: Optional[DriftKind] = None
    diff: Optional[str] = None

    def __post_init__(self) -> None:
        if self.drift_kind is not None and self.status is not ModuleStatus.DRIFTED:
            raise ValueError("drift_kind is only valid for drifted statuses")

    @property
    def instance_key(self) -> str:
        return f"{self.tool_id}:{self.instance_id}"

    @property
    def conflicted(self) -> bool:
        return self.drift_kind is DriftKind.BOTH_CHANGED

    def request(self) -> SyncRequest:
        return SyncRequest(Path(self.source_path), Path(self.target_path), owner=self.instance_key)


@dataclass
class FileStatus:
    """Asset-level view aggregated over every instance it targets."""

    name: str
    source: str
    target: str
    tools: List[str] = field(default_factory=list)
    instances: List[FileInstanceStatus] = field(default_factory=list)

    @property
    def installed(self) -> bool:
        return any(inst.status is not ModuleStatus.MISSING for inst in self.instances)

    @property
    def incomplete(self) -> bool:
        return self.installed and any(inst.status is ModuleStatus.MISSING for inst in self.instances)

    @property
    def drifted(self) -> bool:
        return any(inst.status is ModuleStatus.DRIFTED for inst in self.instances)

    @property
    def conflicted(self) -> bool:
        return any(inst.conflicted for inst in self.instances)

    @property
    def failed(self) -> bool:
        return any(inst.status is ModuleStatus.FAILED for inst in self.instances)


def resolve_kind(asset: AssetSpec, source_path: str) -> str:
    """Declared kind, else ``glob`` for patterns, ``directory`` for existing dirs or a trailing slash."""
    if asset.kind:
        return asset.kind
    if not is_url(asset.source) and is_glob(asset.source):
        return "glob"
    if asset.source.endswith("/") or Path(source_path).is_dir():
        return "directory"
    return "file"


def resolve_pair(
    asset: AssetSpec,
    instance: ToolInstance,
    source_repo: Optional[str] = None,
) -> Tuple[str, str]:
    """Concrete (source, target) paths for ``asset`` in ``instance``."""
    source = resolve_source_path(asset.source, source_repo)
    if not is_url(source):
        source = source.rstrip("/") or source
    target = resolve_target_path(asset.target_for(instance), instance.config_dir)
    return source, target.rstrip("/") or target


def drift_kind_for(baseline: InstalledItem, source_hash: str, target_hash: str) -> Optional[DriftKind]:
    source_changed = source_hash != baseline.source_hash
    target_changed = target_hash != baseline.target_hash
    if source_changed and target_changed:
        return DriftKind.BOTH_CHANGED
    if source_changed:
        return DriftKind.SOURCE_CHANGED
    if target_changed:
        return DriftKind.TARGET_CHANGED
    return None


def baseline_for(
    manifest: Manifest,
    asset: AssetSpec,
    instance: ToolInstance,
    source_path: str,
    target_path: str,
) -> Optional[InstalledItem]:
    """Manifest baseline for this pair, if it was recorded for the same paths."""
    item = manifest.get_item(instance.key, item_id_for(asset.name))
    if item is None or item.source != source_path or item.dest != target_path:
        return None
    return item


def classify_instance(
    asset: AssetSpec,
    instance: ToolInstance,
    manifest: Manifest,
    source_repo: Optional[str] = None,
) -> FileInstanceStatus:
    """Run the module check for one pair and refine drift against the baseline."""
    source_path, target_path = resolve_pair(asset, instance, source_repo)
    kind = resolve_kind(asset, source_path)

    def _status(status: ModuleStatus, message: str, **extra) -> FileInstanceStatus:
        return FileInstanceStatus(
            instance_name=instance.name,
            tool_id=instance.tool_id,
            instance_id=instance.instance_id,
            source_path=source_path,
            target_path=target_path,
            kind=kind,
            status=status,
            message=message,
            **extra,
        )

    if is_url(source_path):
        return _status(ModuleStatus.FAILED, f"Remote source must be fetched before syncing: {source_path}")

    request = SyncRequest(Path(source_path), Path(target_path), owner=instance.key)
    module = module_for(kind)
    try:
        result = module.check(request)
    except OSError as exc:
        logger.warning("Check failed for %s in %s: %s", asset.name, instance.key, exc)
        return _status(ModuleStatus.FAILED, f"Could not compare files: {exc}")

    if result.status is not ModuleStatus.DRIFTED:
        return _status(result.status, result.message, diff=result.diff)

    baseline = baseline_for(manifest, asset, instance, source_path, target_path)
    if baseline is None:
        return _status(result.status, result.message, diff=result.diff)

    try:
        drift_kind = drift_kind_for(baseline, *module.fingerprints(request))
    except OSError as exc:
        logger.warning("Fingerprinting failed for %s in %s: %s", asset.name, instance.key, exc)
        return _status(ModuleStatus.FAILED, f"Could not fingerprint files: {exc}")

    if drift_kind is None:
        return _status(result.status, result.message, diff=result.diff)
    return _status(result.status, DRIFT_MESSAGES[drift_kind], drift_kind=drift_kind, diff=result.diff)


def instances_for(asset: AssetSpec, instances: Iterable[ToolInstance]) -> List[ToolInstance]:
    return [inst for inst in instances if inst.enabled and asset.applies_to(inst)]


def _aggregate(asset: AssetSpec, source_repo: Optional[str], results: List[FileInstanceStatus]) -> FileStatus:
    source = resolve_source_path(asset.source, source_repo)
    return FileStatus(
        name=asset.name,
        source=source,
        target=asset.target,
        tools=sorted({inst.tool_id for inst in results}),
        instances=results,
    )


def classify_asset(
    asset: AssetSpec,
    instances: Sequence[ToolInstance],
    manifest: Manifest,
    source_repo: Optional[str] = None,
) -> FileStatus:
    """Classify ``asset`` in every enabled instance it applies to."""
    results = [
        classify_instance(asset, instance, manifest, source_repo)
        for instance in instances_for(asset, instances)
    ]
    return _aggregate(asset, source_repo, results)


def classify_assets(
    assets: Sequence[AssetSpec],
    instances: Sequence[ToolInstance],
    manifest: Manifest,
    source_repo: Optional[str] = None,
    max_workers: Optional[int] = None,
) -> List[FileStatus]:
    """Classify many assets; pairs are checked on a thread pool when ``max_workers`` > 1.

    Checks never write, so they can run concurrently against the same
    manifest snapshot. Results keep asset and instance order.
    """
    pairs = [(asset, inst) for asset in assets for inst in instances_for(asset, instances)]

    if max_workers and max_workers > 1 and len(pairs) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            results = list(
                executor.map(lambda pair: classify_instance(pair[0], pair[1], manifest, source_repo), pairs)
            )
    else:
        results = [classify_instance(asset, inst, manifest, source_repo) for asset, inst in pairs]

    grouped: Dict[str, List[FileInstanceStatus]] = {asset.name: [] for asset in assets}
    for (asset, _inst), result in zip(pairs, results):
        grouped[asset.name].append(result)

    return [_aggregate(asset, source_repo, grouped[asset.name]) for asset in assets]


def summarize(statuses: Iterable[FileStatus]) -> Dict[str, int]:
    """Count instance statuses (plus conflicts) across a classification pass."""
    summary = {status.value: 0 for status in ModuleStatus}
    summary["conflicts"] = 0
    for file_status in statuses:
        for inst in file_status.instances:
            summary[inst.status.value] += 1
            if inst.conflicted:
                summary["conflicts"] += 1
    return summary


__all__ = [
    "DriftKind",
    "FileInstanceStatus",
    "FileStatus",
    "baseline_for",
    "classify_asset",
    "classify_assets",
    "classify_instance",
    "drift_kind_for",
    "instances_for",
    "resolve_kind",
    "resolve_pair",
    "summarize",
]
