"""Install manifest: what has been synced where, with baseline fingerprints."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from ..errors import ManifestCorrupted
from ..fs_utils import atomic_write, file_lock

logger = logging.getLogger("blackbook.sync.manifest")

MANIFEST_FILENAME = "installed_items.json"


@dataclass
class InstalledItem:
    """Record of one item as of its last successful sync."""

    kind: str  # "file" or "directory"
    name: str
    source: str  # Resolved source path
    dest: str  # Resolved target path
    source_hash: str
    target_hash: str
    owner: str = ""
    synced_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    backup: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "source": self.source,
            "dest": self.dest,
            "source_hash": self.source_hash,
            "target_hash": self.target_hash,
            "owner": self.owner,
            "synced_at": self.synced_at,
            "backup": self.backup,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstalledItem":
        return cls(
            kind=data["kind"],
            name=data["name"],
            source=data["source"],
            dest=data["dest"],
            source_hash=data.get("source_hash", ""),
            target_hash=data.get("target_hash", ""),
            owner=data.get("owner", ""),
            synced_at=data.get("synced_at", ""),
            backup=data.get("backup"),
        )


@dataclass
class Manifest:
    """All installed items, keyed by tool instance and item id."""

    tools: Dict[str, Dict[str, InstalledItem]] = field(default_factory=dict)

    def get_item(self, tool_key: str, item_id: str) -> Optional[InstalledItem]:
        return self.tools.get(tool_key, {}).get(item_id)

    def record_item(self, tool_key: str, item_id: str, item: InstalledItem) -> None:
        self.tools.setdefault(tool_key, {})[item_id] = item

    def remove_item(self, tool_key: str, item_id: str) -> Optional[InstalledItem]:
        items = self.tools.get(tool_key)
        if not items:
            return None
        removed = items.pop(item_id, None)
        if not items:
            del self.tools[tool_key]
        return removed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tools": {
                tool_key: {"items": {item_id: item.to_dict() for item_id, item in items.items()}}
                for tool_key, items in self.tools.items()
            }
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Manifest":
        manifest = cls()
        for tool_key, tool_data in data.get("tools", {}).items():
            for item_id, item_data in tool_data.get("items", {}).items():
                manifest.record_item(tool_key, item_id, InstalledItem.from_dict(item_data))
        return manifest


def item_id_for(asset_name: str) -> str:
    return f"file:{asset_name}"


def manifest_path(cache_dir: Path) -> Path:
    return Path(cache_dir) / MANIFEST_FILENAME


def load_manifest(cache_dir: Path) -> Manifest:
    """Load the manifest, or an empty one when nothing has been installed yet.

    A file that exists but cannot be parsed raises :class:`ManifestCorrupted`;
    it is never treated as an empty manifest.
    """
    path = manifest_path(cache_dir)
    if not path.exists():
        return Manifest()

    with file_lock(path):
        raw = path.read_bytes()

    try:
        data = json.loads(raw.decode("utf-8"))
    except ValueError as exc:
        # Covers both undecodable bytes and invalid JSON.
        logger.error("Failed to parse manifest %s: %s", path, exc)
        raise ManifestCorrupted(path, str(exc)) from exc

    if not isinstance(data, dict) or not isinstance(data.get("tools", {}), dict):
        raise ManifestCorrupted(path, "expected an object with a 'tools' mapping")

    try:
        manifest = Manifest.from_dict(data)
    except (KeyError, TypeError, AttributeError) as exc:
        logger.error("Malformed manifest entry in %s: %s", path, exc)
        raise ManifestCorrupted(path, f"malformed entry: {exc}") from exc

    logger.debug("Loaded manifest from %s (%d tools)", path, len(manifest.tools))
    return manifest


def save_manifest(manifest: Manifest, cache_dir: Path) -> Path:
    """Atomically write the manifest under its file lock."""
    path = manifest_path(cache_dir)
    content = json.dumps(manifest.to_dict(), indent=2, sort_keys=True) + "\n"
    with file_lock(path):
        atomic_write(path, content)
    logger.debug("Saved manifest to %s", path)
    return path


__all__ = [
    "InstalledItem",
    "MANIFEST_FILENAME",
    "Manifest",
    "item_id_for",
    "load_manifest",
    "manifest_path",
    "save_manifest",
]
