"""Tests for the install manifest store."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from blackbook import fs_utils
from blackbook.errors import LockTimeout, ManifestCorrupted
from blackbook.sync.manifest import InstalledItem, Manifest, item_id_for, load_manifest, manifest_path, save_manifest


def _item(name: str = "AGENTS") -> InstalledItem:
    return InstalledItem(
        kind="file",
        name=name,
        source="/repo/AGENTS.md",
        dest="/home/me/.claude/AGENTS.md",
        source_hash="aa",
        target_hash="aa",
        owner="claude-code:default",
        synced_at="2026-01-01T00:00:00+00:00",
    )


def test_missing_manifest_loads_empty(tmp_path: Path):
    manifest = load_manifest(tmp_path / "cache")
    assert manifest.tools == {}
    assert not (tmp_path / "cache").exists()


def test_save_and_load_round_trip(tmp_path: Path):
    manifest = Manifest()
    manifest.record_item("claude-code:default", item_id_for("AGENTS"), _item())

    path = save_manifest(manifest, tmp_path)

    assert path == manifest_path(tmp_path)
    assert not path.with_name(path.name + ".lock").exists()
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["tools"]["claude-code:default"]["items"]["file:AGENTS"]["source_hash"] == "aa"

    loaded = load_manifest(tmp_path)
    assert loaded.get_item("claude-code:default", "file:AGENTS") == _item()


def test_saved_manifest_is_stable(tmp_path: Path):
    manifest = Manifest()
    manifest.record_item("b:default", "file:B", _item("B"))
    manifest.record_item("a:default", "file:A", _item("A"))

    first = save_manifest(manifest, tmp_path).read_text(encoding="utf-8")
    second = save_manifest(load_manifest(tmp_path), tmp_path).read_text(encoding="utf-8")

    assert first == second
    assert first.index('"a:default"') < first.index('"b:default"')


def test_remove_item_drops_empty_tool(tmp_path: Path):
    manifest = Manifest()
    manifest.record_item("claude-code:default", "file:AGENTS", _item())

    removed = manifest.remove_item("claude-code:default", "file:AGENTS")

    assert removed == _item()
    assert manifest.tools == {}
    assert manifest.remove_item("claude-code:default", "file:AGENTS") is None


def test_corrupted_manifest_raises(tmp_path: Path):
    path = manifest_path(tmp_path)
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(ManifestCorrupted) as excinfo:
        load_manifest(tmp_path)

    assert excinfo.value.path == path
    assert str(path) in str(excinfo.value)
    assert not path.with_name(path.name + ".lock").exists()


@pytest.mark.parametrize(
    "content",
    [
        "[]",
        '{"tools": []}',
        '{"tools": {"x": {"items": {"file:A": {"kind": "file"}}}}}',
    ],
)
def test_malformed_manifest_shapes_raise(tmp_path: Path, content: str):
    manifest_path(tmp_path).write_text(content, encoding="utf-8")

    with pytest.raises(ManifestCorrupted):
        load_manifest(tmp_path)


def test_invalid_utf8_manifest_raises(tmp_path: Path):
    path = manifest_path(tmp_path)
    path.write_bytes(b'{"tools": {"\xff\xfe": {}}}')

    with pytest.raises(ManifestCorrupted) as excinfo:
        load_manifest(tmp_path)

    assert excinfo.value.path == path


def test_load_manifest_waits_for_the_lock(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(fs_utils, "LOCK_RETRY_DELAY", 0.001)
    save_manifest(Manifest(), tmp_path)
    fs_utils.lock_path_for(manifest_path(tmp_path)).write_text("99999", encoding="ascii")

    with pytest.raises(LockTimeout):
        load_manifest(tmp_path)


def test_save_manifest_propagates_lock_timeout(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(fs_utils, "LOCK_RETRY_DELAY", 0.001)
    original = Manifest()
    original.record_item("claude-code:default", "file:AGENTS", _item())
    path = save_manifest(original, tmp_path)
    before = path.read_bytes()
    marker = fs_utils.lock_path_for(path)
    marker.write_text("99999", encoding="ascii")

    with pytest.raises(LockTimeout):
        save_manifest(Manifest(), tmp_path)

    assert path.read_bytes() == before
    assert marker.exists()
