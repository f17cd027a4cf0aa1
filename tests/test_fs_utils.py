"""Tests for atomic writes and the cross-process file lock."""

from __future__ import annotations

import os
import threading
import time
from pathlib import Path

import pytest

from blackbook import fs_utils
from blackbook.errors import LockTimeout, WriteFailure


def test_atomic_write_creates_parents_and_replaces(tmp_path: Path):
    target = tmp_path / "nested" / "config.yaml"

    fs_utils.atomic_write(target, "first")
    assert target.read_text(encoding="utf-8") == "first"

    fs_utils.atomic_write(target, b"second")
    assert target.read_bytes() == b"second"
    assert [p.name for p in target.parent.iterdir()] == ["config.yaml"]


def test_write_without_rename_leaves_destination_untouched(tmp_path: Path):
    target = tmp_path / "manifest.json"
    target.write_text("original", encoding="utf-8")

    # Simulates a crash after the temp file is written but before the rename.
    temp_path = fs_utils._write_temp(target, b"replacement")

    assert target.read_text(encoding="utf-8") == "original"
    assert temp_path.parent == target.parent
    assert temp_path.read_bytes() == b"replacement"


def test_failed_rename_raises_and_cleans_temp(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    target = tmp_path / "config.yaml"
    target.write_text("original", encoding="utf-8")

    def fail_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(fs_utils.os, "replace", fail_replace)

    with pytest.raises(WriteFailure) as excinfo:
        fs_utils.atomic_write(target, "new")

    assert excinfo.value.path == target
    assert target.read_text(encoding="utf-8") == "original"
    assert [p.name for p in tmp_path.iterdir()] == ["config.yaml"]


def test_lock_marker_exists_only_while_held(tmp_path: Path):
    target = tmp_path / "manifest.json"
    marker = fs_utils.lock_path_for(target)

    with fs_utils.file_lock(target) as held:
        assert held == marker
        assert marker.exists()
        assert marker.read_text(encoding="ascii") == str(os.getpid())

    assert not marker.exists()


def test_lock_released_when_body_raises(tmp_path: Path):
    target = tmp_path / "manifest.json"

    def boom():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        fs_utils.with_file_lock(target, boom)

    assert not fs_utils.lock_path_for(target).exists()


def test_with_file_lock_returns_value(tmp_path: Path):
    assert fs_utils.with_file_lock(tmp_path / "x", lambda: 42) == 42


def test_concurrent_holders_never_overlap(tmp_path: Path):
    target = tmp_path / "shared.json"
    state = {"active": 0, "max_active": 0, "runs": 0}
    guard = threading.Lock()
    errors = []

    def critical() -> None:
        with guard:
            state["active"] += 1
            state["max_active"] = max(state["max_active"], state["active"])
        time.sleep(0.03)
        with guard:
            state["active"] -= 1
            state["runs"] += 1

    def worker() -> None:
        try:
            fs_utils.with_file_lock(target, critical)
        except LockTimeout as exc:  # pragma: no cover - would fail the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert state["runs"] == 2
    assert state["max_active"] == 1


def test_lock_times_out_on_live_marker(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(fs_utils, "LOCK_RETRY_DELAY", 0.001)
    target = tmp_path / "config.yaml"
    marker = fs_utils.lock_path_for(target)
    marker.write_text("99999", encoding="ascii")

    with pytest.raises(LockTimeout) as excinfo:
        fs_utils.with_file_lock(target, lambda: None)

    assert str(target) in str(excinfo.value)
    assert marker.exists()


def test_stale_marker_is_reclaimed(tmp_path: Path):
    target = tmp_path / "config.yaml"
    marker = fs_utils.lock_path_for(target)
    marker.write_text("12345", encoding="ascii")
    old = time.time() - fs_utils.LOCK_STALE_SECONDS - 5
    os.utime(marker, (old, old))

    started = time.monotonic()
    assert fs_utils.with_file_lock(target, lambda: "ran") == "ran"

    assert time.monotonic() - started < 1.0
    assert not marker.exists()


def test_reclaim_leaves_a_marker_that_changed_hands(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    marker = fs_utils.lock_path_for(tmp_path / "config.yaml")
    marker.write_text("12345", encoding="ascii")
    old = time.time() - fs_utils.LOCK_STALE_SECONDS - 5
    os.utime(marker, (old, old))

    def replaced_by_new_holder(path: Path) -> str:
        # Another process reclaims the stale marker and takes the lock.
        path.unlink()
        path.write_text("67890", encoding="ascii")
        return "12345"

    monkeypatch.setattr(fs_utils, "_read_holder", replaced_by_new_holder)

    assert fs_utils._reclaim_if_stale(marker) is True
    assert marker.read_text(encoding="ascii") == "67890"
