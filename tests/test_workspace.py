import os
import shutil

import pytest

from deobf_service.workspace import Workspace, sanitize_filename, sweep_stale


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("script.lua", "script.lua"),
        ("../../etc/passwd", "passwd"),
        ("C:\\Users\\me\\bad name!.lua", "bad_name_.lua"),
        ("$(reboot).txt", "__reboot_.txt"),
        ("..", "upload"),
        ("", "upload"),
    ],
)
def test_sanitize_filename(raw, expected) -> None:
    assert sanitize_filename(raw) == expected


def test_workspace_paths_are_namespaced(tmp_path) -> None:
    ws = Workspace.create(tmp_path, "req1", "a b.lua")
    assert ws.path == tmp_path / "req1"
    assert ws.input_path == tmp_path / "req1" / "input_a_b.lua"
    assert ws.output_path == tmp_path / "req1" / "output.lua"
    assert ws.path.is_dir()


def test_cleanup_removes_everything(tmp_path) -> None:
    ws = Workspace.create(tmp_path, "req1", "a.lua")
    ws.input_path.write_bytes(b"in")
    ws.output_path.write_bytes(b"out")
    ws.cleanup()
    assert not ws.path.exists()
    ws.cleanup()


def test_cleanup_failure_is_logged_not_raised(tmp_path, monkeypatch, caplog) -> None:
    ws = Workspace.create(tmp_path, "req1", "a.lua")

    def boom(path):
        raise PermissionError("busy")

    monkeypatch.setattr(shutil, "rmtree", boom)
    ws.cleanup()
    assert "Failed to clean up" in caplog.text


def test_sweep_stale_only_removes_old_entries(tmp_path) -> None:
    old = Workspace.create(tmp_path, "old", "a.lua")
    old.input_path.write_bytes(b"x")
    fresh = Workspace.create(tmp_path, "fresh", "a.lua")
    os.utime(old.path, (1_000, 1_000))

    removed = sweep_stale(tmp_path, max_age_sec=3600, now=1_000 + 7200)

    assert removed == 1
    assert not old.path.exists()
    assert fresh.path.exists()


def test_sweep_missing_root(tmp_path) -> None:
    assert sweep_stale(tmp_path / "missing", max_age_sec=1) == 0
