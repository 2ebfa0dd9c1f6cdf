"""Tests for run_protocol module."""
from pathlib import Path

from run_protocol import prepare_run_dir, render_summary, slugify, update_latest_pointer


def test_slugify():
    assert slugify("  Cli Design #2 ") == "cli-design-2"
    assert slugify("***") == "run"


def test_prepare_run_dir(tmp_path):
    paths = prepare_run_dir(str(tmp_path), "Tiles")
    assert paths.run_dir.is_dir()
    assert paths.run_id.endswith("_tiles")
    assert paths.scene_path == paths.run_dir / "scene.json"


def test_latest_pointer_is_replaced(tmp_path):
    first = prepare_run_dir(str(tmp_path), "a").run_dir
    second = prepare_run_dir(str(tmp_path), "b").run_dir
    update_latest_pointer(str(tmp_path), first)
    latest = update_latest_pointer(str(tmp_path), second)
    assert latest.resolve() == second.resolve()


def test_latest_pointer_without_symlinks(tmp_path, monkeypatch):
    run_dir = prepare_run_dir(str(tmp_path), "a").run_dir

    def refuse(self, target):
        raise OSError("symlinks unsupported")

    monkeypatch.setattr(Path, "symlink_to", refuse)
    latest = update_latest_pointer(str(tmp_path), run_dir)
    assert latest.is_dir()
    assert (latest / "latest_run.txt").read_text(encoding="utf-8") == run_dir.name

    # A stale pointer directory is cleared on the next run
    other = prepare_run_dir(str(tmp_path), "b").run_dir
    update_latest_pointer(str(tmp_path), other)
    assert (latest / "latest_run.txt").read_text(encoding="utf-8") == other.name


def test_render_summary_counts_rules():
    report = {
        "applied": 3, "requested": 4, "completed": False, "stop_reason": "timeout",
        "elapsed_seconds": 1.5, "solution_size": 5, "applied_rules": ["R1", "M", "R1"],
    }
    text = render_summary("demo", report)
    assert "- Applied: 3 of 4" in text
    assert "no (timeout)" in text
    assert "| M | 1 |" in text
    assert "| R1 | 2 |" in text
