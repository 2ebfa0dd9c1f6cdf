"""Run folders for generation runs: one directory per run plus a latest pointer."""

from __future__ import annotations

import json
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict


@dataclass
class RunPaths:
    run_id: str
    run_dir: Path
    input_scene_path: Path
    scene_path: Path
    report_path: Path
    summary_path: Path


def slugify(value: str) -> str:
    value = value.strip().lower()
    value = re.sub(r"[^a-z0-9]+", "-", value)
    value = re.sub(r"-+", "-", value)
    return value.strip("-") or "run"


def create_run_id(design_name: str) -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
    return f"{stamp}_{slugify(design_name)}"


def prepare_run_dir(runs_root: str, design_name: str) -> RunPaths:
    runs_path = Path(runs_root)
    runs_path.mkdir(parents=True, exist_ok=True)

    run_id = create_run_id(design_name)
    run_dir = runs_path / run_id
    run_dir.mkdir(parents=True, exist_ok=True)

    return RunPaths(
        run_id=run_id,
        run_dir=run_dir,
        input_scene_path=run_dir / "input_scene.json",
        scene_path=run_dir / "scene.json",
        report_path=run_dir / "report.json",
        summary_path=run_dir / "summary.md",
    )


def write_json(path: Path, payload: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)


def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        f.write(content)


def render_summary(design_name: str, report: Dict[str, Any]) -> str:
    lines = [
        f"# Generation run: {design_name}",
        "",
        f"- Applied: {report['applied']} of {report['requested']}",
        f"- Completed: {'yes' if report['completed'] else 'no'} ({report['stop_reason']})",
        f"- Elapsed: {report['elapsed_seconds']:.2f}s",
        f"- Solution shapes: {report['solution_size']}",
    ]
    if report.get("applied_rules"):
        counts: Dict[str, int] = {}
        for rule_id in report["applied_rules"]:
            counts[rule_id] = counts.get(rule_id, 0) + 1
        lines.append("")
        lines.append("| Rule | Applications |")
        lines.append("|---|---|")
        for rule_id, count in sorted(counts.items()):
            lines.append(f"| {rule_id} | {count} |")
    return "\n".join(lines) + "\n"


def update_latest_pointer(runs_root: str, run_dir: Path) -> Path:
    """Point ``<runs_root>/latest`` at ``run_dir`` and return the pointer path."""
    runs_path = Path(runs_root)
    latest = runs_path / "latest"

    if latest.is_symlink() or latest.is_file():
        latest.unlink()
    elif latest.exists():
        shutil.rmtree(latest)

    try:
        latest.symlink_to(os.path.relpath(run_dir, runs_path))
    except OSError:
        # No symlinks here; leave a directory naming the run instead
        write_text(latest / "latest_run.txt", run_dir.name)
    return latest
