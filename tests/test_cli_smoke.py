"""Smoke tests for the `promo_engine` CLI.

These tests use `sys.executable -m promo_engine` so they exercise the real
module entry point. To allow running without installing the package, the
`PYTHONPATH` used for the subprocess includes the repository's `src/` dir.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

import conftest
from promo_engine import cli
from promo_engine import fetch as fetch_mod
from promo_engine.analysis import Analysis
from promo_engine.jobs import JobStore


def _run_module(args: list[str]) -> subprocess.CompletedProcess:
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"

    env = os.environ.copy()
    prev = env.get("PYTHONPATH", "")
    env["PYTHONPATH"] = str(src_dir) + os.pathsep + prev

    cmd = [sys.executable, "-m", "promo_engine"] + args
    return subprocess.run(cmd, capture_output=True, text=True, timeout=10, env=env)


def _job(workdir: Path, with_analysis: bool = True, crowd: bool = True) -> str:
    uploads = workdir.parent / "uploads"
    uploads.mkdir(parents=True, exist_ok=True)
    clips = {}
    for role in ("artist", "guitar", "crowd") if crowd else ("artist", "guitar"):
        p = uploads / f"{role}.mp4"
        p.write_bytes(b"video")
        clips[role] = p
    store = JobStore(workdir, prober=conftest.fake_prober({}))
    job = store.create(clips, artist_name="Jane Doe")
    if with_analysis:
        job.analysis = Analysis.from_dict(conftest.analysis_payload())
        store.save(job)
    return job.job_id


def test_help_shows_usage() -> None:
    proc = _run_module(["--help"])
    assert proc.returncode == 0, f"Help exited non-zero. stderr={proc.stderr!r}"
    assert "Vertical music-video promo renderer" in proc.stdout


def test_no_command_is_an_error() -> None:
    proc = _run_module([])
    assert proc.returncode != 0
    assert "a command is required" in proc.stderr


def test_cli_entrypoint_accepts_help() -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["--help"])
    assert exc.value.code == 0


def test_print_config_applies_preset_and_flags(capsys: pytest.CaptureFixture[str]) -> None:
    rc = cli.main(["--preset", "preview", "--crf", "26", "--print-config"])
    assert rc == 0
    cfg = json.loads(capsys.readouterr().out)
    assert cfg["resolution"] == "540x960"
    assert cfg["crf"] == 26
    assert cfg["encoder_preset"] == "ultrafast"


def test_dry_run_prints_timeline(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    workdir = tmp_path / "jobs"
    job_id = _job(workdir)
    rc = cli.main(["--workdir", str(workdir), "render", job_id, "--dry-run"])
    assert rc == 0
    out = capsys.readouterr().out
    summary = json.loads(out[out.index("{"):])
    assert summary["labels"] == ["intro", "artist", "guitar", "crowd", "outro"]
    assert summary["total"] == pytest.approx(31.0)


def test_render_without_analysis_or_request_fails(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    workdir = tmp_path / "jobs"
    job_id = _job(workdir, with_analysis=False)
    rc = cli.main(["--workdir", str(workdir), "render", job_id])
    assert rc == cli.EXIT_ERROR
    assert "not been analysed" in capsys.readouterr().err


def test_fetch_crowd_not_found_exit_code(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.setattr(fetch_mod.StockFootageClient, "fetch", lambda self, query, output_dir: None)
    workdir = tmp_path / "jobs"
    job_id = _job(workdir, crowd=False)
    rc = cli.main(["--workdir", str(workdir), "fetch-crowd", job_id, "--query", "nothing here"])
    assert rc == cli.EXIT_NOT_FOUND


def test_unknown_job(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    rc = cli.main(["--workdir", str(tmp_path / "jobs"), "show", "0123456789abcdef"])
    assert rc == cli.EXIT_ERROR
