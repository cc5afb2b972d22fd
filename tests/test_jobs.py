"""Tests for job records and the job store."""

from __future__ import annotations

from pathlib import Path

import pytest

import conftest
from promo_engine.analysis import Analysis
from promo_engine.errors import JobNotFound, ValidationError
from promo_engine.jobs import JobStore


def _clip(tmp_path: Path, name: str) -> Path:
    p = tmp_path / "uploads" / name
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(b"video")
    return p


def test_create_copies_clips_and_persists(tmp_path: Path):
    store = JobStore(tmp_path / "jobs", prober=conftest.fake_prober({}))
    job = store.create(
        {"artist": _clip(tmp_path, "a.mov"), "guitar": _clip(tmp_path, "g.mp4")}, artist_name="Jane Doe"
    )
    assert (job.work_dir / "artist.mov").exists()
    assert (job.work_dir / "guitar.mp4").exists()
    loaded = store.load(job.job_id)
    assert loaded.clips == job.clips
    assert loaded.clip_info["artist"].has_audio
    assert loaded.missing_clips() == ["crowd"]
    assert loaded.download_name() == "Jane_Doe_music_video.mp4"


def test_silent_artist_clip_rejected_before_any_work(tmp_path: Path):
    store = JobStore(tmp_path / "jobs", prober=conftest.fake_prober({"a": conftest.media_info(has_audio=False)}))
    with pytest.raises(ValidationError, match="audio"):
        store.create({"artist": _clip(tmp_path, "a.mp4")})
    assert not any((tmp_path / "jobs").glob("*/job.json"))


def test_unsupported_extension_and_role(tmp_path: Path):
    store = JobStore(tmp_path / "jobs", prober=conftest.fake_prober({}))
    job = store.create()
    with pytest.raises(ValidationError):
        store.attach_clip(job, "guitar", _clip(tmp_path, "g.webm"))
    with pytest.raises(ValidationError):
        store.attach_clip(job, "drums", _clip(tmp_path, "d.mp4"))


def test_custom_crowd_replaces_stock(tmp_path: Path):
    store = JobStore(tmp_path / "jobs", prober=conftest.fake_prober({}))
    job = store.create()
    job.stock = {"query": "crowd"}
    store.attach_clip(job, "crowd", _clip(tmp_path, "c.mp4"))
    assert job.custom_crowd is True
    assert job.stock is None


def test_ensure_renderable(tmp_path: Path):
    store = JobStore(tmp_path / "jobs", prober=conftest.fake_prober({}))
    job = store.create({"artist": _clip(tmp_path, "a.mp4"), "guitar": _clip(tmp_path, "g.mp4")})
    with pytest.raises(ValidationError, match="crowd"):
        job.ensure_renderable()
    store.attach_clip(job, "crowd", _clip(tmp_path, "c.mp4"))
    job.ensure_renderable()
    assert job.is_renderable


def test_analysis_survives_reload(tmp_path: Path):
    store = JobStore(tmp_path / "jobs", prober=conftest.fake_prober({}))
    job = store.create()
    job.analysis = Analysis.from_dict(conftest.analysis_payload())
    store.save(job)
    loaded = store.load(job.job_id)
    assert loaded.analysis.segments[1].caption == "1959 Les Paul"
    assert loaded.analysis.outro_lines[0] == "SHOP NOW"


def test_unknown_and_unsafe_ids(tmp_path: Path):
    store = JobStore(tmp_path / "jobs")
    with pytest.raises(JobNotFound):
        store.load("deadbeef")
    with pytest.raises(JobNotFound):
        store.load("../etc")
