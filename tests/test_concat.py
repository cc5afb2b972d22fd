"""Tests for crossfade concatenation arguments."""

from __future__ import annotations

from pathlib import Path

import pytest

import conftest
from promo_engine.concat import Concatenator, concat_args, xfade_chain, xfade_type
from promo_engine.timeline import TimelinePlan


def _plan() -> TimelinePlan:
    return TimelinePlan.build(["artist", "guitar", "crowd"], [10, 8, 9], 3.0, 4.0, 0.5, 1.0, ["wipeleft", "bogus"])


def test_unknown_transition_falls_back_to_fade():
    assert xfade_type("bogus") == "fade"
    assert xfade_type(None) == "fade"
    assert xfade_type("DISSOLVE") == "dissolve"


def test_chain_uses_plan_offsets_and_types():
    plan = _plan()
    graph, label = xfade_chain(plan)
    parts = graph.split(";")
    assert len(parts) == 4
    assert label == "vout"
    assert parts[0].startswith("[0:v][1:v]xfade=transition=dissolve:duration=1.000:offset=2.000[v0]")
    assert "transition=wipeleft:duration=0.500" in parts[1]
    assert "transition=fade" in parts[2]
    assert parts[3].endswith("[vout]")
    for part, offset in zip(parts, plan.offsets):
        assert f"offset={offset:.3f}" in part


def test_args_cap_output_at_planned_total(tmp_path: Path):
    plan = _plan()
    files = [tmp_path / f"{i}.mp4" for i in range(5)]
    args = concat_args(files, plan, tmp_path / "out.mp4")
    assert args[args.index("-t") + 1] == f"{plan.total:.3f}"
    assert args.count("-i") == 5


def test_file_count_must_match_plan(tmp_path: Path):
    with pytest.raises(ValueError):
        concat_args([tmp_path / "a.mp4"], _plan(), tmp_path / "out.mp4")


def test_concatenator_reports_progress_against_total(tmp_path: Path):
    transcoder = conftest.FakeTranscoder()
    plan = _plan()
    out = Concatenator(transcoder).run([tmp_path / f"{i}.mp4" for i in range(5)], plan, tmp_path / "concat.mp4")
    assert out.exists()
    assert transcoder.specs[0].expected_duration == pytest.approx(plan.total)
