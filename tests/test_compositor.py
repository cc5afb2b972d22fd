"""Tests for per-segment transform planning and filter graphs."""

from __future__ import annotations

from pathlib import Path

import pytest

import conftest
from promo_engine.analysis import ColorGradeHint, KenBurnsHint
from promo_engine.compositor import (
    SegmentCompositor,
    fit_filter,
    plan_segment,
    segment_args,
    segment_filter_graph,
)


def test_slow_motion_on_short_clip_clamps_instead_of_failing():
    plan = plan_segment(10.0, seek=0.0, speed=0.8, clip_duration=8.0)
    assert plan.required_source == pytest.approx(12.5)
    assert plan.seek == 0.0
    assert plan.source_slice == pytest.approx(8.0)
    assert plan.clamped
    assert plan.pts_factor == pytest.approx(10.0 / 8.0)


def test_seek_moves_back_to_fit_slow_motion():
    plan = plan_segment(8.0, seek=15.0, speed=0.8, clip_duration=20.0)
    assert plan.seek == pytest.approx(10.0)
    assert plan.source_slice == pytest.approx(10.0)
    assert not plan.clamped


def test_speed_is_clamped_to_bounds():
    assert plan_segment(5.0, speed=3.0).speed == 1.3
    assert plan_segment(5.0, speed=0.1).speed == 0.7


def test_non_positive_duration_rejected():
    with pytest.raises(ValueError):
        plan_segment(0.0)


def test_fit_mode_pads_with_brand_colour():
    f = fit_filter("fit", 1080, 1920, "#1a3a6b")
    assert "force_original_aspect_ratio=decrease" in f
    assert "color=0x1a3a6b" in f
    assert fit_filter("crop", 1080, 1920).startswith("crop=")


def test_filter_graph_order_with_ken_burns_and_grade():
    plan = plan_segment(10.0, speed=1.0, clip_duration=30.0)
    graph = segment_filter_graph(
        plan,
        (1080, 1920),
        30,
        ken_burns=KenBurnsHint(True, "in"),
        color_grade=ColorGradeHint(0.05, 0.1, 0.2),
    )
    body = graph[len("[0:v]"): -len("[v]")]
    names = [part.split("=")[0] for part in body.split(",") if "=" in part]
    assert names.index("trim") < names.index("setpts") < names.index("fps")
    # zoompan works from a 2x canvas down to the output size
    assert "scale=2160:3840" in graph
    assert "s=1080x1920" in graph
    assert names.index("zoompan") < names.index("eq")
    assert graph.endswith("format=yuv420p[v]")


def test_neutral_grade_and_disabled_zoom_add_nothing():
    plan = plan_segment(5.0)
    graph = segment_filter_graph(
        plan, (1080, 1920), 30, ken_burns=KenBurnsHint(False, "in"), color_grade=ColorGradeHint(0, 0, 0)
    )
    assert "zoompan" not in graph
    assert "eq=" not in graph


def test_segment_args_are_silent_and_exact_length(tmp_path: Path):
    plan = plan_segment(6.0, seek=2.0, clip_duration=20.0)
    args = segment_args(tmp_path / "in.mp4", tmp_path / "out.mp4", plan, "[0:v]null[v]", 30)
    assert args[:2] == ["-ss", "2.000"]
    assert "-an" in args
    assert args[args.index("-t") + 1] == "6.000"


def test_compositor_renders_through_transcoder(tmp_path: Path):
    transcoder = conftest.FakeTranscoder()
    comp = SegmentCompositor(transcoder, (540, 960), fps=30)
    seen = []
    plan = comp.render_segment(
        tmp_path / "artist.mp4", tmp_path / "seg_0.mp4", 4.0, seek=1.0, clip_duration=10.0, on_progress=seen.append
    )
    assert plan.duration == 4.0
    assert (tmp_path / "seg_0.mp4").exists()
    assert seen[-1] == pytest.approx(4.0)
    comp.render_card(tmp_path / "intro.png", tmp_path / "intro.mp4", 3.5)
    assert transcoder.labels == ["segment seg_0", "card intro"]
