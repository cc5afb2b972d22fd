"""Tests for render request parsing and validation."""

from __future__ import annotations

import pytest

import conftest
from promo_engine.analysis import Analysis
from promo_engine.errors import ValidationError
from promo_engine.request import RenderRequest, SegmentSpec, fill_outro


def _request(**kwargs) -> RenderRequest:
    segments = [SegmentSpec("artist", 10), SegmentSpec("guitar", 8), SegmentSpec("crowd", 9)]
    return RenderRequest(segments=segments, **kwargs)


def test_valid_request_passes():
    _request().validate()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"caption_style": "spin"},
        {"export_formats": ["cinema"]},
        {"outro_lines": ["a", "b", "c", "d", "e"]},
    ],
)
def test_invalid_options_rejected(kwargs):
    with pytest.raises(ValidationError):
        _request(**kwargs).validate()


def test_segment_count_and_fields_checked():
    with pytest.raises(ValidationError):
        RenderRequest(segments=[SegmentSpec("artist", 10)]).validate()
    bad = _request()
    bad.segments[1] = SegmentSpec("guitar", 0)
    with pytest.raises(ValidationError):
        bad.validate()
    bad.segments[1] = SegmentSpec("guitar", 5, fit_mode="stretch")
    with pytest.raises(ValidationError):
        bad.validate()


def test_transition_types_coerced_and_padded():
    assert _request(transitions=["Dissolve"]).segment_transition_types() == ["dissolve", "fade"]
    assert _request(transitions=["pixelize", "wipeleft", "extra"]).segment_transition_types() == ["fade", "wipeleft"]


def test_per_segment_caption_style_overrides_default():
    req = _request(caption_style="slideUp")
    req.segments[2].caption_style = "scaleBounce"
    assert req.style_for(0) == "slideUp"
    assert req.style_for(2) == "scaleBounce"


def test_from_analysis_carries_trims_and_hints():
    analysis = Analysis.from_dict(
        conftest.analysis_payload(kenBurns={"guitar": {"enabled": True, "direction": "in"}})
    )
    req = RenderRequest.from_analysis(analysis, export_formats=["square"])
    assert req.artist_name == "Jane Doe"
    assert [s.seek_to for s in req.segments] == [2.0, 0.0, 1.0]
    assert req.segments[1].ken_burns.enabled
    assert req.transitions == ["dissolve", "wipeleft"]
    assert req.outro_lines[0] == "SHOP NOW"
    assert req.export_formats == ["square"]


def test_from_dict_accepts_client_shape():
    req = RenderRequest.from_dict(
        {
            "segments": [
                {"clipType": "artist", "duration": 10, "seekTo": 3, "caption": "RAW", "speed": 0.8},
                {"clipRole": "guitar", "duration": 8, "fitMode": "fit"},
                {"clipRole": "crowd", "duration": 9, "colorGrade": {"brightness": 0.1}},
            ],
            "transitions": [{"type": "dissolve"}, "wipeleft"],
            "outroText": "SHOP NOW\nLES PAUL",
            "exportFormats": ["wide"],
            "thumbnail": True,
        }
    )
    req.validate()
    assert req.segments[0].speed == 0.8
    assert req.segments[2].color_grade.brightness == 0.1
    assert req.transitions == ["dissolve", "wipeleft"]
    assert req.outro_lines == ["SHOP NOW", "LES PAUL"]
    assert req.make_thumbnail


def test_from_dict_bad_segment():
    with pytest.raises(ValidationError):
        RenderRequest.from_dict({"segments": [{"clipRole": "artist"}]})


@pytest.mark.parametrize(
    "extra",
    [{"kenBurns": True}, {"colorGrade": True}, {"kenBurns": "in"}, {"colorGrade": [1, 2, 3]}],
)
def test_from_dict_non_object_hints_rejected(extra):
    with pytest.raises(ValidationError, match="must be an object"):
        SegmentSpec.from_dict({"clipRole": "artist", "duration": 5, **extra})


def test_from_dict_disabled_hints_are_none():
    seg = SegmentSpec.from_dict({"clipRole": "artist", "duration": 5, "kenBurns": None, "colorGrade": False})
    assert seg.ken_burns is None
    assert seg.color_grade is None


def test_fill_outro_falls_back_per_line():
    defaults = ["BROWSE", "AUTHENTICATED", "GAUNTLET", ""]
    assert fill_outro(["SHOP NOW", "", "", "tag"], defaults) == ["SHOP NOW", "AUTHENTICATED", "GAUNTLET", "tag"]
    assert fill_outro(None, defaults) == defaults
