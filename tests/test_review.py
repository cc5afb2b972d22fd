"""Tests for the transition review loop."""

from __future__ import annotations

from pathlib import Path

import pytest

import conftest
from promo_engine.errors import JobCancelled, ReviewError, TranscodeError
from promo_engine.review import (
    APPROVED,
    MAX_RETRIES,
    NO_FIX,
    UNAVAILABLE,
    ReviewVerdict,
    TransitionReviewer,
    apply_suggestions,
    transition_frame_times,
)
from promo_engine.timeline import TimelinePlan


def _plan() -> TimelinePlan:
    return TimelinePlan.build(["artist", "guitar", "crowd"], [10, 8, 9], 3.0, 4.0, 0.5, 1.0, ["fade", "fade"])


class _Rerender:
    def __init__(self):
        self.plans = []

    def __call__(self, plan: TimelinePlan) -> Path:
        self.plans.append(plan)
        return Path("concat.mp4")


def test_frame_times_bracket_each_midpoint():
    plan = _plan()
    times = transition_frame_times(plan, 0.3)
    assert len(times) == 4
    for samples, mid in zip(times, plan.midpoints):
        assert [label for _, label in samples] == ["before", "mid", "after"]
        assert samples[1][0] == pytest.approx(mid)
        assert samples[0][0] == pytest.approx(mid - 0.3)


def test_verdict_requires_approved_flag():
    with pytest.raises(ReviewError):
        ReviewVerdict.from_dict({"transitions": []})


def test_apply_suggestions_ignores_unknown_and_out_of_range():
    verdict = ReviewVerdict.from_dict(
        {
            "approved": False,
            "transitions": [
                {"index": 1, "suggestedType": "Dissolve"},
                {"index": 2, "suggestedType": "pixelize"},
                {"index": 9, "suggestedType": "fade"},
            ],
        }
    )
    assert apply_suggestions(("dissolve", "fade", "fade", "dissolve"), verdict) == (
        "dissolve",
        "dissolve",
        "fade",
        "dissolve",
    )
    assert apply_suggestions(("dissolve", "dissolve"), ReviewVerdict(approved=False)) is None


def test_rejected_transition_is_patched_and_rerendered(tmp_path: Path):
    plan = _plan()
    assert plan.transition_types[1] == "fade"
    vision = conftest.FakeVision(
        [
            {"approved": False, "overallQuality": "acceptable", "transitions": [{"index": 1, "suggestedType": "dissolve"}]},
            {"approved": True, "overallQuality": "good"},
        ]
    )
    transcoder = conftest.FakeTranscoder()
    rerender = _Rerender()
    reviewer = TransitionReviewer(vision, transcoder, max_retries=1)
    outcome = reviewer.run(plan, tmp_path / "concat.mp4", tmp_path / "frames", rerender, mood="gritty")

    assert outcome.status == APPROVED
    assert outcome.retries == 1
    assert outcome.review_calls == 2
    assert outcome.transition_types[1] == "dissolve"
    assert rerender.plans[0].transition_types[1] == "dissolve"
    # frames were extracted again for the second review
    assert len([label for label in transcoder.labels if label.startswith("frame")]) == 24


def test_never_more_than_max_retries_plus_one_calls(tmp_path: Path):
    reject = {"approved": False, "transitions": [{"index": 1, "suggestedType": "dissolve"}]}
    reject_again = {"approved": False, "transitions": [{"index": 1, "suggestedType": "wipeleft"}]}
    vision = conftest.FakeVision([reject, reject_again, reject])
    rerender = _Rerender()
    outcome = TransitionReviewer(vision, conftest.FakeTranscoder(), max_retries=1).run(
        _plan(), tmp_path / "c.mp4", tmp_path / "f", rerender
    )
    assert outcome.status == MAX_RETRIES
    assert outcome.review_calls == 2
    assert len(rerender.plans) == 1
    assert len(vision.responses) == 1


def test_rejection_without_usable_fix_stops(tmp_path: Path):
    vision = conftest.FakeVision([{"approved": False, "transitions": [{"index": 1, "suggestedType": None}]}])
    rerender = _Rerender()
    outcome = TransitionReviewer(vision, conftest.FakeTranscoder()).run(_plan(), tmp_path / "c.mp4", tmp_path / "f", rerender)
    assert outcome.status == NO_FIX
    assert rerender.plans == []


def test_service_failure_keeps_draft(tmp_path: Path):
    vision = conftest.FakeVision([ValueError("Truncated JSON")])
    plan = _plan()
    outcome = TransitionReviewer(vision, conftest.FakeTranscoder()).run(plan, tmp_path / "c.mp4", tmp_path / "f", _Rerender())
    assert outcome.status == UNAVAILABLE
    assert outcome.transition_types == tuple(plan.transition_types)


def test_no_frames_means_unavailable(tmp_path: Path):
    transcoder = conftest.FakeTranscoder(fail_on={"frame": TranscodeError("boom")})
    vision = conftest.FakeVision([])
    outcome = TransitionReviewer(vision, transcoder).run(_plan(), tmp_path / "c.mp4", tmp_path / "f", _Rerender())
    assert outcome.status == UNAVAILABLE
    assert vision.calls == []


def test_cancellation_propagates(tmp_path: Path):
    vision = conftest.FakeVision([JobCancelled("stop")])
    with pytest.raises(JobCancelled):
        TransitionReviewer(vision, conftest.FakeTranscoder()).run(_plan(), tmp_path / "c.mp4", tmp_path / "f", _Rerender())
