"""Vision-model QA of the concatenated draft's transitions.

The loop is a fold over review rounds: each round reads the current
transition types, asks for a verdict and either stops or yields a new type
list for a re-render. It never makes more than ``max_retries + 1`` review
calls, and a QA failure only ever ends the loop early with the draft
accepted as-is.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .analysis import PROFESSIONAL_TRANSITIONS
from .errors import JobCancelled, ReviewError, TranscodeError, TranscodeTimeout
from .frames import Frame, extract_frame
from .timeline import TimelinePlan
from .transcoder import Transcoder
from .vision import VisionClient, image_block, text_block

logger = logging.getLogger(__name__)

APPROVED = "approved"
NO_FIX = "no_fix"
MAX_RETRIES = "max_retries"
UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class TransitionVerdict:
    index: int
    quality: str = ""
    issue: Optional[str] = None
    suggested_type: Optional[str] = None


@dataclass(frozen=True)
class ReviewVerdict:
    approved: bool
    overall_quality: str = ""
    transitions: Tuple[TransitionVerdict, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ReviewVerdict":
        if not isinstance(data, Mapping) or "approved" not in data:
            raise ReviewError("Review verdict is missing 'approved'")
        items = []
        for raw in data.get("transitions") or []:
            if not isinstance(raw, Mapping):
                continue
            try:
                index = int(raw.get("index"))
            except (TypeError, ValueError):
                continue
            suggested = raw.get("suggestedType")
            items.append(
                TransitionVerdict(
                    index=index,
                    quality=str(raw.get("quality") or ""),
                    issue=raw.get("issue") or None,
                    suggested_type=suggested.strip().lower() if isinstance(suggested, str) and suggested.strip() else None,
                )
            )
        return cls(
            approved=bool(data["approved"]),
            overall_quality=str(data.get("overallQuality") or ""),
            transitions=tuple(items),
        )


@dataclass
class TransitionFrames:
    index: int
    frames: List[Frame] = field(default_factory=list)


@dataclass(frozen=True)
class ReviewOutcome:
    transition_types: Tuple[str, ...]
    status: str
    review_calls: int
    retries: int
    quality: str = ""

    @property
    def changed(self) -> bool:
        return self.retries > 0


def transition_frame_times(plan: TimelinePlan, margin: float = 0.3) -> List[List[Tuple[float, str]]]:
    """Before/at/after sample times around every crossfade midpoint."""
    total = plan.total
    times = []
    for mid in plan.midpoints:
        times.append(
            [
                (max(0.0, mid - margin), "before"),
                (mid, "mid"),
                (min(mid + margin, max(0.0, total - 0.05)), "after"),
            ]
        )
    return times


def extract_transition_frames(
    transcoder: Transcoder,
    video: Path,
    plan: TimelinePlan,
    output_dir: Path,
    margin: float = 0.3,
) -> List[TransitionFrames]:
    """Grab review frames; a frame that fails to extract is logged and left out."""
    output_dir.mkdir(parents=True, exist_ok=True)
    groups = []
    for i, samples in enumerate(transition_frame_times(plan, margin)):
        group = TransitionFrames(index=i)
        for ts, label in samples:
            out = output_dir / f"review_t{i}_{label}.jpg"
            try:
                extract_frame(transcoder, video, ts, out)
            except TranscodeTimeout:
                raise
            except TranscodeError as exc:
                logger.warning("review frame t%d_%s at %.2fs failed: %s", i, label, ts, exc)
                continue
            group.frames.append(Frame(path=out, timestamp=ts, label=label))
        groups.append(group)
    return groups


REVIEW_PROMPT = """You are a professional video QA reviewer. Evaluate each transition in this rendered music video.

VIDEO MOOD: {mood}

For each transition, examine the frames (before, midpoint, after) and assess:
1. Does the transition look smooth and professional?
2. Are there any visual artifacts, jarring cuts, or mismatched content?
3. Would a different transition type work better?

AVAILABLE TRANSITIONS: {available}

Return ONLY a JSON object:
{{
  "approved": <true if ALL transitions look good, false if ANY need fixing>,
  "overallQuality": "<excellent|good|acceptable|poor>",
  "transitions": [
    {{
      "index": <0-based>,
      "quality": "<smooth|acceptable|jarring>",
      "issue": "<description of problem, or null if smooth>",
      "suggestedType": "<recommended transition type, or null if current is fine>"
    }}
  ]
}}

Return ONLY the JSON, no markdown."""


def build_review_content(
    groups: Sequence[TransitionFrames],
    transition_types: Sequence[str],
    labels: Sequence[str],
    mood: str = "",
) -> List[Dict[str, Any]]:
    content: List[Dict[str, Any]] = []
    for group in groups:
        i = group.index
        src = labels[i] if i < len(labels) else f"segment {i}"
        dst = labels[i + 1] if i + 1 < len(labels) else f"segment {i + 1}"
        kind = transition_types[i] if i < len(transition_types) else "fade"
        content.append(text_block(f"--- TRANSITION {i + 1}: {src} -> {dst} (type: {kind}) ---"))
        for frame in group.frames:
            if not frame.path.exists():
                continue
            content.append(image_block(frame.path))
            content.append(text_block(f"Frame: {frame.label} ({frame.timestamp:.2f}s)"))
    content.append(
        text_block(REVIEW_PROMPT.format(mood=mood or "unknown", available=", ".join(PROFESSIONAL_TRANSITIONS)))
    )
    return content


def apply_suggestions(types: Sequence[str], verdict: ReviewVerdict) -> Optional[Tuple[str, ...]]:
    """New type list with actionable suggestions applied, or None when nothing changes."""
    patched = list(types)
    changed = False
    for t in verdict.transitions:
        if not 0 <= t.index < len(patched):
            continue
        if t.suggested_type and t.suggested_type in PROFESSIONAL_TRANSITIONS and t.suggested_type != patched[t.index]:
            logger.info(
                "review fix: transition %d %s -> %s (%s)",
                t.index,
                patched[t.index],
                t.suggested_type,
                t.issue or "no issue given",
            )
            patched[t.index] = t.suggested_type
            changed = True
    return tuple(patched) if changed else None


class TransitionReviewer:
    def __init__(
        self,
        client: VisionClient,
        transcoder: Transcoder,
        max_retries: int = 1,
        frame_margin: float = 0.3,
        max_tokens: int = 1024,
    ):
        self.client = client
        self.transcoder = transcoder
        self.max_retries = max(0, int(max_retries))
        self.frame_margin = frame_margin
        self.max_tokens = max_tokens

    def review(self, plan: TimelinePlan, video: Path, frames_dir: Path, mood: str = "") -> ReviewVerdict:
        groups = extract_transition_frames(self.transcoder, video, plan, frames_dir, self.frame_margin)
        if not any(g.frames for g in groups):
            raise ReviewError("No transition frames could be extracted")
        content = build_review_content(groups, plan.transition_types, plan.labels, mood)
        try:
            raw = self.client.complete_json(content, max_tokens=self.max_tokens)
        except ValueError as exc:
            raise ReviewError(f"Malformed review verdict: {exc}") from exc
        return ReviewVerdict.from_dict(raw)

    def run(
        self,
        plan: TimelinePlan,
        video: Path,
        frames_dir: Path,
        rerender: Callable[[TimelinePlan], Path],
        mood: str = "",
        on_progress: Optional[Callable[[float, str], None]] = None,
    ) -> ReviewOutcome:
        """Review, patch and re-render until approved, unfixable or out of retries.

        ``rerender`` re-concatenates ``video`` for a plan with new transition
        types; its failures are transform failures and propagate.
        """

        def report(pct: float, message: str) -> None:
            if on_progress:
                on_progress(pct, message)

        types = tuple(plan.transition_types)
        calls = 0
        retries = 0
        while True:
            span = 100.0 / (self.max_retries + 1)
            base = span * retries
            report(base, "Extracting transition frames for AI review...")
            try:
                calls += 1
                verdict = self.review(plan, video, frames_dir, mood)
            except (JobCancelled, TranscodeTimeout):
                raise
            except Exception as exc:
                logger.warning("transition review unavailable, keeping draft: %s", exc)
                report(100, "Review AI error, skipping review")
                return ReviewOutcome(types, UNAVAILABLE, calls, retries)

            logger.info("transition review attempt %d: approved=%s quality=%s", calls, verdict.approved, verdict.overall_quality)
            if verdict.approved:
                report(100, f"AI review: {verdict.overall_quality} (approved)")
                return ReviewOutcome(types, APPROVED, calls, retries, verdict.overall_quality)
            if retries >= self.max_retries:
                report(100, f"AI review: {verdict.overall_quality} (max retries reached, proceeding)")
                return ReviewOutcome(types, MAX_RETRIES, calls, retries, verdict.overall_quality)
            patched = apply_suggestions(types, verdict)
            if patched is None:
                report(100, f"AI review: {verdict.overall_quality} (no fixes available, proceeding)")
                return ReviewOutcome(types, NO_FIX, calls, retries, verdict.overall_quality)

            types = patched
            plan = plan.with_transition_types(types)
            report(base + span / 2, "Re-concatenating with improved transitions...")
            rerender(plan)
            retries += 1
