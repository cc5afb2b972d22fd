"""Render-time timeline arithmetic.

A render timeline is the ordered list ``[intro, seg0, seg1, seg2, outro]``
joined by crossfades. Every consumer of the timeline (the crossfade chain,
beat snapping, transition review and caption placement) takes its numbers
from the functions below, so the offsets they use cannot drift apart.

For items ``d[0..n]`` and transitions ``t[0..n-1]`` the crossfade between
item ``i`` and ``i + 1`` starts at::

    offset[i] = (d[0] + ... + d[i]) - (t[0] + ... + t[i])

measured on the output's own clock, and the finished video lasts
``sum(d) - sum(t)`` seconds.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import List, Sequence, Tuple


def crossfade_offsets(durations: Sequence[float], transition_durations: Sequence[float]) -> List[float]:
    _check_lengths(durations, transition_durations)
    offsets: List[float] = []
    cumulative = 0.0
    overlap = 0.0
    for i in range(len(durations) - 1):
        cumulative += float(durations[i])
        overlap += float(transition_durations[i])
        offsets.append(cumulative - overlap)
    return offsets


def boundary_midpoints(durations: Sequence[float], transition_durations: Sequence[float]) -> List[float]:
    offsets = crossfade_offsets(durations, transition_durations)
    return [off + float(td) / 2.0 for off, td in zip(offsets, transition_durations)]


def boundary_midpoint(durations: Sequence[float], transition_durations: Sequence[float], index: int) -> float:
    """Midpoint of crossfade ``index`` given the current durations."""
    return boundary_midpoints(durations[: index + 2], transition_durations[: index + 1])[index]


def total_duration(durations: Sequence[float], transition_durations: Sequence[float]) -> float:
    _check_lengths(durations, transition_durations)
    return float(sum(float(d) for d in durations) - sum(float(t) for t in transition_durations))


def visible_windows(durations: Sequence[float], transition_durations: Sequence[float]) -> List[Tuple[float, float]]:
    """On-screen window of each item, excluding the incoming crossfade.

    Item ``j`` owns the screen from the end of its incoming crossfade to the
    end of its outgoing one, so consecutive windows touch without
    overlapping. The first window begins at 0 and the last ends at the total.
    """
    offsets = crossfade_offsets(durations, transition_durations)
    windows: List[Tuple[float, float]] = []
    for j, dur in enumerate(durations):
        if j == 0:
            start = 0.0
        else:
            start = offsets[j - 1] + float(transition_durations[j - 1])
        if j < len(offsets):
            end = offsets[j] + float(transition_durations[j])
        else:
            end = total_duration(durations, transition_durations)
        windows.append((start, end))
    return windows


def transition_durations_for(item_count: int, inter: float, card: float) -> List[float]:
    """Per-join crossfade lengths: card joins (first and last) use ``card``."""
    n = max(0, item_count - 1)
    if n == 0:
        return []
    durations = [float(inter)] * n
    durations[0] = float(card)
    durations[-1] = float(card)
    return durations


def _check_lengths(durations: Sequence[float], transition_durations: Sequence[float]) -> None:
    expected = max(0, len(durations) - 1)
    if len(transition_durations) != expected:
        raise ValueError(
            f"expected {expected} transition durations for {len(durations)} items, got {len(transition_durations)}"
        )


@dataclass
class TimelinePlan:
    """Labels, durations and joins for one render."""

    labels: List[str]
    durations: List[float]
    transition_durations: List[float]
    transition_types: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if len(self.labels) != len(self.durations):
            raise ValueError("labels and durations must have the same length")
        _check_lengths(self.durations, self.transition_durations)
        if not self.transition_types:
            self.transition_types = ["fade"] * len(self.transition_durations)
        if len(self.transition_types) != len(self.transition_durations):
            raise ValueError("one transition type per join is required")

    @classmethod
    def build(
        cls,
        segment_labels: Sequence[str],
        segment_durations: Sequence[float],
        intro_duration: float,
        outro_duration: float,
        transition_duration: float,
        card_transition_duration: float,
        segment_transition_types: Sequence[str] | None = None,
        card_transition_type: str = "dissolve",
    ) -> "TimelinePlan":
        labels = ["intro", *segment_labels, "outro"]
        durations = [float(intro_duration), *[float(d) for d in segment_durations], float(outro_duration)]
        tds = transition_durations_for(len(durations), transition_duration, card_transition_duration)
        inner = list(segment_transition_types or [])
        inner_count = max(0, len(tds) - 2)
        inner = (inner + ["fade"] * inner_count)[:inner_count]
        types = [card_transition_type, *inner, card_transition_type] if len(tds) >= 2 else [card_transition_type] * len(tds)
        return cls(labels=labels, durations=durations, transition_durations=tds, transition_types=types)

    def with_durations(self, durations: Sequence[float]) -> "TimelinePlan":
        return replace(self, durations=[float(d) for d in durations])

    def with_transition_types(self, types: Sequence[str]) -> "TimelinePlan":
        return replace(self, transition_types=list(types))

    @property
    def offsets(self) -> List[float]:
        return crossfade_offsets(self.durations, self.transition_durations)

    @property
    def midpoints(self) -> List[float]:
        return boundary_midpoints(self.durations, self.transition_durations)

    @property
    def total(self) -> float:
        return total_duration(self.durations, self.transition_durations)

    @property
    def windows(self) -> List[Tuple[float, float]]:
        return visible_windows(self.durations, self.transition_durations)

    @property
    def intro_duration(self) -> float:
        return self.durations[0]

    def segment_window(self, segment_index: int) -> Tuple[float, float]:
        """Visible window of body segment ``segment_index`` (0-based, intro excluded)."""
        return self.windows[segment_index + 1]

    def summary(self) -> dict:
        return {
            "labels": list(self.labels),
            "durations": [round(d, 3) for d in self.durations],
            "transitions": [
                {"type": t, "duration": round(d, 3), "offset": round(o, 3)}
                for t, d, o in zip(self.transition_types, self.transition_durations, self.offsets)
            ],
            "total": round(self.total, 3),
        }
