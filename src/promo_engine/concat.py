"""Crossfade concatenation of silent timeline items."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional, Sequence

from .timeline import TimelinePlan
from .transcoder import TranscodeSpec, Transcoder, encoder_args

logger = logging.getLogger(__name__)

# xfade transition names accepted by the concatenator
VALID_TRANSITIONS = (
    "fade", "wipeleft", "wiperight", "wipeup", "wipedown",
    "slideleft", "slideright", "slideup", "slidedown",
    "smoothleft", "smoothright", "smoothup", "smoothdown",
    "dissolve", "pixelize", "diagtl", "diagtr", "diagbl", "diagbr",
)


def xfade_type(value: Optional[str]) -> str:
    if value and value.lower() in VALID_TRANSITIONS:
        return value.lower()
    return "fade"


def xfade_chain(plan: TimelinePlan) -> tuple[str, str]:
    """Build the ``xfade`` filter chain; returns ``(graph, final_label)``.

    Offsets come straight from ``plan.offsets`` so the joins land exactly
    where beat snapping and the transition review expect them.
    """
    n = len(plan.durations)
    filters = []
    current = "0:v"
    for i, offset in enumerate(plan.offsets):
        out = f"v{i}" if i < n - 2 else "vout"
        filters.append(
            f"[{current}][{i + 1}:v]xfade=transition={xfade_type(plan.transition_types[i])}"
            f":duration={plan.transition_durations[i]:.3f}:offset={offset:.3f}[{out}]"
        )
        current = out
    return ";".join(filters), current


def concat_args(files: Sequence[Path], plan: TimelinePlan, output: Path, crf: int = 18, preset: str = "medium") -> list[str]:
    if len(files) != len(plan.durations):
        raise ValueError(f"{len(files)} files for a {len(plan.durations)}-item timeline")
    if len(files) == 1:
        return ["-i", str(files[0]), "-c", "copy", str(output)]

    args: list[str] = []
    for f in files:
        args += ["-i", str(f)]
    graph, label = xfade_chain(plan)
    args += [
        "-filter_complex", graph,
        "-map", f"[{label}]",
        "-t", f"{plan.total:.3f}",
        *encoder_args(crf, preset),
        str(output),
    ]
    return args


class Concatenator:
    def __init__(self, transcoder: Transcoder, crf: int = 18, preset: str = "medium"):
        self.transcoder = transcoder
        self.crf = crf
        self.preset = preset

    def run(
        self,
        files: Sequence[Path],
        plan: TimelinePlan,
        output: Path,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> Path:
        logger.info(
            "concatenating %d items, transitions %s, total %.2fs",
            len(files),
            ",".join(plan.transition_types),
            plan.total,
        )
        self.transcoder.run(
            TranscodeSpec(
                concat_args(files, plan, output, self.crf, self.preset),
                label="concat",
                expected_duration=plan.total,
                on_progress=on_progress,
            )
        )
        return output
