"""Per-clip transforms: trim, fit, Ken Burns, colour grade and speed remap.

Each body segment becomes a silent, fixed-size, fixed-rate clip of exactly
the requested duration. Intro/outro cards go through ``card_segment_args``
so every item handed to the concatenator shares one format.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Tuple

from .analysis import ColorGradeHint, KenBurnsHint
from .transcoder import TranscodeSpec, Transcoder, encoder_args

logger = logging.getLogger(__name__)

FIT_MODES = ("crop", "fit")


@dataclass(frozen=True)
class SegmentPlan:
    """Source window actually consumed for one segment."""

    seek: float
    source_slice: float
    required_source: float
    duration: float
    speed: float

    @property
    def clamped(self) -> bool:
        return self.source_slice + 1e-9 < self.required_source

    @property
    def pts_factor(self) -> float:
        # stretch the consumed slice onto the full output duration
        if self.source_slice <= 0:
            return 1.0
        return self.duration / self.source_slice


def plan_segment(
    duration: float,
    seek: float = 0.0,
    speed: float = 1.0,
    clip_duration: Optional[float] = None,
    speed_bounds: Tuple[float, float] = (0.7, 1.3),
) -> SegmentPlan:
    """Work out the seek and slice for a segment.

    Slow motion consumes more source than it outputs (``duration / speed``).
    The seek moves backwards (never below 0) so the slice fits the clip;
    when the clip is simply too short the slice is clamped to what exists.
    """
    if duration <= 0:
        raise ValueError("segment duration must be positive")
    lo, hi = speed_bounds
    speed = min(hi, max(lo, float(speed or 1.0)))
    required = float(duration) / speed
    seek = max(0.0, float(seek or 0.0))
    source_slice = required
    if clip_duration is not None and clip_duration > 0:
        if seek + required > clip_duration:
            seek = max(0.0, clip_duration - required)
        source_slice = min(required, clip_duration - seek)
    plan = SegmentPlan(seek=seek, source_slice=source_slice, required_source=required, duration=float(duration), speed=speed)
    if plan.clamped:
        logger.info(
            "segment needs %.2fs of source but only %.2fs available from %.2fs; stretching",
            required,
            source_slice,
            seek,
        )
    return plan


def fit_filter(mode: str, W: int, H: int, pad_color: str = "#1a3a6b") -> str:
    if mode == "fit":
        color = "0x" + pad_color.lstrip("#")
        return (
            f"scale={W}:{H}:force_original_aspect_ratio=decrease,"
            f"pad={W}:{H}:(ow-iw)/2:(oh-ih)/2:color={color},setsar=1"
        )
    return f"crop='min(iw,ih*{W}/{H})':'min(ih,iw*{H}/{W})',scale={W}:{H},setsar=1"


def ken_burns_filter(direction: str, W: int, H: int, duration: float, fps: int, max_zoom: float = 1.15) -> str:
    """Centred zoompan over the segment's frames; input is expected at 2x size."""
    frames = max(1, int(round(duration * fps)))
    steps = max(1, frames - 1)
    growth = f"({max_zoom}-1)*min(on/{steps},1)"
    zoom = f"1+{growth}" if direction != "out" else f"{max_zoom}-{growth}"
    return (
        f"zoompan=z='{zoom}':x='iw/2-(iw/zoom/2)':y='ih/2-(ih/zoom/2)'"
        f":d=1:s={W}x{H}:fps={fps}"
    )


def color_grade_filter(grade: ColorGradeHint) -> str:
    return (
        f"eq=brightness={grade.brightness:.3f}"
        f":contrast={1 + grade.contrast:.3f}"
        f":saturation={1 + grade.saturation:.3f}"
    )


def segment_filter_graph(
    plan: SegmentPlan,
    size: Tuple[int, int],
    fps: int,
    fit_mode: str = "crop",
    pad_color: str = "#1a3a6b",
    ken_burns: Optional[KenBurnsHint] = None,
    color_grade: Optional[ColorGradeHint] = None,
    max_zoom: float = 1.15,
) -> str:
    W, H = size
    zoom = ken_burns is not None and ken_burns.enabled
    fW, fH = (W * 2, H * 2) if zoom else (W, H)
    parts = [
        f"trim=duration={plan.source_slice:.3f}",
        f"setpts={plan.pts_factor:.6f}*(PTS-STARTPTS)",
        f"fps={fps}",
        fit_filter(fit_mode if fit_mode in FIT_MODES else "crop", fW, fH, pad_color),
    ]
    if zoom:
        parts.append(ken_burns_filter(ken_burns.direction, W, H, plan.duration, fps, max_zoom))
    if color_grade is not None and not color_grade.is_neutral:
        parts.append(color_grade_filter(color_grade))
    parts.append("format=yuv420p")
    return f"[0:v]{','.join(parts)}[v]"


def segment_args(
    source: Path,
    output: Path,
    plan: SegmentPlan,
    graph: str,
    fps: int,
    crf: int = 18,
    preset: str = "medium",
) -> list[str]:
    args: list[str] = []
    if plan.seek > 0:
        args += ["-ss", f"{plan.seek:.3f}"]
    args += [
        "-i", str(source),
        "-filter_complex", graph,
        "-map", "[v]",
        "-t", f"{plan.duration:.3f}",
        "-r", str(fps),
        *encoder_args(crf, preset),
        "-an",
        str(output),
    ]
    return args


def card_segment_args(image: Path, output: Path, duration: float, fps: int, crf: int = 18, preset: str = "medium") -> list[str]:
    return [
        "-loop", "1",
        "-t", f"{duration:.3f}",
        "-i", str(image),
        "-filter_complex", f"[0:v]fps={fps},format=yuv420p[v]",
        "-map", "[v]",
        "-r", str(fps),
        *encoder_args(crf, preset),
        "-an",
        str(output),
    ]


def audio_extract_args(video: Path, output: Path) -> list[str]:
    return ["-i", str(video), "-vn", "-acodec", "aac", "-b:a", "192k", str(output)]


class SegmentCompositor:
    """Render segments and cards at one output size, rate and encoder setting."""

    def __init__(
        self,
        transcoder: Transcoder,
        size: Tuple[int, int],
        fps: int = 30,
        crf: int = 18,
        preset: str = "medium",
        pad_color: str = "#1a3a6b",
        speed_bounds: Tuple[float, float] = (0.7, 1.3),
        max_zoom: float = 1.15,
    ):
        self.transcoder = transcoder
        self.size = size
        self.fps = fps
        self.crf = crf
        self.preset = preset
        self.pad_color = pad_color
        self.speed_bounds = speed_bounds
        self.max_zoom = max_zoom

    def render_segment(
        self,
        source: Path,
        output: Path,
        duration: float,
        seek: float = 0.0,
        speed: float = 1.0,
        fit_mode: str = "crop",
        ken_burns: Optional[KenBurnsHint] = None,
        color_grade: Optional[ColorGradeHint] = None,
        clip_duration: Optional[float] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> SegmentPlan:
        plan = plan_segment(duration, seek, speed, clip_duration, self.speed_bounds)
        graph = segment_filter_graph(
            plan, self.size, self.fps, fit_mode, self.pad_color, ken_burns, color_grade, self.max_zoom
        )
        self.transcoder.run(
            TranscodeSpec(
                segment_args(source, output, plan, graph, self.fps, self.crf, self.preset),
                label=f"segment {output.stem}",
                expected_duration=plan.duration,
                on_progress=on_progress,
            )
        )
        return plan

    def render_card(self, image: Path, output: Path, duration: float) -> Path:
        self.transcoder.run(
            TranscodeSpec(
                card_segment_args(image, output, duration, self.fps, self.crf, self.preset),
                label=f"card {output.stem}",
            )
        )
        return output

    def extract_audio(self, video: Path, output: Path) -> Path:
        self.transcoder.run(TranscodeSpec(audio_extract_args(video, output), label="audio extract"))
        return output
