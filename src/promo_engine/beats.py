"""Beat detection on the soundtrack and beat-snapping of timeline boundaries.

Beats are found from ffmpeg's per-window RMS loudness: the dB levels are
converted to linear amplitude, compared against a centred moving average
and kept when they form a strict local peak that clears the average by a
fixed margin.
"""

from __future__ import annotations

import bisect
import logging
import math
import re
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .timeline import boundary_midpoint
from .transcoder import TranscodeSpec, Transcoder

logger = logging.getLogger(__name__)

RMS_WINDOW = 0.02
AVERAGE_SPAN = 0.2
PEAK_MARGIN = 1.3
MIN_BEAT_GAP = 0.25
MIN_SAMPLES = 10

_PTS_RE = re.compile(r"pts_time:([0-9.]+)")
_RMS_RE = re.compile(r"lavfi\.astats\.Overall\.RMS_level=([-0-9.a-z]+)")


def rms_analysis_args(audio: Path, metadata_file: Path, window: float = RMS_WINDOW) -> list[str]:
    return [
        "-i", str(audio),
        "-af",
        (
            f"astats=metadata=1:length={window},"
            f"ametadata=print:key=lavfi.astats.Overall.RMS_level:file={metadata_file.as_posix()}"
        ),
        "-f", "null", "-",
    ]


def parse_rms_levels(raw: str) -> List[Tuple[float, float]]:
    """Parse ``ametadata=print`` output into ``(time, rms_db)`` samples.

    Silent windows (``-inf``) and anything below -100 dB are dropped.
    """
    samples: List[Tuple[float, float]] = []
    current_time: Optional[float] = None
    for line in raw.splitlines():
        m = _PTS_RE.search(line)
        if m:
            current_time = float(m.group(1))
        r = _RMS_RE.search(line)
        if r and current_time is not None:
            try:
                rms = float(r.group(1))
            except ValueError:
                rms = float("-inf")
            if math.isfinite(rms) and rms > -100:
                samples.append((current_time, rms))
            current_time = None
    return samples


def find_beats(
    samples: Sequence[Tuple[float, float]],
    duration: float,
    window: float = RMS_WINDOW,
) -> List[float]:
    """Pick beat onsets from RMS samples. Fewer than 10 samples means no beat data."""
    if len(samples) < MIN_SAMPLES:
        return []

    times = np.array([s[0] for s in samples], dtype=float)
    levels = np.power(10.0, np.array([s[1] for s in samples], dtype=float) / 20.0)

    half = max(5, int(round(AVERAGE_SPAN / window)))
    n = len(levels)
    csum = np.concatenate(([0.0], np.cumsum(levels)))
    idx = np.arange(n)
    lo = np.maximum(0, idx - half)
    hi = np.minimum(n - 1, idx + half)
    averages = (csum[hi + 1] - csum[lo]) / (hi - lo + 1)

    beats: List[float] = []
    for i in range(2, n - 2):
        level = levels[i]
        if (
            level > levels[i - 1]
            and level > levels[i - 2]
            and level > levels[i + 1]
            and level > levels[i + 2]
            and level > averages[i] * PEAK_MARGIN
            and times[i] <= duration
        ):
            if not beats or times[i] - beats[-1] >= MIN_BEAT_GAP:
                beats.append(float(times[i]))
    return beats


def detect_beats(transcoder: Transcoder, audio: Path, duration: float, work_dir: Path) -> List[float]:
    """Run the loudness pass over ``audio`` and return ascending beat timestamps."""
    work_dir.mkdir(parents=True, exist_ok=True)
    metadata_file = work_dir / "rms_levels.txt"
    transcoder.run(TranscodeSpec(rms_analysis_args(audio, metadata_file), label="beat analysis"))
    try:
        raw = metadata_file.read_text(encoding="utf-8", errors="replace")
    finally:
        metadata_file.unlink(missing_ok=True)
    beats = find_beats(parse_rms_levels(raw), duration)
    logger.info("detected %d beats in %s", len(beats), audio.name)
    return beats


def snap_to_nearest_beat(beats: Sequence[float], target: float, max_offset: float = 0.5) -> Optional[float]:
    """Nearest beat to ``target`` if it lies within ``max_offset`` seconds, else None."""
    if not beats:
        return None
    lo = bisect.bisect_left(beats, target)
    best: Optional[float] = None
    best_dist = math.inf
    for i in (lo - 1, lo):
        if 0 <= i < len(beats):
            dist = abs(beats[i] - target)
            if dist < best_dist:
                best_dist = dist
                best = beats[i]
    return best if best_dist <= max_offset else None


def snap_durations_to_beats(
    beats: Sequence[float],
    durations: Sequence[float],
    transition_durations: Sequence[float],
    max_shift: float = 0.5,
    min_duration: float = 2.0,
    max_durations: Optional[Sequence[float]] = None,
) -> List[float]:
    """Nudge every crossfade midpoint onto a nearby beat.

    Each boundary is handled in order against the durations produced by the
    previous boundaries. A snapped shift is split evenly between the item
    before and the item after the boundary; every item keeps at least
    ``min_duration`` seconds and, when ``max_durations`` is given, never
    grows past the material rendered for it.
    """
    result = [float(d) for d in durations]
    if not beats:
        return result

    for i in range(len(result) - 1):
        midpoint = boundary_midpoint(result, transition_durations, i)
        snapped = snap_to_nearest_beat(beats, midpoint, max_shift)
        if snapped is None:
            continue
        shift = snapped - midpoint
        result[i] = _clamp(result[i] + shift / 2.0, min_duration, max_durations, i)
        result[i + 1] = _clamp(result[i + 1] - shift / 2.0, min_duration, max_durations, i + 1)
    return result


def _clamp(value: float, floor: float, ceilings: Optional[Sequence[float]], index: int) -> float:
    value = max(floor, value)
    if ceilings is not None:
        value = min(value, max(floor, float(ceilings[index])))
    return value
