"""Still-frame extraction from video files."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List

from .transcoder import TranscodeSpec, Transcoder


@dataclass(frozen=True)
class Frame:
    path: Path
    timestamp: float
    label: str = ""


def keyframe_timestamps(duration: float, count: int = 5) -> List[float]:
    """Evenly spaced sample points strictly inside the clip, rounded to whole seconds."""
    if count <= 0 or duration <= 0:
        return []
    interval = float(duration) / (count + 1)
    return [float(round(interval * i)) for i in range(1, count + 1)]


def single_frame_args(video: Path, timestamp: float, output: Path) -> list[str]:
    return [
        "-ss", f"{max(0.0, timestamp):.3f}",
        "-i", str(video),
        "-frames:v", "1",
        "-q:v", "2",
        str(output),
    ]


def extract_frame(transcoder: Transcoder, video: Path, timestamp: float, output: Path) -> Path:
    output.parent.mkdir(parents=True, exist_ok=True)
    transcoder.run(TranscodeSpec(single_frame_args(video, timestamp, output), label=f"frame {output.name}"))
    return output


def extract_keyframes(
    transcoder: Transcoder,
    video: Path,
    output_dir: Path,
    duration: float,
    count: int = 5,
    prefix: str = "frame",
) -> List[Frame]:
    frames: List[Frame] = []
    for idx, ts in enumerate(keyframe_timestamps(duration, count), start=1):
        out = output_dir / f"{prefix}_{idx}.jpg"
        extract_frame(transcoder, video, ts, out)
        frames.append(Frame(path=out, timestamp=ts, label=prefix))
    return frames
