"""Media inspection via ffprobe."""

from __future__ import annotations

import json
import shutil
import subprocess
from dataclasses import asdict, dataclass
from fractions import Fraction
from pathlib import Path
from typing import Any, Dict

from .errors import ProbeError


@dataclass(frozen=True)
class MediaInfo:
    duration: float
    width: int
    height: int
    fps: float
    codec: str
    has_audio: bool
    file_size: int
    bit_rate: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MediaInfo":
        return cls(
            duration=float(data["duration"]),
            width=int(data["width"]),
            height=int(data["height"]),
            fps=float(data["fps"]),
            codec=str(data.get("codec", "")),
            has_audio=bool(data["has_audio"]),
            file_size=int(data.get("file_size", 0)),
            bit_rate=int(data.get("bit_rate", 0)),
        )


def _parse_rate(value: Any) -> float:
    if not value:
        return 0.0
    try:
        rate = Fraction(str(value))
    except (ValueError, ZeroDivisionError):
        return 0.0
    return float(rate)


def _parse_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def parse_probe_output(metadata: Dict[str, Any]) -> MediaInfo:
    """Build MediaInfo from ffprobe ``-show_format -show_streams`` JSON."""
    streams = metadata.get("streams") or []
    fmt = metadata.get("format") or {}
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)
    if video is None:
        raise ProbeError("No video stream found")

    duration = fmt.get("duration", video.get("duration"))
    try:
        duration_f = float(duration)
    except (TypeError, ValueError) as exc:
        raise ProbeError(f"Unreadable duration: {duration!r}") from exc

    return MediaInfo(
        duration=duration_f,
        width=_parse_int(video.get("width")),
        height=_parse_int(video.get("height")),
        fps=_parse_rate(video.get("r_frame_rate")),
        codec=str(video.get("codec_name", "")),
        has_audio=audio is not None,
        file_size=_parse_int(fmt.get("size")),
        bit_rate=_parse_int(fmt.get("bit_rate")),
    )


def probe_media(path: Path) -> MediaInfo:
    """Inspect a media file.

    Raises
    -----
    ProbeError
        If ffprobe is missing, fails, or the file has no video stream.
    """
    if not path.exists() or not path.is_file():
        raise ProbeError(f"Media not found or not a file: {path}")
    ffprobe = shutil.which("ffprobe")
    if not ffprobe:
        raise ProbeError("ffprobe not available in PATH")
    proc = subprocess.run(
        [ffprobe, "-v", "error", "-print_format", "json", "-show_format", "-show_streams", str(path)],
        capture_output=True,
        text=True,
    )
    if proc.returncode != 0:
        raise ProbeError(f"ffprobe failed for {path.name}: {proc.stderr.strip()}")
    try:
        metadata = json.loads(proc.stdout or "{}")
    except json.JSONDecodeError as exc:
        raise ProbeError(f"ffprobe returned invalid JSON for {path.name}") from exc
    return parse_probe_output(metadata)
