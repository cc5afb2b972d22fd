"""Test configuration to ensure local `src/` is discoverable during tests."""

from __future__ import annotations

import sys
from pathlib import Path
import shutil
from typing import Any, Callable, Dict, List, Optional

# Prepend the project's `src/` directory so local package modules are used
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from promo_engine.probe import MediaInfo  # noqa: E402
from promo_engine.transcoder import TranscodeResult, TranscodeSpec  # noqa: E402


def ffmpeg_available() -> bool:
    """Return True when an `ffmpeg` binary is available on PATH."""
    return shutil.which("ffmpeg") is not None


def moviepy_usable() -> bool:
    """Return True only if MoviePy is importable with the frame reader we use."""
    try:
        from moviepy.video.io.VideoFileClip import VideoFileClip  # type: ignore  # noqa: F401
    except Exception:
        return False
    return True


def media_info(duration: float = 20.0, has_audio: bool = True, width: int = 1920, height: int = 1080) -> MediaInfo:
    return MediaInfo(
        duration=duration,
        width=width,
        height=height,
        fps=30.0,
        codec="h264",
        has_audio=has_audio,
        file_size=1000,
        bit_rate=8000,
    )


class FakeTranscoder:
    """Records every spec and creates the output file instead of running ffmpeg.

    ``fail_on`` maps a label prefix to the exception raised for it.
    """

    def __init__(self, fail_on: Optional[Dict[str, Exception]] = None, on_run: Optional[Callable[[TranscodeSpec], None]] = None):
        self.specs: List[TranscodeSpec] = []
        self.fail_on = dict(fail_on or {})
        self.on_run = on_run

    @property
    def labels(self) -> List[str]:
        return [s.label for s in self.specs]

    def run(self, spec: TranscodeSpec) -> TranscodeResult:
        self.specs.append(spec)
        if self.on_run:
            self.on_run(spec)
        for prefix, exc in self.fail_on.items():
            if spec.label.startswith(prefix):
                raise exc
        if spec.args[-1] != "-":
            out = Path(spec.args[-1])
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_bytes(b"\xff\xd8fake")
        if spec.on_progress and spec.expected_duration:
            spec.on_progress(spec.expected_duration / 2)
            spec.on_progress(spec.expected_duration)
        return TranscodeResult(returncode=0, elapsed=0.0)


class FakeVision:
    """Returns canned JSON responses in order and records each request."""

    def __init__(self, responses: List[Any]):
        self.responses = list(responses)
        self.calls: List[List[Dict[str, Any]]] = []

    def complete_json(self, content: List[Dict[str, Any]], max_tokens: int = 2048) -> Dict[str, Any]:
        self.calls.append(content)
        if not self.responses:
            raise AssertionError("unexpected vision call")
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def fake_prober(infos: Dict[str, MediaInfo]) -> Callable[[Path], MediaInfo]:
    """Prober keyed by file stem; unknown stems get a 20s clip with audio."""

    def probe(path: Path) -> MediaInfo:
        return infos.get(Path(path).stem, media_info())

    return probe


def analysis_payload(**overrides: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "mood": {
            "genre": "blues rock",
            "energy": "high",
            "description": "Gritty live energy",
            "searchQuery": "rock concert crowd",
        },
        "segments": [
            {"clipRole": "artist", "startTime": 2, "duration": 10, "caption": "Raw talent", "captionReason": "intro"},
            {"clipRole": "guitar", "startTime": 0, "duration": 8, "caption": "1959 Les Paul", "captionReason": "detail"},
            {"clipRole": "crowd", "startTime": 1, "duration": 9, "caption": "Sold out", "captionReason": "payoff"},
        ],
        "transitions": [
            {"from": "artist", "to": "guitar", "type": "dissolve", "reason": "soft"},
            {"from": "guitar", "to": "crowd", "type": "wipeleft", "reason": "energy"},
        ],
        "segmentOrder": ["artist", "guitar", "crowd"],
        "orderReason": "story",
        "overallNotes": "solid",
        "suggestedArtistName": "Jane Doe",
        "guitarType": "Les Paul",
        "outro": {"line1": "SHOP NOW", "line2": "", "line3": "", "line4": ""},
        "heroFrame": {"clipRole": "artist", "timestamp": 4},
    }
    data.update(overrides)
    return data
