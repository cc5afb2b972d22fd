"""Adapter around the external ffmpeg process.

Filter-graph builders elsewhere in the package only produce argument lists
(``TranscodeSpec``); this module is the single place that spawns ffmpeg,
parses its progress and turns failures into exceptions.
"""

from __future__ import annotations

import logging
import os
import queue
import re
import shutil
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Callable, Optional, Protocol

from .errors import JobCancelled, TranscodeError, TranscodeTimeout

logger = logging.getLogger(__name__)

_TIME_RE = re.compile(r"time=(\d+):(\d+):(\d+(?:\.\d+)?)")

TAIL_LINES = 6


@dataclass
class TranscodeSpec:
    args: list[str]
    label: str = "ffmpeg"
    expected_duration: Optional[float] = None
    on_progress: Optional[Callable[[float], None]] = None
    timeout: Optional[float] = None
    cancel_event: Optional[threading.Event] = None


@dataclass
class TranscodeResult:
    returncode: int
    elapsed: float
    stderr_tail: str = ""


class Transcoder(Protocol):
    def run(self, spec: TranscodeSpec) -> TranscodeResult:
        ...


def parse_progress_time(line: str) -> Optional[float]:
    """Return elapsed output seconds from an ffmpeg ``time=HH:MM:SS.xx`` marker."""
    m = _TIME_RE.search(line)
    if not m:
        return None
    return int(m.group(1)) * 3600 + int(m.group(2)) * 60 + float(m.group(3))


def ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None


def get_encoding_preset(default: str = "medium") -> str:
    """Encoder effort; ``PROMO_ENGINE_FFMPEG_PRESET`` overrides the configured value."""
    preset = os.environ.get("PROMO_ENGINE_FFMPEG_PRESET", "").strip()
    return preset or default


def get_crf(default: int = 18) -> int:
    """Quality setting (0-51); ``PROMO_ENGINE_FFMPEG_CRF`` overrides the configured value."""
    crf = os.environ.get("PROMO_ENGINE_FFMPEG_CRF", "").strip()
    if crf and crf.isdigit():
        val = int(crf)
        if 0 <= val <= 51:
            return val
    return default


def encoder_args(crf: int = 18, preset: str = "medium") -> list[str]:
    return [
        "-c:v", "libx264",
        "-crf", str(get_crf(crf)),
        "-preset", get_encoding_preset(preset),
        "-pix_fmt", "yuv420p",
    ]


class FfmpegTranscoder:
    """Run ffmpeg as a child process with progress, timeout and cancellation."""

    def __init__(
        self,
        binary: str = "ffmpeg",
        default_timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.binary = binary
        self.default_timeout = default_timeout if default_timeout and default_timeout > 0 else None
        self.cancel_event = cancel_event or threading.Event()

    def _cancelled(self, spec: TranscodeSpec) -> bool:
        return self.cancel_event.is_set() or (spec.cancel_event is not None and spec.cancel_event.is_set())

    def run(self, spec: TranscodeSpec) -> TranscodeResult:
        if self._cancelled(spec):
            raise JobCancelled(f"{spec.label}: cancelled before start")

        cmd = [self.binary, "-y", "-hide_banner", *spec.args]
        logger.debug("[%s] %s", spec.label, " ".join(cmd))
        timeout = spec.timeout if spec.timeout is not None else self.default_timeout

        proc = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE, text=True)
        start_time = time.time()
        q: queue.Queue[str] = queue.Queue()
        err_tail: deque[str] = deque(maxlen=200)

        def _err_reader():
            if not proc.stderr:
                return
            for line in proc.stderr:
                q.put(line)

        te = threading.Thread(target=_err_reader, daemon=True)
        te.start()

        last_seconds = -1.0
        try:
            while True:
                if proc.poll() is not None and q.empty() and not te.is_alive():
                    break
                if self._cancelled(spec):
                    proc.kill()
                    raise JobCancelled(f"{spec.label}: cancelled")
                if timeout is not None and time.time() - start_time > timeout:
                    proc.kill()
                    raise TranscodeTimeout(
                        f"{spec.label}: ffmpeg exceeded {timeout:.0f}s timeout",
                        tail=_tail(err_tail),
                    )
                try:
                    line = q.get(timeout=0.25)
                except queue.Empty:
                    continue

                line = line.rstrip()
                if line:
                    err_tail.append(line)
                secs = parse_progress_time(line)
                if secs is not None and spec.on_progress and secs > last_seconds:
                    last_seconds = secs
                    spec.on_progress(secs)
        finally:
            if proc.poll() is None:
                proc.kill()
            proc.wait()

        elapsed = time.time() - start_time
        tail = _tail(err_tail)
        if proc.returncode != 0:
            raise TranscodeError(
                f"{spec.label}: ffmpeg exited with code {proc.returncode}: {tail}",
                tail=tail,
                returncode=proc.returncode,
            )
        if spec.on_progress and spec.expected_duration:
            spec.on_progress(spec.expected_duration)
        logger.debug("[%s] finished in %.1fs", spec.label, elapsed)
        return TranscodeResult(returncode=proc.returncode, elapsed=elapsed, stderr_tail=tail)


class CancellableTranscoder:
    """Bind one run's cancel event to every spec handed to ``inner``."""

    def __init__(self, inner: Transcoder, cancel_event: threading.Event):
        self.inner = inner
        self.cancel_event = cancel_event

    def run(self, spec: TranscodeSpec) -> TranscodeResult:
        if self.cancel_event.is_set():
            raise JobCancelled(f"{spec.label}: cancelled before start")
        return self.inner.run(replace(spec, cancel_event=self.cancel_event))


def _tail(lines: deque[str], n: int = TAIL_LINES) -> str:
    return "\n".join(list(lines)[-n:])
