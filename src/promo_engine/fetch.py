"""Third-party media retrieval: stock crowd footage and remote videos.

Stock footage comes from the Pexels video search API over ``requests``.
Remote videos are pulled with the ``yt-dlp`` executable and optionally cut
with a lossless ffmpeg stream copy.
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
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests

from .errors import DownloadError, JobCancelled
from .transcoder import CancellableTranscoder, TranscodeSpec, Transcoder

logger = logging.getLogger(__name__)

PEXELS_SEARCH_URL = "https://api.pexels.com/videos/search"
DEFAULT_CROWD_QUERY = "concert crowd cheering"

_URL_RE = re.compile(
    r"^https?://(www\.)?(youtube\.com/watch\?v=[\w-]+|youtu\.be/[\w-]+|youtube\.com/shorts/[\w-]+)"
)
_DOWNLOAD_PCT_RE = re.compile(r"\[download\]\s+([\d.]+)%")

YTDLP_FORMAT = "bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]"


@dataclass
class StockClip:
    file_path: Path
    thumbnail_url: str
    source_page_url: str
    duration: float
    query: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filePath": str(self.file_path),
            "thumbnailUrl": self.thumbnail_url,
            "sourcePageUrl": self.source_page_url,
            "duration": self.duration,
            "query": self.query,
        }


@dataclass
class RemoteVideo:
    file_path: Path
    title: str


def pick_best_file(files: Sequence[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """HD before SD, then the tallest frame; falls back to the first listed file."""
    if not files:
        return None
    ranked = sorted(
        (f for f in files if f.get("quality") in ("hd", "sd")),
        key=lambda f: (f.get("quality") != "hd", -(f.get("height") or 0)),
    )
    return ranked[0] if ranked else files[0]


class StockFootageClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        per_page: int = 3,
        orientation: str = "portrait",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key or os.environ.get("PEXELS_API_KEY")
        self.per_page = per_page
        self.orientation = orientation
        self.timeout = timeout
        self.session = session or requests.Session()

    def search(self, query: str) -> List[Dict[str, Any]]:
        if not self.api_key:
            raise DownloadError("PEXELS_API_KEY is not set")
        params = {"query": query or DEFAULT_CROWD_QUERY, "per_page": self.per_page, "orientation": self.orientation}
        try:
            r = self.session.get(
                PEXELS_SEARCH_URL,
                params=params,
                headers={"Authorization": self.api_key},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise DownloadError(f"Stock footage search failed: {exc}") from exc
        if r.status_code != 200:
            raise DownloadError(f"Stock footage API error {r.status_code}: {r.text[:200]}")
        try:
            data = r.json()
        except ValueError as exc:
            raise DownloadError("Failed to parse stock footage response") from exc

        videos = []
        for v in data.get("videos") or []:
            videos.append(
                {
                    "id": v.get("id"),
                    "url": v.get("url", ""),
                    "duration": v.get("duration", 0),
                    "image": v.get("image", ""),
                    "video_file": pick_best_file(v.get("video_files") or []),
                }
            )
        return videos

    def download(self, url: str, output: Path) -> Path:
        output.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as r:
                if r.status_code != 200:
                    raise DownloadError(f"Download failed with status {r.status_code}")
                with open(output, "wb") as f:
                    for chunk in r.iter_content(chunk_size=1 << 16):
                        if chunk:
                            f.write(chunk)
        except requests.RequestException as exc:
            output.unlink(missing_ok=True)
            raise DownloadError(f"Download failed: {exc}") from exc
        return output

    def fetch(self, query: Optional[str], output_dir: Path) -> Optional[StockClip]:
        """Download the first search hit, or return None when nothing matched."""
        query = query or DEFAULT_CROWD_QUERY
        videos = self.search(query)
        if not videos or not videos[0]["video_file"]:
            logger.info("no stock footage for %r", query)
            return None
        best = videos[0]
        path = self.download(best["video_file"]["link"], output_dir / "stock_crowd.mp4")
        logger.info("stock footage %s -> %s", best["url"], path.name)
        return StockClip(
            file_path=path,
            thumbnail_url=best["image"],
            source_page_url=best["url"],
            duration=float(best["duration"] or 0),
            query=query,
        )


def validate_url(url: Any) -> bool:
    return isinstance(url, str) and bool(_URL_RE.match(url))


def parse_download_percent(line: str) -> Optional[int]:
    m = _DOWNLOAD_PCT_RE.search(line)
    if not m:
        return None
    return int(float(m.group(1)))


def trim_args(source: Path, output: Path, start: Optional[float], end: Optional[float]) -> list[str]:
    args: list[str] = []
    if start is not None:
        args += ["-ss", f"{start:g}"]
    args += ["-i", str(source)]
    if start is not None and end is not None:
        args += ["-t", f"{end - start:g}"]
    elif end is not None:
        args += ["-t", f"{end:g}"]
    args += ["-c", "copy", str(output)]
    return args


class RemoteVideoFetcher:
    """Pull a remote video with yt-dlp, then optionally stream-copy a window of it."""

    def __init__(
        self,
        transcoder: Transcoder,
        binary: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.transcoder = transcoder
        self.binary = binary or shutil.which("yt-dlp") or "yt-dlp"
        self.timeout = timeout if timeout and timeout > 0 else None

    def download(
        self,
        url: str,
        output_dir: Path,
        role: str = "clip",
        on_progress: Optional[Callable[[int], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> RemoteVideo:
        if not validate_url(url):
            raise DownloadError(f"Unsupported video URL: {url}")
        if cancel_event is not None and cancel_event.is_set():
            raise JobCancelled("yt-dlp: cancelled before start")
        output_dir.mkdir(parents=True, exist_ok=True)
        output = output_dir / f"remote_{role}.mp4"
        cmd = [
            self.binary,
            "-f", YTDLP_FORMAT,
            "--merge-output-format", "mp4",
            "--no-playlist",
            "--newline",
            "--print", "title",
            "-o", str(output),
            url,
        ]
        logger.debug("yt-dlp: %s", " ".join(cmd))
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        except OSError as exc:
            raise DownloadError(f"yt-dlp could not be started: {exc}") from exc
        if proc.stdout is None or proc.stderr is None:
            proc.kill()
            proc.wait()
            raise DownloadError("yt-dlp output pipes are unavailable")

        start_time = time.time()
        q: queue.Queue[str] = queue.Queue()
        err_tail: deque[str] = deque(maxlen=200)

        # both pipes are drained concurrently so a chatty stderr cannot block stdout
        def _out_reader():
            for line in proc.stdout:
                q.put(line)

        def _err_reader():
            for line in proc.stderr:
                line = line.rstrip()
                if line:
                    err_tail.append(line)

        to = threading.Thread(target=_out_reader, daemon=True)
        te = threading.Thread(target=_err_reader, daemon=True)
        to.start()
        te.start()

        title = ""
        last_pct = -1
        try:
            while True:
                if proc.poll() is not None and q.empty() and not to.is_alive():
                    break
                if cancel_event is not None and cancel_event.is_set():
                    proc.kill()
                    raise JobCancelled("yt-dlp: cancelled")
                if self.timeout is not None and time.time() - start_time > self.timeout:
                    proc.kill()
                    raise DownloadError(
                        f"yt-dlp exceeded {self.timeout:.0f}s timeout: {_tail(err_tail)}"
                    )
                try:
                    line = q.get(timeout=0.25)
                except queue.Empty:
                    continue

                pct = parse_download_percent(line)
                if pct is not None:
                    if on_progress and pct > last_pct:
                        last_pct = pct
                        on_progress(pct)
                    continue
                if not title and line.strip() and not line.startswith("["):
                    title = line.strip()
        finally:
            if proc.poll() is None:
                proc.kill()
            proc.wait()
            te.join(timeout=1)

        if proc.returncode != 0:
            raise DownloadError(f"yt-dlp exited with code {proc.returncode}: {_tail(err_tail)}")
        return RemoteVideo(file_path=output, title=title or "Unknown")

    def trim(
        self,
        source: Path,
        output: Path,
        start: Optional[float],
        end: Optional[float],
        cancel_event: Optional[threading.Event] = None,
    ) -> Path:
        """Cut ``[start, end)`` without re-encoding; returns ``source`` when no window is given."""
        if start is None and end is None:
            return source
        if start is not None and end is not None and end <= start:
            raise DownloadError(f"Trim window end ({end}) must be after start ({start})")
        transcoder = self.transcoder
        if cancel_event is not None:
            transcoder = CancellableTranscoder(transcoder, cancel_event)
        transcoder.run(TranscodeSpec(trim_args(source, output, start, end), label="trim download"))
        return output

    def fetch(
        self,
        url: str,
        output_dir: Path,
        role: str = "clip",
        start: Optional[float] = None,
        end: Optional[float] = None,
        on_progress: Optional[Callable[[int], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> RemoteVideo:
        video = self.download(url, output_dir, role=role, on_progress=on_progress, cancel_event=cancel_event)
        trimmed = self.trim(
            video.file_path, output_dir / f"remote_{role}_trimmed.mp4", start, end, cancel_event=cancel_event
        )
        return RemoteVideo(file_path=trimmed, title=video.title)


def _tail(lines: deque[str], n: int = 5) -> str:
    return "\n".join(list(lines)[-n:])
