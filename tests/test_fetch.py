"""Tests for stock footage search and remote video helpers."""

from __future__ import annotations

import shutil
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List

import pytest
import requests

import conftest
from promo_engine.errors import DownloadError, JobCancelled
from promo_engine.fetch import (
    RemoteVideoFetcher,
    StockFootageClient,
    parse_download_percent,
    pick_best_file,
    trim_args,
    validate_url,
)


class _Response:
    def __init__(self, status_code: int = 200, payload: Any = None, body: bytes = b""):
        self.status_code = status_code
        self._payload = payload
        self._body = body
        self.text = str(payload)

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def iter_content(self, chunk_size: int = 1):
        yield self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class _Session:
    def __init__(self, responses: List[Any]):
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def get(self, url, **kwargs):
        self.calls.append({"url": url, **kwargs})
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


SEARCH_HIT = {
    "videos": [
        {
            "id": 7,
            "url": "https://www.pexels.com/video/7",
            "duration": 14,
            "image": "https://images.pexels.com/7.jpg",
            "video_files": [
                {"quality": "sd", "height": 960, "link": "https://cdn/sd.mp4"},
                {"quality": "hd", "height": 1920, "link": "https://cdn/hd.mp4"},
            ],
        }
    ]
}


def test_pick_best_file_prefers_hd_then_height():
    files = [
        {"quality": "sd", "height": 1280},
        {"quality": "hd", "height": 1280},
        {"quality": "hd", "height": 1920},
    ]
    assert pick_best_file(files) == {"quality": "hd", "height": 1920}
    assert pick_best_file([{"quality": "uhd", "height": 4000}]) == {"quality": "uhd", "height": 4000}
    assert pick_best_file([]) is None


def test_zero_results_is_not_found_not_an_error(tmp_path: Path):
    session = _Session([_Response(payload={"videos": []})])
    client = StockFootageClient(api_key="k", session=session)
    assert client.fetch("nothing here", tmp_path) is None
    assert session.calls[0]["params"]["query"] == "nothing here"
    assert session.calls[0]["headers"] == {"Authorization": "k"}


def test_fetch_downloads_first_hit(tmp_path: Path):
    session = _Session([_Response(payload=SEARCH_HIT), _Response(body=b"video-bytes")])
    clip = StockFootageClient(api_key="k", session=session).fetch(None, tmp_path)
    assert clip is not None
    assert clip.file_path == tmp_path / "stock_crowd.mp4"
    assert clip.file_path.read_bytes() == b"video-bytes"
    assert clip.duration == 14.0
    assert clip.query == "concert crowd cheering"
    assert session.calls[1]["url"] == "https://cdn/hd.mp4"


def test_missing_key_and_http_errors_raise(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("PEXELS_API_KEY", raising=False)
    with pytest.raises(DownloadError):
        StockFootageClient(session=_Session([])).search("crowd")
    with pytest.raises(DownloadError):
        StockFootageClient(api_key="k", session=_Session([_Response(status_code=401, payload={})])).search("crowd")
    with pytest.raises(DownloadError):
        StockFootageClient(api_key="k", session=_Session([requests.ConnectionError("down")])).search("crowd")


def test_validate_url_accepts_youtube_forms_only():
    assert validate_url("https://www.youtube.com/watch?v=abc_123")
    assert validate_url("https://youtu.be/abc-123")
    assert validate_url("https://youtube.com/shorts/xyz")
    assert not validate_url("https://vimeo.com/123")
    assert not validate_url(None)


def test_parse_download_percent():
    assert parse_download_percent("[download]  42.7% of 10.00MiB at 1.00MiB/s") == 42
    assert parse_download_percent("[info] something") is None


def test_trim_args_windows(tmp_path: Path):
    src, out = tmp_path / "a.mp4", tmp_path / "b.mp4"
    assert trim_args(src, out, 5, 12) == ["-ss", "5", "-i", str(src), "-t", "7", "-c", "copy", str(out)]
    assert trim_args(src, out, None, 8) == ["-i", str(src), "-t", "8", "-c", "copy", str(out)]


def test_trim_without_window_returns_source(tmp_path: Path):
    transcoder = conftest.FakeTranscoder()
    fetcher = RemoteVideoFetcher(transcoder, binary="yt-dlp")
    src = tmp_path / "a.mp4"
    assert fetcher.trim(src, tmp_path / "b.mp4", None, None) == src
    assert transcoder.specs == []
    with pytest.raises(DownloadError):
        fetcher.trim(src, tmp_path / "b.mp4", 10, 5)


def test_download_rejects_bad_url_before_spawning(tmp_path: Path):
    fetcher = RemoteVideoFetcher(conftest.FakeTranscoder(), binary="/nonexistent/yt-dlp")
    with pytest.raises(DownloadError, match="Unsupported"):
        fetcher.download("https://example.com/video", tmp_path)


needs_sh = pytest.mark.skipif(
    sys.platform == "win32" or shutil.which("sh") is None, reason="needs a POSIX shell"
)

VIDEO_URL = "https://www.youtube.com/watch?v=abc123"


def _fake_ytdlp(tmp_path: Path, body: str) -> str:
    """Write an executable stand-in for yt-dlp; ``$out`` is the ``-o`` target."""
    script = tmp_path / "fake-yt-dlp"
    script.write_text(
        "#!/bin/sh\n"
        'out=""\n'
        'while [ $# -gt 0 ]; do\n'
        '  if [ "$1" = "-o" ]; then out="$2"; shift; fi\n'
        "  shift\n"
        "done\n" + body
    )
    script.chmod(0o755)
    return str(script)


@needs_sh
def test_download_drains_large_stderr(tmp_path: Path):
    binary = _fake_ytdlp(
        tmp_path,
        "head -c 300000 /dev/zero | tr '\\0' x >&2\n"
        "echo >&2\n"
        'echo "Live at the Roxy"\n'
        'echo "[download] 100.0% of 1.00MiB"\n'
        ': > "$out"\n',
    )
    progress: List[int] = []
    fetcher = RemoteVideoFetcher(conftest.FakeTranscoder(), binary=binary, timeout=20)
    video = fetcher.download(VIDEO_URL, tmp_path / "dl", role="artist", on_progress=progress.append)
    assert video.title == "Live at the Roxy"
    assert video.file_path == tmp_path / "dl" / "remote_artist.mp4"
    assert video.file_path.exists()
    assert progress == [100]


@needs_sh
def test_download_failure_carries_stderr_tail(tmp_path: Path):
    binary = _fake_ytdlp(tmp_path, 'echo "ERROR: Video unavailable" >&2\nexit 1\n')
    fetcher = RemoteVideoFetcher(conftest.FakeTranscoder(), binary=binary, timeout=20)
    with pytest.raises(DownloadError, match="Video unavailable"):
        fetcher.download(VIDEO_URL, tmp_path / "dl")


@needs_sh
def test_download_times_out(tmp_path: Path):
    binary = _fake_ytdlp(tmp_path, "sleep 30\n")
    fetcher = RemoteVideoFetcher(conftest.FakeTranscoder(), binary=binary, timeout=0.5)
    with pytest.raises(DownloadError, match="timeout"):
        fetcher.download(VIDEO_URL, tmp_path / "dl")


@needs_sh
def test_download_stops_on_cancel(tmp_path: Path):
    binary = _fake_ytdlp(tmp_path, "sleep 30\n")
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    timer.start()
    fetcher = RemoteVideoFetcher(conftest.FakeTranscoder(), binary=binary, timeout=20)
    try:
        with pytest.raises(JobCancelled):
            fetcher.download(VIDEO_URL, tmp_path / "dl", cancel_event=cancel)
    finally:
        timer.cancel()


def test_fetch_binds_cancel_event_to_trim(tmp_path: Path):
    transcoder = conftest.FakeTranscoder()
    fetcher = RemoteVideoFetcher(transcoder, binary="yt-dlp")
    cancel = threading.Event()
    src = tmp_path / "a.mp4"
    fetcher.trim(src, tmp_path / "b.mp4", 1, 4, cancel_event=cancel)
    assert transcoder.specs[0].cancel_event is cancel
    cancel.set()
    with pytest.raises(JobCancelled):
        fetcher.trim(src, tmp_path / "c.mp4", 1, 4, cancel_event=cancel)
    assert len(transcoder.specs) == 1
