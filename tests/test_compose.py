"""Tests for final compositing, extra exports and thumbnails."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
from PIL import Image

import conftest
from promo_engine.assets import BrandStyle
from promo_engine.compose import (
    CaptionOverlay,
    FinalComposer,
    SoundtrackMix,
    composite_args,
    cover_image,
    lipsync_offset,
    render_thumbnail,
    soundtrack_filter,
    square_export_args,
    wide_export_args,
)


def test_lipsync_offset_never_negative():
    assert lipsync_offset(20.0, 3.0, 0.0) == pytest.approx(17.0)
    assert lipsync_offset(20.0, 3.0, 9.5) == pytest.approx(7.5)
    assert lipsync_offset(2.0, 3.0, 0.0) == 0.0


def test_soundtrack_filter_trims_fades_and_levels():
    f = soundtrack_filter(3, SoundtrackMix(Path("a.m4a"), offset=4.0, volume=0.5), 30.0, 3.0)
    assert f.startswith("[3:a]atrim=start=4.000:duration=30.000")
    assert "afade=t=in:st=0:d=4.000" in f
    assert "afade=t=out:st=28.000:d=2.000" in f
    assert f.endswith("volume=0.5[aout]")


def test_composite_overlays_each_caption_in_its_window(tmp_path: Path):
    caps = [
        CaptionOverlay(tmp_path / "c0.png", 3.0, 12.0, "slideUp"),
        CaptionOverlay(tmp_path / "c1.png", 12.0, 20.0, "fade"),
    ]
    mix = SoundtrackMix(tmp_path / "audio.m4a")
    args = composite_args(tmp_path / "concat.mp4", caps, tmp_path / "final.mp4", 30.0, 1920, mix)
    graph = args[args.index("-filter_complex") + 1]
    assert "[0:v][cap0]overlay=" in graph
    assert "[v1][cap1]overlay=" in graph
    assert "enable='between(t,12.000,20.000)'" in graph
    assert args[args.index("-map") + 1] == "[v2]"
    assert "[aout]" in args
    assert args[args.index("-t", args.index("-filter_complex")) + 1] == "30.000"
    assert "+faststart" in args


def test_composite_without_captions_or_audio(tmp_path: Path):
    args = composite_args(tmp_path / "concat.mp4", [], tmp_path / "final.mp4", 10.0, 1920)
    assert args[args.index("-filter_complex") + 1] == "[0:v]null[v0]"
    assert "[aout]" not in args


def test_square_and_wide_exports(tmp_path: Path):
    square = square_export_args(tmp_path / "m.mp4", tmp_path / "s.mp4", 0.4)
    assert square[square.index("-vf") + 1] == "crop=iw:iw:0:(ih-iw)*0.4"
    wide = wide_export_args(tmp_path / "m.mp4", tmp_path / "w.mp4", (1920, 1080), 20)
    graph = wide[wide.index("-filter_complex") + 1]
    assert "boxblur=20:1" in graph
    assert "force_original_aspect_ratio=decrease" in graph


def test_composer_rejects_unknown_format(tmp_path: Path):
    composer = FinalComposer(conftest.FakeTranscoder(), (1080, 1920))
    with pytest.raises(ValueError):
        composer.export("cinema", tmp_path / "m.mp4", tmp_path / "x.mp4")
    out = composer.export("square", tmp_path / "m.mp4", tmp_path / "s.mp4")
    assert out.exists()


def test_cover_image_fills_target():
    img = Image.new("RGB", (1920, 1080), "red")
    covered = cover_image(img, (270, 480))
    assert covered.size == (270, 480)


def test_thumbnail_has_brand_band(tmp_path: Path):
    frame = np.full((1080, 1920, 3), 255, dtype=np.uint8)
    out = render_thumbnail(frame, tmp_path / "thumb.jpg", (270, 480), BrandStyle(), "Jane Doe")
    with Image.open(out) as img:
        assert img.format == "JPEG"
        assert img.size == (270, 480)
        r, g, b = img.getpixel((2, 478))
        assert b > r  # navy band over a white frame
