"""Final deliverables: captions and soundtrack over the draft, extra aspect
ratios, and the branded thumbnail.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence, Tuple

import numpy as np
from PIL import Image, ImageDraw

from .assets import BrandStyle, CaptionAnimation, caption_animation, load_font
from .transcoder import TranscodeSpec, Transcoder, encoder_args

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("square", "wide")


@dataclass(frozen=True)
class CaptionOverlay:
    image: Path
    start: float
    end: float
    style: str = "fade"


@dataclass(frozen=True)
class SoundtrackMix:
    audio: Path
    offset: float = 0.0
    fade_in: float = 1.0
    fade_out: float = 2.0
    volume: float = 0.5


def lipsync_offset(artist_seek: float, intro_duration: float, artist_segment_start: float) -> float:
    """Soundtrack start offset so the artist segment roughly plays in sync.

    ``artist_segment_start`` is measured from the end of the intro. This is
    a heuristic: the seek point was chosen for the picture, not the audio.
    """
    return max(0.0, float(artist_seek) - float(intro_duration) - float(artist_segment_start))


def soundtrack_filter(input_index: int, mix: SoundtrackMix, total: float, intro_duration: float) -> str:
    fade_out_start = max(0.0, total - mix.fade_out)
    return (
        f"[{input_index}:a]atrim=start={mix.offset:.3f}:duration={total:.3f},asetpts=PTS-STARTPTS,"
        f"afade=t=in:st=0:d={mix.fade_in + intro_duration:.3f},"
        f"afade=t=out:st={fade_out_start:.3f}:d={mix.fade_out:.3f},"
        f"volume={mix.volume}[aout]"
    )


def composite_args(
    video: Path,
    captions: Sequence[CaptionOverlay],
    output: Path,
    total: float,
    canvas_height: int,
    mix: Optional[SoundtrackMix] = None,
    intro_duration: float = 3.0,
    anim_duration: float = 0.4,
    anchor_y: float = 0.72,
    crf: int = 18,
    preset: str = "medium",
) -> list[str]:
    args = ["-i", str(video)]
    for cap in captions:
        args += ["-loop", "1", "-t", f"{total:.3f}", "-i", str(cap.image)]

    filters = []
    current = "0:v"
    for i, cap in enumerate(captions):
        anim: CaptionAnimation = caption_animation(cap.style, cap.start, cap.end, canvas_height, anim_duration, anchor_y)
        filters.append(f"[{i + 1}:v]{anim.prepare}[cap{i}]")
        out = f"v{i + 1}"
        filters.append(f"[{current}][cap{i}]overlay=x='{anim.x}':y='{anim.y}':enable='{anim.enable}'[{out}]")
        current = out
    if not filters:
        filters.append("[0:v]null[v0]")
        current = "v0"

    audio_index = 1 + len(captions)
    if mix is not None:
        args += ["-i", str(mix.audio)]
        filters.append(soundtrack_filter(audio_index, mix, total, intro_duration))

    args += ["-filter_complex", ";".join(filters), "-map", f"[{current}]"]
    if mix is not None:
        args += ["-map", "[aout]", "-c:a", "aac", "-b:a", "192k"]
    args += [*encoder_args(crf, preset), "-movflags", "+faststart", "-t", f"{total:.3f}", str(output)]
    return args


def square_export_args(master: Path, output: Path, offset_ratio: float = 0.4, crf: int = 18, preset: str = "medium") -> list[str]:
    return [
        "-i", str(master),
        "-vf", f"crop=iw:iw:0:(ih-iw)*{offset_ratio}",
        *encoder_args(crf, preset),
        "-c:a", "copy",
        "-movflags", "+faststart",
        str(output),
    ]


def wide_export_args(
    master: Path,
    output: Path,
    size: Tuple[int, int] = (1920, 1080),
    blur: float = 20.0,
    crf: int = 18,
    preset: str = "medium",
) -> list[str]:
    """Master centred over a blurred, cover-scaled copy of itself."""
    W, H = size
    bg = f"scale={W}:{H}:force_original_aspect_ratio=increase,crop={W}:{H}"
    if blur > 0:
        # blur a quarter-size copy, then scale back up
        bg = f"{bg},scale=iw*0.25:ih*0.25:flags=fast_bilinear,boxblur={int(blur)}:1,scale={W}:{H}:flags=fast_bilinear"
    fg = f"scale={W}:{H}:force_original_aspect_ratio=decrease"
    graph = (
        f"[0:v]split=2[fgsrc][bgsrc];"
        f"[bgsrc]{bg}[bg];"
        f"[fgsrc]{fg}[fg];"
        f"[bg][fg]overlay=(main_w-overlay_w)/2:(main_h-overlay_h)/2,setsar=1[v]"
    )
    return [
        "-i", str(master),
        "-filter_complex", graph,
        "-map", "[v]",
        "-map", "0:a?",
        *encoder_args(crf, preset),
        "-c:a", "copy",
        "-movflags", "+faststart",
        str(output),
    ]


class FinalComposer:
    def __init__(
        self,
        transcoder: Transcoder,
        size: Tuple[int, int],
        crf: int = 18,
        preset: str = "medium",
        anim_duration: float = 0.4,
        anchor_y: float = 0.72,
    ):
        self.transcoder = transcoder
        self.size = size
        self.crf = crf
        self.preset = preset
        self.anim_duration = anim_duration
        self.anchor_y = anchor_y

    def composite(
        self,
        video: Path,
        captions: Sequence[CaptionOverlay],
        output: Path,
        total: float,
        mix: Optional[SoundtrackMix],
        intro_duration: float,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> Path:
        args = composite_args(
            video,
            captions,
            output,
            total,
            self.size[1],
            mix,
            intro_duration,
            self.anim_duration,
            self.anchor_y,
            self.crf,
            self.preset,
        )
        self.transcoder.run(TranscodeSpec(args, label="composite", expected_duration=total, on_progress=on_progress))
        return output

    def export(self, fmt: str, master: Path, output: Path, square_offset: float = 0.4, wide_size=(1920, 1080), wide_blur: float = 20.0) -> Path:
        if fmt == "square":
            args = square_export_args(master, output, square_offset, self.crf, self.preset)
        elif fmt == "wide":
            args = wide_export_args(master, output, tuple(wide_size), wide_blur, self.crf, self.preset)
        else:
            raise ValueError(f"Unknown export format: {fmt}")
        self.transcoder.run(TranscodeSpec(args, label=f"export {fmt}"))
        return output


def grab_frame(video: Path, timestamp: float) -> np.ndarray:
    """RGB frame at ``timestamp`` (clamped into the clip)."""
    from moviepy.video.io.VideoFileClip import VideoFileClip

    clip = VideoFileClip(str(video), audio=False)
    try:
        t = min(max(0.0, float(timestamp)), max(0.0, float(clip.duration) - 0.05))
        return clip.get_frame(t)
    finally:
        clip.close()


def cover_image(img: Image.Image, size: Tuple[int, int]) -> Image.Image:
    W, H = size
    scale = max(W / img.width, H / img.height)
    resized = img.resize((max(W, round(img.width * scale)), max(H, round(img.height * scale))), Image.LANCZOS)
    left = (resized.width - W) // 2
    top = (resized.height - H) // 2
    return resized.crop((left, top, left + W, top + H))


def render_thumbnail(
    frame: np.ndarray,
    output: Path,
    size: Tuple[int, int],
    brand: BrandStyle,
    title: Optional[str] = None,
) -> Path:
    """Hero frame with a navy brand band across the bottom."""
    W, H = size
    img = cover_image(Image.fromarray(np.asarray(frame, dtype=np.uint8)).convert("RGB"), size)

    band_h = round(H * 0.16)
    band = Image.new("RGBA", (W, band_h), brand.navy + "e6")
    img.paste(band, (0, H - band_h), band)

    draw = ImageDraw.Draw(img)
    draw.line([(0, H - band_h), (W, H - band_h)], fill=brand.gold, width=max(2, W // 270))
    cx = W // 2
    if title:
        title_font = load_font(brand.bold_font, round(W * 0.06))
        draw.text((cx, H - band_h + round(band_h * 0.42)), title.upper(), font=title_font, fill=brand.white, anchor="mm")
        brand_y = H - band_h + round(band_h * 0.78)
    else:
        brand_y = H - band_h // 2
    draw.text((cx, brand_y), brand.brand_name, font=load_font(brand.font, round(W * 0.035), bold=False), fill=brand.gold, anchor="mm")

    output.parent.mkdir(parents=True, exist_ok=True)
    img.save(output, format="JPEG", quality=90)
    return output
