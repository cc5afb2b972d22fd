"""Branded still graphics (intro card, outro card, captions) and caption motion.

Every image is a pure function of its text, canvas size and ``BrandStyle``:
rendering the same inputs twice yields byte-identical PNGs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from PIL import Image, ImageDraw, ImageFilter, ImageFont

logger = logging.getLogger(__name__)

CAPTION_WRAP_CHARS = 20
REFERENCE_WIDTH = 1080

_FALLBACK_FONTS = ("DejaVuSans-Bold.ttf", "Arial Bold.ttf", "arialbd.ttf", "LiberationSans-Bold.ttf")
_FALLBACK_REGULAR = ("DejaVuSans.ttf", "Arial.ttf", "arial.ttf", "LiberationSans-Regular.ttf")


@dataclass(frozen=True)
class BrandStyle:
    navy: str = "#1a3a6b"
    gold: str = "#c9a227"
    white: str = "#ffffff"
    brand_name: str = "GAUNTLET GALLERY"
    intro_tagline: str = "BROUGHT TO YOU BY"
    font: Optional[str] = None
    bold_font: Optional[str] = None
    caption_font_size: int = 55
    caption_stroke: int = 3
    caption_position_y: float = 0.72

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "BrandStyle":
        return cls(
            navy=cfg["color_navy"],
            gold=cfg["color_gold"],
            white=cfg["color_white"],
            brand_name=cfg["brand_name"],
            intro_tagline=cfg["intro_tagline"],
            font=str(cfg["font"]) if cfg.get("font") else None,
            bold_font=str(cfg["bold_font"]) if cfg.get("bold_font") else None,
            caption_font_size=int(cfg["caption_font_size"]),
            caption_stroke=int(cfg["caption_stroke"]),
            caption_position_y=float(cfg["caption_position_y"]),
        )


def load_font(path: Optional[str], size: int, bold: bool = True) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    candidates = ([path] if path else []) + list(_FALLBACK_FONTS if bold else _FALLBACK_REGULAR)
    for name in candidates:
        try:
            return ImageFont.truetype(name, size)
        except OSError:
            continue
    logger.debug("no TrueType font found, using Pillow's built-in font")
    return ImageFont.load_default(size=size)


def wrap_text(text: str, max_chars: int = CAPTION_WRAP_CHARS) -> List[str]:
    lines: List[str] = []
    current = ""
    for word in text.split():
        if current and len(current) + len(word) + 1 > max_chars:
            lines.append(current)
            current = word
        else:
            current = f"{current} {word}" if current else word
    if current:
        lines.append(current)
    return lines


def _centered(draw: ImageDraw.ImageDraw, cx: int, y: int, text: str, font, fill: str, **kwargs) -> None:
    # y is the text baseline, matching how the cards are laid out
    draw.text((cx, y), text, font=font, fill=fill, anchor="ms", **kwargs)


def _gold_rule(draw: ImageDraw.ImageDraw, cx: int, y: int, half: int, color: str, width: int) -> None:
    draw.line([(cx - half, y), (cx + half, y)], fill=color, width=width)


def render_intro_card(output: Path, size: Tuple[int, int], brand: BrandStyle) -> Path:
    width, height = size
    font_size = round(width * 0.058)
    small_size = round(width * 0.038)
    half = round(width * 0.55) // 2
    cx = width // 2
    cy = round(height * 0.47)
    line1_y = cy - round(font_size * 0.3)
    line2_y = cy + round(font_size * 1.6)

    img = Image.new("RGB", (width, height), brand.navy)
    draw = ImageDraw.Draw(img)
    _gold_rule(draw, cx, line1_y - round(font_size * 1.2), half, brand.gold, 3)
    _centered(draw, cx, line1_y, brand.intro_tagline, load_font(brand.font, small_size, bold=False), brand.gold)
    _centered(draw, cx, line2_y, brand.brand_name, load_font(brand.bold_font, font_size), brand.white)
    _gold_rule(draw, cx, line2_y + round(font_size * 0.8), half, brand.gold, 3)
    return _save_png(img, output)


def render_outro_card(output: Path, size: Tuple[int, int], brand: BrandStyle, lines: Sequence[str]) -> Path:
    """Call-to-action card: two gold lines, a rule, the brand line and an optional tagline."""
    width, height = size
    padded = list(lines) + [""] * (4 - len(lines))
    cta, type_line, brand_line, tag = padded[:4]
    brand_line = brand_line or brand.brand_name

    large = round(width * 0.055)
    small = round(width * 0.032)
    tiny = round(width * 0.025)
    half = round(width * 0.55) // 2
    cx = width // 2
    cy = round(height * 0.45)

    img = Image.new("RGB", (width, height), brand.navy)
    draw = ImageDraw.Draw(img)
    small_font = load_font(brand.font, small, bold=False)
    if cta:
        _centered(draw, cx, cy - round(large * 1.8), cta, small_font, brand.gold)
    if type_line:
        _centered(draw, cx, cy - round(large * 0.6), type_line, small_font, brand.gold)
    _gold_rule(draw, cx, cy + round(large * 0.2), half, brand.gold, 2)
    brand_y = cy + round(large * 1.4)
    _centered(draw, cx, brand_y, brand_line, load_font(brand.bold_font, large), brand.white)
    if tag:
        _centered(draw, cx, brand_y + large, tag, load_font(brand.font, tiny, bold=False), brand.gold)
    return _save_png(img, output)


def render_caption(output: Path, text: str, size: Tuple[int, int], brand: BrandStyle) -> Path:
    """Transparent full-canvas PNG with outlined, shadowed caption text in the lower third."""
    width, height = size
    scale = width / REFERENCE_WIDTH
    font_size = max(8, round(brand.caption_font_size * scale))
    stroke = max(1, round(brand.caption_stroke * scale))
    line_height = round(font_size * 1.35)
    font = load_font(brand.bold_font, font_size)
    lines = wrap_text(text.upper())
    cx = width // 2
    start_y = round(height * brand.caption_position_y)

    text_layer = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    draw = ImageDraw.Draw(text_layer)
    for i, line in enumerate(lines):
        _centered(
            draw, cx, start_y + line_height * i, line, font, "#ffffff",
            stroke_width=stroke * 2, stroke_fill="#000000",
        )

    # drop shadow: blurred copy of the alpha mask, offset by 3px at 70% opacity
    alpha = text_layer.getchannel("A")
    shadow_alpha = alpha.filter(ImageFilter.GaussianBlur(5)).point(lambda a: int(a * 0.7))
    shadow = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    shadow.paste((0, 0, 0, 255), (0, 0), shadow_alpha)
    offset = max(1, round(3 * scale))
    canvas = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    canvas.alpha_composite(shadow, dest=(offset, offset), source=(0, 0, width - offset, height - offset))
    canvas.alpha_composite(text_layer)
    return _save_png(canvas, output)


def render_captions(output_dir: Path, captions: Sequence[str], size: Tuple[int, int], brand: BrandStyle) -> List[Optional[Path]]:
    """One caption PNG per segment; empty captions yield None."""
    output_dir.mkdir(parents=True, exist_ok=True)
    paths: List[Optional[Path]] = []
    for i, text in enumerate(captions):
        if not text or not text.strip():
            paths.append(None)
            continue
        paths.append(render_caption(output_dir / f"caption_{i}.png", text, size, brand))
    return paths


def _save_png(img: Image.Image, output: Path) -> Path:
    output.parent.mkdir(parents=True, exist_ok=True)
    img.save(output, format="PNG", optimize=False)
    return output


@dataclass(frozen=True)
class CaptionAnimation:
    """ffmpeg pieces animating one full-canvas caption image.

    ``prepare`` is applied to the looped caption input, ``x``/``y`` go to
    the overlay filter and ``enable`` limits it to the on-screen window.
    """

    prepare: str
    x: str
    y: str
    enable: str


def caption_animation(
    style: str,
    start: float,
    end: float,
    canvas_height: int,
    anim_duration: float = 0.4,
    anchor_y: float = 0.72,
) -> CaptionAnimation:
    """Map a named caption style onto overlay expressions.

    All styles share the alpha fade-in at ``start`` and fade-out before
    ``end``; ``slideUp``/``slideDown`` travel in from below/above,
    ``fadeSlide`` drifts half that distance and ``scaleBounce`` grows from
    80% with a short overshoot around the caption's anchor line.
    """
    a = max(0.01, min(anim_duration, (end - start) / 2.0))
    s = f"{start:.3f}"
    fade = (
        f"format=rgba,"
        f"fade=t=in:st={s}:d={a:.3f}:alpha=1,"
        f"fade=t=out:st={end - a:.3f}:d={a:.3f}:alpha=1"
    )
    enable = f"between(t,{start:.3f},{end:.3f})"
    progress = f"clip((t-{s})/{a:.3f},0,1)"
    distance = round(canvas_height * 0.05)

    if style == "slideUp":
        return CaptionAnimation(fade, "0", f"{distance}*(1-{progress})", enable)
    if style == "slideDown":
        return CaptionAnimation(fade, "0", f"-{distance}*(1-{progress})", enable)
    if style == "fadeSlide":
        return CaptionAnimation(fade, "0", f"{distance // 2}*(1-{progress})", enable)
    if style == "scaleBounce":
        factor = f"(0.8+0.2*{progress}+0.15*sin(PI*{progress}))"
        scale = f"scale=w='iw*{factor}':h='ih*{factor}':eval=frame"
        return CaptionAnimation(
            f"{fade},{scale}",
            "(W-w)/2",
            f"{anchor_y}*(H-h)",
            enable,
        )
    return CaptionAnimation(fade, "0", "0", enable)
