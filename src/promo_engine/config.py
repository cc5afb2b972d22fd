from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, Iterable

import yaml

from .presets import PRESETS, merge_preset

_RESOLUTION_RE = re.compile(r"^(\d{2,5})x(\d{2,5})$")
_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")

PATH_KEYS = {"workdir", "history_file", "font", "bold_font"}

BOOL_KEYS = {"review_enabled", "beat_sync"}

INT_KEYS = {
    "fps",
    "crf",
    "caption_font_size",
    "caption_stroke",
    "review_max_retries",
    "stock_per_page",
    "analysis_frames",
    "style_guide_window",
    "history_cap",
    "vision_max_tokens",
}

FLOAT_KEYS = {
    "step_timeout",
    "intro_duration",
    "outro_duration",
    "transition_duration",
    "card_transition_duration",
    "caption_position_y",
    "caption_animation_duration",
    "music_volume",
    "music_fade_in",
    "music_fade_out",
    "speed_min",
    "speed_max",
    "ken_burns_max_zoom",
    "min_segment_duration",
    "beat_max_shift",
    "review_frame_margin",
    "square_offset_ratio",
    "wide_blur",
}

COLOR_KEYS = {"color_navy", "color_gold", "color_white", "pad_color"}

STRING_KEYS = {
    "preset",
    "encoder_preset",
    "brand_name",
    "intro_tagline",
    "card_transition_type",
    "caption_style",
    "stock_default_query",
    "stock_orientation",
    "vision_model",
}

RESOLUTION_KEYS = {"resolution", "wide_resolution"}

CONFIG_KEYS = (
    PATH_KEYS
    | BOOL_KEYS
    | INT_KEYS
    | FLOAT_KEYS
    | COLOR_KEYS
    | STRING_KEYS
    | RESOLUTION_KEYS
    | {"outro_lines"}
)

CAPTION_STYLES = ("fade", "slideUp", "slideDown", "fadeSlide", "scaleBounce")

CONFIG_PRINT_ORDER = [
    "preset",
    "workdir",
    "resolution",
    "fps",
    "crf",
    "encoder_preset",
    "intro_duration",
    "outro_duration",
    "transition_duration",
    "card_transition_duration",
    "card_transition_type",
    "caption_style",
    "music_volume",
    "beat_sync",
    "review_enabled",
    "review_max_retries",
    "step_timeout",
]


def build_config_defaults() -> Dict[str, Any]:
    full = PRESETS["full"]
    return {
        "preset": None,
        "workdir": Path("./jobs"),
        "history_file": Path("./edit-history.json"),
        "font": None,
        "bold_font": None,
        "resolution": full["resolution"],
        "fps": 30,
        "crf": full["crf"],
        "encoder_preset": full["encoder_preset"],
        "step_timeout": 600.0,
        "color_navy": "#1a3a6b",
        "color_gold": "#c9a227",
        "color_white": "#ffffff",
        "pad_color": "#1a3a6b",
        "brand_name": "GAUNTLET GALLERY",
        "intro_tagline": "BROUGHT TO YOU BY",
        "intro_duration": 3.0,
        "outro_duration": 4.0,
        "transition_duration": 0.5,
        "card_transition_duration": 1.0,
        "card_transition_type": "dissolve",
        "outro_lines": [
            "BROWSE THE FULL COLLECTION",
            "AUTHENTICATED GUITARS",
            "GAUNTLET GALLERY",
            "",
        ],
        "caption_font_size": 55,
        "caption_stroke": 3,
        "caption_position_y": 0.72,
        "caption_animation_duration": 0.4,
        "caption_style": "fade",
        "music_volume": 0.5,
        "music_fade_in": 1.0,
        "music_fade_out": 2.0,
        "speed_min": 0.7,
        "speed_max": 1.3,
        "ken_burns_max_zoom": 1.15,
        "min_segment_duration": 2.0,
        "beat_max_shift": 0.5,
        "beat_sync": True,
        "review_enabled": True,
        "review_max_retries": 1,
        "review_frame_margin": 0.3,
        "stock_default_query": "concert crowd cheering",
        "stock_per_page": 3,
        "stock_orientation": "portrait",
        "analysis_frames": 5,
        "style_guide_window": 20,
        "history_cap": 50,
        "square_offset_ratio": 0.4,
        "wide_resolution": (1920, 1080),
        "wide_blur": 20.0,
        "vision_model": "claude-sonnet-4-20250514",
        "vision_max_tokens": 2048,
    }


def load_yaml_config(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping")
    return normalize_config(data, path)


def normalize_config(raw: Dict[str, Any], config_path: Path) -> Dict[str, Any]:
    normalized: Dict[str, Any] = {}
    base_dir = config_path.parent

    for key, value in raw.items():
        if not isinstance(key, str):
            raise ValueError("Config keys must be strings")
        norm_key = key.strip().lower().replace("-", "_")
        if norm_key not in CONFIG_KEYS:
            raise ValueError(f"Unknown config key: {key}")

        if norm_key in PATH_KEYS:
            if value is None:
                normalized[norm_key] = None
                continue
            if not isinstance(value, str):
                raise ValueError(f"Config key {key} must be a string path")
            normalized[norm_key] = _resolve_path(Path(value), base_dir)
            continue

        if norm_key in RESOLUTION_KEYS:
            normalized[norm_key] = _parse_resolution_value(value)
            continue

        if norm_key in BOOL_KEYS:
            if not isinstance(value, bool):
                raise ValueError(f"Config key {key} must be a boolean")
            normalized[norm_key] = value
            continue

        if norm_key in INT_KEYS:
            normalized[norm_key] = _parse_int_value(key, value)
            continue

        if norm_key in FLOAT_KEYS:
            normalized[norm_key] = _parse_float_value(key, value)
            continue

        if norm_key in COLOR_KEYS:
            if not isinstance(value, str) or not _COLOR_RE.match(value.strip()):
                raise ValueError(f"Config key {key} must be a #rrggbb colour")
            normalized[norm_key] = value.strip().lower()
            continue

        if norm_key == "outro_lines":
            normalized[norm_key] = _parse_outro_lines(key, value)
            continue

        if norm_key in STRING_KEYS:
            if value is None:
                normalized[norm_key] = None
                continue
            if not isinstance(value, str):
                raise ValueError(f"Config key {key} must be a string")
            if norm_key == "caption_style" and value not in CAPTION_STYLES:
                raise ValueError(f"caption_style must be one of {', '.join(CAPTION_STYLES)}")
            normalized[norm_key] = value
            continue

    return normalized


def build_effective_config(
    base: Dict[str, Any],
    preset_name: str | None,
    config_values: Dict[str, Any],
    cli_values: Dict[str, Any],
    cli_provided: Iterable[str],
) -> Dict[str, Any]:
    effective = merge_preset(preset_name, base, provided=set())
    effective["preset"] = preset_name

    for key, value in config_values.items():
        if key == "preset":
            continue
        if value is not None:
            effective[key] = value

    for key in cli_provided:
        if key in cli_values:
            effective[key] = cli_values[key]

    return effective


def format_effective_config(effective: Dict[str, Any]) -> Dict[str, Any]:
    output: Dict[str, Any] = {}
    for key in CONFIG_PRINT_ORDER:
        if key not in effective:
            continue
        value = effective[key]
        if isinstance(value, Path):
            output[key] = str(value)
        elif isinstance(value, tuple) and len(value) == 2:
            output[key] = f"{value[0]}x{value[1]}"
        else:
            output[key] = value
    return output


def _resolve_path(path: Path, base_dir: Path) -> Path:
    if path.is_absolute():
        return path
    return (base_dir / path).resolve(strict=False)


def _parse_resolution_value(value: Any) -> tuple[int, int] | None:
    if value is None:
        return None
    if isinstance(value, str):
        m = _RESOLUTION_RE.match(value.strip())
        if not m:
            raise ValueError("resolution must be in WIDTHxHEIGHT format, e.g. 1080x1920")
        return int(m.group(1)), int(m.group(2))
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return int(value[0]), int(value[1])
    if isinstance(value, dict) and "width" in value and "height" in value:
        return int(value["width"]), int(value["height"])
    raise ValueError("resolution must be WIDTHxHEIGHT string or [width, height]")


def _parse_outro_lines(name: str, value: Any) -> list[str]:
    if isinstance(value, str):
        lines = value.split("\n")
    elif isinstance(value, (list, tuple)):
        lines = ["" if v is None else str(v) for v in value]
    else:
        raise ValueError(f"Config key {name} must be a list of strings or newline-separated text")
    if len(lines) > 4:
        raise ValueError(f"Config key {name} accepts at most 4 lines")
    return lines + [""] * (4 - len(lines))


def _parse_float_value(name: str, value: Any) -> float:
    try:
        return float(value)
    except Exception as exc:
        raise ValueError(f"Config key {name} must be a number") from exc


def _parse_int_value(name: str, value: Any) -> int:
    try:
        return int(value)
    except Exception as exc:
        raise ValueError(f"Config key {name} must be an integer") from exc
