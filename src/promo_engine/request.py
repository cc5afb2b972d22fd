"""What to render: three segments, their joins and the optional extras."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .analysis import CLIP_ROLES, Analysis, ColorGradeHint, KenBurnsHint, coerce_transition
from .compose import EXPORT_FORMATS
from .compositor import FIT_MODES
from .config import CAPTION_STYLES
from .errors import ValidationError

SEGMENT_COUNT = 3


@dataclass
class SegmentSpec:
    clip_role: str
    duration: float
    seek_to: float = 0.0
    caption: str = ""
    caption_style: Optional[str] = None
    speed: float = 1.0
    fit_mode: str = "crop"
    ken_burns: Optional[KenBurnsHint] = None
    color_grade: Optional[ColorGradeHint] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clipRole": self.clip_role,
            "duration": self.duration,
            "seekTo": self.seek_to,
            "caption": self.caption,
            "captionStyle": self.caption_style,
            "speed": self.speed,
            "fitMode": self.fit_mode,
            "kenBurns": (
                {"enabled": self.ken_burns.enabled, "direction": self.ken_burns.direction} if self.ken_burns else None
            ),
            "colorGrade": (
                {
                    "brightness": self.color_grade.brightness,
                    "contrast": self.color_grade.contrast,
                    "saturation": self.color_grade.saturation,
                }
                if self.color_grade
                else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SegmentSpec":
        kb = data.get("kenBurns")
        cg = data.get("colorGrade")
        if kb and not isinstance(kb, Mapping):
            raise ValidationError(f"Invalid segment: kenBurns must be an object, got {type(kb).__name__}")
        if cg and not isinstance(cg, Mapping):
            raise ValidationError(f"Invalid segment: colorGrade must be an object, got {type(cg).__name__}")
        try:
            return cls(
                clip_role=data.get("clipRole") or data.get("clipType"),
                duration=float(data["duration"]),
                seek_to=float(data.get("seekTo") or 0.0),
                caption=str(data.get("caption") or ""),
                caption_style=data.get("captionStyle"),
                speed=float(data.get("speed") or 1.0),
                fit_mode=data.get("fitMode") or "crop",
                ken_burns=KenBurnsHint(bool(kb.get("enabled")), kb.get("direction") or "in") if kb else None,
                color_grade=ColorGradeHint(
                    float(cg.get("brightness") or 0), float(cg.get("contrast") or 0), float(cg.get("saturation") or 0)
                )
                if cg
                else None,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid segment: {exc}") from exc


@dataclass
class RenderRequest:
    segments: List[SegmentSpec]
    transitions: List[str] = field(default_factory=lambda: ["fade", "fade"])
    artist_name: Optional[str] = None
    outro_lines: Optional[List[str]] = None
    caption_style: str = "fade"
    export_formats: List[str] = field(default_factory=list)
    make_thumbnail: bool = False
    beat_sync: Optional[bool] = None
    review: Optional[bool] = None

    def validate(self) -> None:
        """Reject structurally invalid requests before any work is done."""
        if len(self.segments) != SEGMENT_COUNT:
            raise ValidationError(f"Exactly {SEGMENT_COUNT} segments required")
        for i, seg in enumerate(self.segments):
            if seg.clip_role not in CLIP_ROLES:
                raise ValidationError(f"Segment {i} has unknown clip role {seg.clip_role!r}")
            if not seg.duration or seg.duration <= 0:
                raise ValidationError(f"Segment {i} duration must be positive")
            if seg.fit_mode not in FIT_MODES:
                raise ValidationError(f"Segment {i} fit mode must be one of {', '.join(FIT_MODES)}")
            if seg.caption_style and seg.caption_style not in CAPTION_STYLES:
                raise ValidationError(f"Segment {i} caption style must be one of {', '.join(CAPTION_STYLES)}")
        if self.caption_style not in CAPTION_STYLES:
            raise ValidationError(f"caption_style must be one of {', '.join(CAPTION_STYLES)}")
        for fmt in self.export_formats:
            if fmt not in EXPORT_FORMATS:
                raise ValidationError(f"Unknown export format {fmt!r}")
        if self.outro_lines is not None and len(self.outro_lines) > 4:
            raise ValidationError("Outro card takes at most 4 lines")

    def segment_transition_types(self) -> List[str]:
        """Inter-segment joins, coerced to the professional set and padded with fade."""
        types = [coerce_transition(t) for t in self.transitions[: SEGMENT_COUNT - 1]]
        return types + ["fade"] * (SEGMENT_COUNT - 1 - len(types))

    def style_for(self, index: int) -> str:
        return self.segments[index].caption_style or self.caption_style

    @classmethod
    def from_analysis(
        cls,
        analysis: Analysis,
        artist_name: Optional[str] = None,
        caption_style: str = "fade",
        **kwargs: Any,
    ) -> "RenderRequest":
        segments = [
            SegmentSpec(
                clip_role=s.clip_role,
                duration=s.duration,
                seek_to=s.start_time,
                caption=s.caption,
                ken_burns=analysis.ken_burns.get(s.clip_role),
                color_grade=analysis.color_grade.get(s.clip_role),
            )
            for s in analysis.segments
        ]
        outro = list(analysis.outro_lines) if any(analysis.outro_lines) else None
        return cls(
            segments=segments,
            transitions=[t.type for t in analysis.transitions],
            artist_name=artist_name or analysis.suggested_artist_name,
            outro_lines=outro,
            caption_style=caption_style,
            **kwargs,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RenderRequest":
        segments = [SegmentSpec.from_dict(s) for s in data.get("segments") or []]
        transitions = [t.get("type") if isinstance(t, Mapping) else t for t in data.get("transitions") or []]
        outro = data.get("outroLines")
        if isinstance(data.get("outroText"), str):
            outro = data["outroText"].split("\n")
        return cls(
            segments=segments,
            transitions=[str(t or "fade") for t in transitions],
            artist_name=data.get("artistName"),
            outro_lines=list(outro) if outro else None,
            caption_style=data.get("captionStyle") or "fade",
            export_formats=list(data.get("exportFormats") or []),
            make_thumbnail=bool(data.get("thumbnail")),
            beat_sync=data.get("beatSync"),
            review=data.get("review"),
        )


def fill_outro(lines: Optional[Sequence[str]], defaults: Sequence[str]) -> List[str]:
    """Pad to four lines, falling back per line to the configured defaults."""
    base = list(defaults) + [""] * (4 - len(defaults))
    given = list(lines or []) + [""] * (4 - len(lines or []))
    return [g or d for g, d in zip(given[:4], base[:4])]
