"""Scene analysis: vision-model creative direction for a music-video job.

The model's reply is parsed into ``Analysis`` and validated before anything
downstream trusts it. Structural problems (no JSON, missing keys, wrong
segment count) raise ``AnalysisError``; numbers that are merely out of range
are clamped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import AnalysisError, VisionServiceError
from .frames import Frame, extract_keyframes
from .history import EditHistoryStore
from .probe import MediaInfo
from .transcoder import Transcoder
from .vision import VisionClient, image_block, text_block

logger = logging.getLogger(__name__)

CLIP_ROLES = ("artist", "guitar", "crowd")

PROFESSIONAL_TRANSITIONS = (
    "fade",
    "dissolve",
    "wipeleft",
    "wiperight",
    "slideup",
    "slidedown",
    "smoothleft",
    "smoothright",
)

# Clip length assumed for a crowd slot that has not been fetched yet.
UNFETCHED_CROWD_DURATION = 30.0

GRADE_LIMITS = {"brightness": 0.2, "contrast": 0.3, "saturation": 0.5}


def coerce_transition(value: Any) -> str:
    """Professional transition name, or ``fade`` for anything else."""
    if isinstance(value, str) and value.strip().lower() in PROFESSIONAL_TRANSITIONS:
        return value.strip().lower()
    return "fade"


@dataclass
class Mood:
    genre: str = ""
    energy: str = ""
    description: str = ""
    search_query: str = ""


@dataclass
class SegmentSuggestion:
    clip_role: str
    start_time: float
    duration: float
    caption: str = ""
    caption_reason: str = ""
    trim_reason: str = ""


@dataclass
class TransitionSuggestion:
    from_role: str
    to_role: str
    type: str = "fade"
    reason: str = ""


@dataclass
class KenBurnsHint:
    enabled: bool = False
    direction: str = "in"


@dataclass
class ColorGradeHint:
    brightness: float = 0.0
    contrast: float = 0.0
    saturation: float = 0.0

    @property
    def is_neutral(self) -> bool:
        return self.brightness == 0 and self.contrast == 0 and self.saturation == 0


@dataclass
class HeroFrame:
    clip_role: str = "artist"
    timestamp: float = 0.0


@dataclass
class Analysis:
    mood: Mood
    segments: List[SegmentSuggestion]
    transitions: List[TransitionSuggestion]
    segment_order: List[str] = field(default_factory=lambda: list(CLIP_ROLES))
    order_reason: str = ""
    overall_notes: str = ""
    suggested_artist_name: Optional[str] = None
    guitar_type: str = ""
    outro_lines: List[str] = field(default_factory=list)
    ken_burns: Dict[str, KenBurnsHint] = field(default_factory=dict)
    color_grade: Dict[str, ColorGradeHint] = field(default_factory=dict)
    hero_frame: Optional[HeroFrame] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Analysis":
        """Validate a raw model reply (or a persisted analysis)."""
        if not isinstance(data, Mapping):
            raise AnalysisError("Analysis must be a JSON object")
        for key in ("mood", "segments", "transitions"):
            if key not in data:
                raise AnalysisError(f"Analysis is missing required key '{key}'")

        mood_raw = data["mood"]
        if not isinstance(mood_raw, Mapping):
            raise AnalysisError("Analysis 'mood' must be an object")
        mood = Mood(
            genre=_text(mood_raw.get("genre")),
            energy=_text(mood_raw.get("energy")),
            description=_text(mood_raw.get("description")),
            search_query=_text(mood_raw.get("searchQuery") or mood_raw.get("pexelsQuery")),
        )

        segments_raw = data["segments"]
        if not isinstance(segments_raw, list) or len(segments_raw) != len(CLIP_ROLES):
            raise AnalysisError(f"Analysis must contain exactly {len(CLIP_ROLES)} segments")
        segments = [_parse_segment(i, s) for i, s in enumerate(segments_raw)]
        roles = [s.clip_role for s in segments]
        if sorted(roles) != sorted(CLIP_ROLES):
            raise AnalysisError(f"Segments must cover each clip role once, got {roles}")

        order = data.get("segmentOrder")
        if isinstance(order, list) and sorted(order) == sorted(CLIP_ROLES):
            by_role = {s.clip_role: s for s in segments}
            segments = [by_role[r] for r in order]
            order = list(order)
        else:
            order = [s.clip_role for s in segments]

        transitions_raw = data["transitions"]
        if not isinstance(transitions_raw, list):
            raise AnalysisError("Analysis 'transitions' must be a list")
        transitions = []
        for i in range(len(segments) - 1):
            raw = transitions_raw[i] if i < len(transitions_raw) and isinstance(transitions_raw[i], Mapping) else {}
            transitions.append(
                TransitionSuggestion(
                    from_role=segments[i].clip_role,
                    to_role=segments[i + 1].clip_role,
                    type=_text(raw.get("type")) or "fade",
                    reason=_text(raw.get("reason")),
                )
            )

        outro_raw = data.get("outro")
        outro_lines: List[str] = []
        if isinstance(outro_raw, Mapping):
            outro_lines = [_text(outro_raw.get(f"line{n}")) for n in range(1, 5)]

        hero = None
        hero_raw = data.get("heroFrame")
        if isinstance(hero_raw, Mapping):
            role = hero_raw.get("clipRole") or hero_raw.get("clipType")
            hero = HeroFrame(
                clip_role=role if role in CLIP_ROLES else "artist",
                timestamp=max(0.0, _number(hero_raw.get("timestamp"), "heroFrame.timestamp", default=0.0)),
            )

        artist_name = data.get("suggestedArtistName")
        return cls(
            mood=mood,
            segments=segments,
            transitions=transitions,
            segment_order=order,
            order_reason=_text(data.get("orderReason")),
            overall_notes=_text(data.get("overallNotes")),
            suggested_artist_name=artist_name if isinstance(artist_name, str) and artist_name else None,
            guitar_type=_text(data.get("guitarType")),
            outro_lines=outro_lines,
            ken_burns=_parse_ken_burns(data.get("kenBurns")),
            color_grade=_parse_color_grade(data.get("colorGrade")),
            hero_frame=hero,
        )

    def clamp_to_clips(self, clip_durations: Mapping[str, float]) -> "Analysis":
        """Return a copy whose trims and hero frame fit inside the probed clips.

        Roles without a probed duration (an unfetched crowd clip) are treated
        as 30 second clips.
        """
        segments = []
        for seg in self.segments:
            clip_dur = float(clip_durations.get(seg.clip_role) or UNFETCHED_CROWD_DURATION)
            duration = min(seg.duration, clip_dur)
            start = seg.start_time
            if start + duration > clip_dur:
                start = max(0.0, clip_dur - duration)
            segments.append(replace(seg, start_time=max(0.0, start), duration=duration))

        hero = self.hero_frame
        if hero is not None:
            clip_dur = float(clip_durations.get(hero.clip_role) or UNFETCHED_CROWD_DURATION)
            hero = replace(hero, timestamp=min(max(0.0, hero.timestamp), clip_dur))
        return replace(self, segments=segments, hero_frame=hero)

    def to_dict(self) -> Dict[str, Any]:
        """Serialise in the same shape the model replies with."""
        return {
            "mood": {
                "genre": self.mood.genre,
                "energy": self.mood.energy,
                "description": self.mood.description,
                "searchQuery": self.mood.search_query,
            },
            "segments": [
                {
                    "clipRole": s.clip_role,
                    "startTime": s.start_time,
                    "duration": s.duration,
                    "caption": s.caption,
                    "captionReason": s.caption_reason,
                    "trimReason": s.trim_reason,
                }
                for s in self.segments
            ],
            "segmentOrder": list(self.segment_order),
            "orderReason": self.order_reason,
            "transitions": [
                {"from": t.from_role, "to": t.to_role, "type": t.type, "reason": t.reason} for t in self.transitions
            ],
            "overallNotes": self.overall_notes,
            "suggestedArtistName": self.suggested_artist_name,
            "guitarType": self.guitar_type,
            "outro": {f"line{i + 1}": line for i, line in enumerate(self.outro_lines)},
            "kenBurns": {r: {"enabled": h.enabled, "direction": h.direction} for r, h in self.ken_burns.items()},
            "colorGrade": {
                r: {"brightness": g.brightness, "contrast": g.contrast, "saturation": g.saturation}
                for r, g in self.color_grade.items()
            },
            "heroFrame": (
                {"clipRole": self.hero_frame.clip_role, "timestamp": self.hero_frame.timestamp}
                if self.hero_frame
                else None
            ),
        }


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _number(value: Any, name: str, default: Optional[float] = None) -> float:
    if value is None and default is not None:
        return default
    if isinstance(value, bool):
        raise AnalysisError(f"Analysis field {name} must be a number")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise AnalysisError(f"Analysis field {name} must be a number, got {value!r}") from exc


def _parse_segment(index: int, raw: Any) -> SegmentSuggestion:
    if not isinstance(raw, Mapping):
        raise AnalysisError(f"Segment {index} must be an object")
    role = raw.get("clipRole") or raw.get("clipType")
    if role not in CLIP_ROLES:
        raise AnalysisError(f"Segment {index} has unknown clip role {role!r}")
    for key in ("startTime", "duration"):
        if key not in raw:
            raise AnalysisError(f"Segment {index} is missing '{key}'")
    duration = _number(raw["duration"], f"segments[{index}].duration")
    if duration <= 0:
        raise AnalysisError(f"Segment {index} duration must be positive")
    return SegmentSuggestion(
        clip_role=role,
        start_time=max(0.0, _number(raw["startTime"], f"segments[{index}].startTime")),
        duration=duration,
        caption=_text(raw.get("caption")),
        caption_reason=_text(raw.get("captionReason")),
        trim_reason=_text(raw.get("trimReason")),
    )


def _parse_ken_burns(raw: Any) -> Dict[str, KenBurnsHint]:
    hints: Dict[str, KenBurnsHint] = {}
    if not isinstance(raw, Mapping):
        return hints
    for role, value in raw.items():
        if role not in CLIP_ROLES or not isinstance(value, Mapping):
            continue
        direction = value.get("direction")
        hints[role] = KenBurnsHint(
            enabled=bool(value.get("enabled")),
            direction=direction if direction in ("in", "out") else "in",
        )
    return hints


def _parse_color_grade(raw: Any) -> Dict[str, ColorGradeHint]:
    grades: Dict[str, ColorGradeHint] = {}
    if not isinstance(raw, Mapping):
        return grades
    for role, value in raw.items():
        if role not in CLIP_ROLES or not isinstance(value, Mapping):
            continue
        params = {}
        for key, limit in GRADE_LIMITS.items():
            v = _number(value.get(key), f"colorGrade.{role}.{key}", default=0.0)
            params[key] = max(-limit, min(limit, v))
        grades[role] = ColorGradeHint(**params)
    return grades


ROLE_HEADINGS = {
    "artist": "--- ARTIST PERFORMANCE CLIP (this clip contains the AUDIO/SONG that plays for the entire video) ---",
    "guitar": "--- GUITAR CLOSE-UP CLIP (the product being sold) ---",
    "crowd": "--- CROWD/AUDIENCE CLIP (already supplied by the user) ---",
}


def build_analysis_prompt(
    artist_name: Optional[str],
    has_crowd: bool,
    intro_duration: float,
    transition_duration: float,
    target_duration: float = 30.0,
    style_guide: Optional[str] = None,
) -> str:
    transitions = "|".join(PROFESSIONAL_TRANSITIONS)
    raw_total = target_duration + 2 * transition_duration
    lines = [
        "You are a professional music video editor creating a ~30-second vertical (9:16) promo video "
        f"for {artist_name or 'the artist'}. The video promotes a guitar for sale by showing an artist playing it.",
        "",
        "VIDEO STRUCTURE:",
        f"1. Intro card ({intro_duration:g}s), added automatically",
        "2. Artist performing segment",
        "3. Guitar close-up segment (the guitar being sold)",
        "4. Crowd/audience segment matching the song's mood",
        "",
        "CRITICAL: The artist clip's AUDIO is the soundtrack for the ENTIRE video, so identify the mood/genre "
        "of the music being performed.",
        "",
        "Analyze these frames and return a JSON object:",
        "{",
        '  "mood": {"genre": "<acoustic/rock/punk/pop/blues/classical/country/folk/jazz>", '
        '"energy": "<low/medium/high>", "description": "<one sentence>", '
        '"searchQuery": "<stock video search query for matching crowd footage>"},',
        '  "segments": [{"clipRole": "artist|guitar|crowd", "startTime": <seconds into the ORIGINAL clip>, '
        '"duration": <seconds>, "caption": "<bold caption, all caps, 2-6 words>", '
        '"captionReason": "<why>", "trimReason": "<why this start point>"}, ...exactly 3],',
        '  "segmentOrder": ["artist", "guitar", "crowd"],',
        '  "orderReason": "<why this order tells the best story>",',
        f'  "transitions": [{{"from": "<role>", "to": "<role>", "type": "<{transitions}>", "reason": "<why>"}}, ...exactly 2],',
        '  "overallNotes": "<brief creative direction>",',
        '  "suggestedArtistName": "<if visible in frames, otherwise null>",',
        '  "guitarType": "<acoustic/electric/classical/bass>",',
        '  "outro": {"line1": "<short CTA>", "line2": "<guitar-type specific line>", '
        '"line3": "GAUNTLET GALLERY", "line4": "<optional tagline or empty string>"},',
        '  "kenBurns": {"<role>": {"enabled": <true|false>, "direction": "in|out"}},',
        '  "colorGrade": {"<role>": {"brightness": <-0.2..0.2>, "contrast": <-0.3..0.3>, "saturation": <-0.5..0.5>}},',
        '  "heroFrame": {"clipRole": "<role>", "timestamp": <seconds into that clip for the thumbnail>}',
        "}",
        "",
        "RULES:",
        f"- The 3 segment durations must total ~{raw_total:g}s raw (crossfades overlap by "
        f"{transition_duration:g}s each, so ~{target_duration:g}s visual)",
        f"- The {intro_duration:g}s intro is added before these segments, do not include it in durations",
        "- Each segment: min 7s, max 16s",
        "- startTime + duration must not exceed clip length",
        "- Pick the MOST DYNAMIC start points",
        f"- Transitions: choose ONLY from the professional set: {', '.join(PROFESSIONAL_TRANSITIONS)}",
        "- Use kenBurns only on slow or static shots; keep colorGrade subtle",
    ]
    if not has_crowd:
        lines.append(
            "- No crowd clip supplied yet; crowd footage will be fetched using your searchQuery. "
            "Use startTime: 0 and duration: 10 for crowd."
        )
    if style_guide:
        lines.extend(["", style_guide])
    lines.extend(["", "Return ONLY the JSON object, no markdown."])
    return "\n".join(lines)


class SceneAnalyzer:
    """Sample frames from each clip and ask the vision model for direction."""

    def __init__(
        self,
        client: VisionClient,
        transcoder: Transcoder,
        history: Optional[EditHistoryStore] = None,
        frames_per_clip: int = 5,
        style_guide_window: int = 20,
        intro_duration: float = 3.0,
        transition_duration: float = 0.5,
        max_tokens: int = 2048,
    ):
        self.client = client
        self.transcoder = transcoder
        self.history = history
        self.frames_per_clip = frames_per_clip
        self.style_guide_window = style_guide_window
        self.intro_duration = intro_duration
        self.transition_duration = transition_duration
        self.max_tokens = max_tokens

    def analyze(
        self,
        clips: Mapping[str, Tuple[Path, MediaInfo]],
        frames_dir: Path,
        artist_name: Optional[str] = None,
        on_progress: Optional[Callable[[str], None]] = None,
    ) -> Analysis:
        """Analyse the artist and guitar clips (and the crowd clip when present).

        Raises
        ------
        AnalysisError
            If the service is unreachable or its reply is unusable.
        """
        for role in ("artist", "guitar"):
            if role not in clips:
                raise AnalysisError(f"Cannot analyse without the {role} clip")

        sampled: List[Tuple[str, MediaInfo, List[Frame]]] = []
        for role in CLIP_ROLES:
            if role not in clips:
                continue
            path, info = clips[role]
            if on_progress:
                on_progress(f"Extracting frames from {role} clip...")
            frames = extract_keyframes(
                self.transcoder, path, frames_dir, info.duration, self.frames_per_clip, prefix=role
            )
            sampled.append((role, info, frames))

        style_guide = self.history.style_guide(self.style_guide_window) if self.history else None
        prompt = build_analysis_prompt(
            artist_name,
            has_crowd="crowd" in clips,
            intro_duration=self.intro_duration,
            transition_duration=self.transition_duration,
            style_guide=style_guide,
        )

        if on_progress:
            on_progress("Analyzing clips with the vision model...")
        content = self.build_content(sampled) + [text_block(prompt)]
        try:
            raw = self.client.complete_json(content, max_tokens=self.max_tokens)
        except (ValueError, VisionServiceError) as exc:
            raise AnalysisError(f"Scene analysis failed: {exc}") from exc

        analysis = Analysis.from_dict(raw)
        durations = {role: info.duration for role, info, _ in sampled}
        analysis = analysis.clamp_to_clips(durations)
        logger.info(
            "analysis: %s/%s, order %s",
            analysis.mood.genre or "?",
            analysis.mood.energy or "?",
            ",".join(analysis.segment_order),
        )
        return analysis

    @staticmethod
    def build_content(sampled: Sequence[Tuple[str, MediaInfo, Sequence[Frame]]]) -> List[Dict[str, Any]]:
        content: List[Dict[str, Any]] = []
        for role, info, frames in sampled:
            content.append(text_block(ROLE_HEADINGS[role]))
            for frame in frames:
                content.append(image_block(frame.path))
                note = f"{role.capitalize()} clip, frame at {frame.timestamp:g}s (clip duration: {round(info.duration)}s"
                if role == "artist":
                    note += f", has audio: {str(info.has_audio).lower()}"
                content.append(text_block(note + ")"))
        return content
