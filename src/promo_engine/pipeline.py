"""Job orchestration: analysis, crowd fetch, and the render state machine.

A render runs its stages strictly in order::

    audio -> cards -> segments -> beats? -> concat -> review? -> captions
          -> composite -> thumbnail? -> export? -> complete

Every stage publishes progress on a ``ProgressChannel`` and the run ends
with exactly one terminal event. Transform failures end the run with
``error``; cancellation and step timeouts end it with ``cancelled``. QA,
thumbnail and export problems are logged and only drop their own output.
"""

from __future__ import annotations

import logging
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .analysis import Analysis, HeroFrame, SceneAnalyzer
from .assets import BrandStyle, render_captions, render_intro_card, render_outro_card
from .beats import detect_beats, snap_durations_to_beats
from .compose import CaptionOverlay, FinalComposer, SoundtrackMix, grab_frame, lipsync_offset, render_thumbnail
from .compositor import SegmentCompositor, SegmentPlan
from .concat import Concatenator
from .errors import (
    AnalysisError,
    JobCancelled,
    PromoEngineError,
    TranscodeError,
    TranscodeTimeout,
    ValidationError,
)
from .events import ProgressChannel, ProgressEvent
from .fetch import RemoteVideoFetcher, StockFootageClient
from .history import EditHistoryStore
from .jobs import Job, JobStore
from .presets import PRESETS
from .request import RenderRequest, fill_outro
from .review import TransitionReviewer
from .timeline import TimelinePlan
from .transcoder import CancellableTranscoder, FfmpegTranscoder, Transcoder
from .vision import VisionClient

logger = logging.getLogger(__name__)

AUDIO = "audio"
CARDS = "cards"
SEGMENTS = "segments"
BEATS = "beats"
CONCAT = "concat"
REVIEW = "review"
CAPTIONS = "captions"
COMPOSITE = "composite"
THUMBNAIL = "thumbnail"
EXPORT = "export"

RENDER_STAGES = (AUDIO, CARDS, SEGMENTS, BEATS, CONCAT, REVIEW, CAPTIONS, COMPOSITE, THUMBNAIL, EXPORT)
PREVIEW_STAGES = (CARDS, SEGMENTS, CONCAT)

BeatDetector = Callable[[Transcoder, Path, float, Path], List[float]]
FrameGrabber = Callable[[Path, float], Any]


@dataclass
class RenderSettings:
    size: Tuple[int, int]
    crf: int
    preset: str
    preview: bool = False


@dataclass
class RunHandle:
    """Cancellation scope of one run: its own event and a transcoder bound to it."""

    job_id: str
    cancel_event: threading.Event
    transcoder: Transcoder

    def check(self) -> None:
        if self.cancel_event.is_set():
            raise JobCancelled("Render cancelled")


@dataclass
class RenderState:
    """Artifacts accumulated by one render run."""

    job: Job
    request: RenderRequest
    settings: RenderSettings
    plan: TimelinePlan
    run: RunHandle
    files: List[Path] = field(default_factory=list)
    rendered_durations: List[float] = field(default_factory=list)
    segment_plans: List[SegmentPlan] = field(default_factory=list)
    audio: Optional[Path] = None
    audio_offset: float = 0.0


class JobOrchestrator:
    def __init__(
        self,
        config: Dict[str, Any],
        store: JobStore,
        transcoder: Optional[Transcoder] = None,
        vision: Optional[VisionClient] = None,
        history: Optional[EditHistoryStore] = None,
        stock: Optional[StockFootageClient] = None,
        remote: Optional[RemoteVideoFetcher] = None,
        beat_detector: BeatDetector = detect_beats,
        frame_grabber: FrameGrabber = grab_frame,
    ):
        self.config = config
        self.store = store
        timeout = float(config.get("step_timeout") or 0)
        self.transcoder = transcoder or FfmpegTranscoder(default_timeout=timeout or None)
        self.vision = vision
        self.history = history
        self.stock = stock
        self.remote = remote
        self.beat_detector = beat_detector
        self.frame_grabber = frame_grabber
        self.brand = BrandStyle.from_config(config)
        self._runs: Dict[str, List[threading.Event]] = {}
        self._runs_lock = threading.Lock()

    def cancel(self, job_id: Optional[str] = None) -> int:
        """Stop the active runs of ``job_id`` (every active run when None).

        Renders end with a ``cancelled`` event. Runs started afterwards are
        unaffected. Returns the number of runs signalled.
        """
        with self._runs_lock:
            events = [e for key, evs in self._runs.items() if job_id is None or key == job_id for e in evs]
        for event in events:
            event.set()
        return len(events)

    @contextmanager
    def _run_scope(self, key: str, cancel_event: Optional[threading.Event] = None) -> Iterator[RunHandle]:
        event = cancel_event or threading.Event()
        with self._runs_lock:
            self._runs.setdefault(key, []).append(event)
        try:
            yield RunHandle(key, event, CancellableTranscoder(self.transcoder, event))
        finally:
            with self._runs_lock:
                events = self._runs.get(key, [])
                if event in events:
                    events.remove(event)
                if not events:
                    self._runs.pop(key, None)

    # -- pre-render steps -------------------------------------------------

    def analyze(self, job_id: str, artist_name: Optional[str] = None, on_progress: Optional[Callable[[str], None]] = None) -> Analysis:
        job = self.store.load(job_id)
        if self.vision is None:
            raise AnalysisError("No vision client configured (set ANTHROPIC_API_KEY)")
        clips = {}
        for role, path in job.clips.items():
            info = job.clip_info.get(role)
            if info is not None and Path(path).exists():
                clips[role] = (Path(path), info)
        cfg = self.config
        with self._run_scope(job.job_id) as run:
            analyzer = SceneAnalyzer(
                self.vision,
                run.transcoder,
                history=self.history,
                frames_per_clip=int(cfg["analysis_frames"]),
                style_guide_window=int(cfg["style_guide_window"]),
                intro_duration=float(cfg["intro_duration"]),
                transition_duration=float(cfg["transition_duration"]),
                max_tokens=int(cfg["vision_max_tokens"]),
            )
            analysis = analyzer.analyze(clips, job.work_dir / "frames", artist_name or job.artist_name, on_progress)
        job.analysis = analysis
        if artist_name:
            job.artist_name = artist_name
        self.store.save(job)
        return analysis

    def fetch_crowd(self, job_id: str, query: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Fill the crowd slot from stock footage; None means nothing matched."""
        job = self.store.load(job_id)
        crowd = job.clip_path("crowd")
        if job.custom_crowd and crowd is not None and crowd.exists():
            info = self.store.prober(crowd)
            job.clip_info["crowd"] = info
            self.store.save(job)
            return {"source": "custom", "crowdInfo": info.to_dict()}

        if self.stock is None:
            raise PromoEngineError("No stock footage client configured (set PEXELS_API_KEY)")
        ai_query = job.analysis.mood.search_query if job.analysis else ""
        query = query or ai_query or self.config["stock_default_query"]
        clip = self.stock.fetch(query, job.work_dir)
        if clip is None:
            return None
        info = self.store.attach_clip(job, "crowd", clip.file_path, copy=False, save=False)
        job.custom_crowd = False
        job.stock = clip.to_dict()
        self.store.save(job)
        return {"source": "stock", **clip.to_dict(), "crowdInfo": info.to_dict()}

    def download(
        self,
        url: str,
        role: str,
        job_id: Optional[str] = None,
        start: Optional[float] = None,
        end: Optional[float] = None,
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> Job:
        """Fetch a remote video into ``role``; creates the job when ``job_id`` is None."""
        if self.remote is None:
            raise PromoEngineError("No remote video fetcher configured")
        job = self.store.load(job_id) if job_id else None
        self.store.root.mkdir(parents=True, exist_ok=True)
        with self._run_scope(job_id or url) as run, tempfile.TemporaryDirectory(dir=self.store.root, prefix="download-") as tmp:
            video = self.remote.fetch(
                url, Path(tmp), role=role, start=start, end=end, on_progress=on_progress, cancel_event=run.cancel_event
            )
            logger.info("downloaded %r for %s", video.title, role)
            if job is None:
                return self.store.create({role: video.file_path})
            self.store.attach_clip(job, role, video.file_path)
        return job

    # -- render ------------------------------------------------------------

    def build_plan(self, request: RenderRequest) -> TimelinePlan:
        cfg = self.config
        return TimelinePlan.build(
            [s.clip_role for s in request.segments],
            [s.duration for s in request.segments],
            intro_duration=float(cfg["intro_duration"]),
            outro_duration=float(cfg["outro_duration"]),
            transition_duration=float(cfg["transition_duration"]),
            card_transition_duration=float(cfg["card_transition_duration"]),
            segment_transition_types=request.segment_transition_types(),
            card_transition_type=cfg["card_transition_type"],
        )

    def prepare(self, job_id: str, request: Optional[RenderRequest] = None) -> Tuple[Job, RenderRequest]:
        """Load and validate; raises before any transform work is attempted."""
        job = self.store.load(job_id)
        if request is None:
            if job.analysis is None:
                raise ValidationError("No render request given and the job has not been analysed")
            request = RenderRequest.from_analysis(
                job.analysis, artist_name=job.artist_name, caption_style=self.config["caption_style"]
            )
        request.validate()
        job.ensure_renderable()
        return job, request

    def render(self, job_id: str, request: Optional[RenderRequest], channel: ProgressChannel) -> None:
        self._drive(channel, job_id, lambda: self.prepare(job_id, request), preview=False)

    def preview(self, job_id: str, request: Optional[RenderRequest], channel: ProgressChannel) -> None:
        self._drive(channel, job_id, lambda: self.prepare(job_id, request), preview=True)

    def run_prepared(
        self,
        job: Job,
        request: RenderRequest,
        channel: ProgressChannel,
        preview: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._drive(channel, job.job_id, lambda: (job, request), preview=preview, cancel_event=cancel_event)

    def _drive(
        self,
        channel: ProgressChannel,
        job_id: str,
        load: Callable[[], Tuple[Job, RenderRequest]],
        preview: bool,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        try:
            with self._run_scope(job_id, cancel_event) as run:
                run.check()
                job, request = load()
                if preview:
                    result = self._preview(job, request, channel, run)
                else:
                    result = self._render(job, request, channel, run)
        except (JobCancelled, TranscodeTimeout) as exc:
            logger.warning("render cancelled: %s", exc)
            channel.cancel(str(exc))
            return
        except PromoEngineError as exc:
            logger.error("render failed: %s", exc)
            channel.fail(str(exc))
            return
        except Exception as exc:
            logger.exception("render crashed")
            channel.fail(f"Unexpected error: {exc}")
            return
        channel.complete(**result)

    def _settings(self, preview: bool) -> RenderSettings:
        cfg = self.config
        if preview:
            p = PRESETS["preview"]
            return RenderSettings(tuple(p["resolution"]), int(p["crf"]), str(p["encoder_preset"]), preview=True)
        return RenderSettings(tuple(cfg["resolution"]), int(cfg["crf"]), str(cfg["encoder_preset"]))

    def _compositor(self, settings: RenderSettings, transcoder: Transcoder) -> SegmentCompositor:
        cfg = self.config
        return SegmentCompositor(
            transcoder,
            settings.size,
            fps=int(cfg["fps"]),
            crf=settings.crf,
            preset=settings.preset,
            pad_color=cfg["pad_color"],
            speed_bounds=(float(cfg["speed_min"]), float(cfg["speed_max"])),
            max_zoom=float(cfg["ken_burns_max_zoom"]),
        )

    def _render(self, job: Job, request: RenderRequest, channel: ProgressChannel, run: RunHandle) -> Dict[str, Any]:
        cfg = self.config
        settings = self._settings(preview=False)
        beat_sync = cfg["beat_sync"] if request.beat_sync is None else request.beat_sync
        review_on = cfg["review_enabled"] if request.review is None else request.review
        state = RenderState(job, request, settings, self.build_plan(request), run)
        compositor = self._compositor(settings, run.transcoder)
        concatenator = Concatenator(run.transcoder, settings.crf, settings.preset)
        work = job.work_dir

        if self.history is not None and job.analysis is not None:
            self.history.record_caption_edits(job.analysis.segments, request.segments)

        channel.publish(AUDIO, 0, "Extracting audio from artist clip...")
        state.audio = compositor.extract_audio(job.clip_path("artist"), work / "extracted_audio.m4a")
        channel.publish(AUDIO, 100, "Audio extracted")

        headroom = float(cfg["beat_max_shift"]) if beat_sync else 0.0
        self._render_items(state, compositor, channel, headroom)
        state.audio_offset = self._audio_offset(state)

        if beat_sync:
            state.run.check()
            self._beat_sync(state, channel)

        state.run.check()
        concat_path = work / "concat.mp4"
        channel.publish(CONCAT, 0, "Concatenating with transitions...")
        concatenator.run(
            state.files,
            state.plan,
            concat_path,
            on_progress=channel.stage_reporter(CONCAT, 0, 99, state.plan.total, "Concatenating..."),
        )
        channel.publish(CONCAT, 100, "Concatenation complete")

        if review_on:
            state.run.check()
            self._review(state, concatenator, concat_path, channel)

        state.run.check()
        channel.publish(CAPTIONS, 0, "Rendering captions...")
        pngs = render_captions(work / "captions", [s.caption for s in request.segments], settings.size, self.brand)
        overlays = [
            CaptionOverlay(png, *state.plan.segment_window(i), style=request.style_for(i))
            for i, png in enumerate(pngs)
            if png is not None
        ]
        channel.publish(CAPTIONS, 100, "Captions rendered")

        state.run.check()
        final = work / "final_music_video.mp4"
        total = state.plan.total
        channel.publish(COMPOSITE, 0, "Compositing final video with audio...")
        composer = FinalComposer(
            run.transcoder,
            settings.size,
            settings.crf,
            settings.preset,
            anim_duration=float(cfg["caption_animation_duration"]),
            anchor_y=float(cfg["caption_position_y"]),
        )
        mix = SoundtrackMix(
            state.audio,
            offset=state.audio_offset,
            fade_in=float(cfg["music_fade_in"]),
            fade_out=float(cfg["music_fade_out"]),
            volume=float(cfg["music_volume"]),
        )
        composer.composite(
            concat_path,
            overlays,
            final,
            total,
            mix,
            state.plan.intro_duration,
            on_progress=channel.stage_reporter(COMPOSITE, 0, 99, total, "Compositing..."),
        )
        channel.publish(COMPOSITE, 100, "Final video ready")

        job.artist_name = request.artist_name or job.artist_name
        job.segments = [s.to_dict() for s in request.segments]
        job.outputs = {"vertical": str(final)}
        job.thumbnail = None
        job.total_duration = total
        self.store.save(job)

        thumbnail = self._thumbnail(state, channel) if request.make_thumbnail else None
        formats = self._exports(state, composer, final, channel) if request.export_formats else {}

        job.thumbnail = str(thumbnail) if thumbnail else None
        job.outputs.update({fmt: str(p) for fmt, p in formats.items()})
        self.store.save(job)

        return {
            "jobId": job.job_id,
            "download": str(final),
            "filename": job.download_name(),
            "thumbnail": job.thumbnail,
            "formats": {fmt: str(p) for fmt, p in formats.items()} or None,
            "totalDuration": round(total, 3),
            "timeline": state.plan.summary(),
        }

    def _preview(self, job: Job, request: RenderRequest, channel: ProgressChannel, run: RunHandle) -> Dict[str, Any]:
        settings = self._settings(preview=True)
        state = RenderState(job, request, settings, self.build_plan(request), run)
        compositor = self._compositor(settings, run.transcoder)
        self._render_items(state, compositor, channel, headroom=0.0, prefix="preview_")

        state.run.check()
        output = job.work_dir / "preview.mp4"
        channel.publish(CONCAT, 0, "Joining preview...")
        Concatenator(run.transcoder, settings.crf, settings.preset).run(
            state.files,
            state.plan,
            output,
            on_progress=channel.stage_reporter(CONCAT, 0, 99, state.plan.total, "Joining preview..."),
        )
        channel.publish(CONCAT, 100, "Preview ready")
        job.outputs["preview"] = str(output)
        self.store.save(job)
        return {"jobId": job.job_id, "preview": str(output), "totalDuration": round(state.plan.total, 3)}

    def _render_items(
        self,
        state: RenderState,
        compositor: SegmentCompositor,
        channel: ProgressChannel,
        headroom: float,
        prefix: str = "",
    ) -> None:
        """Render intro/outro cards and the three segments, padded by ``headroom``.

        The padding leaves room for beat snapping to lengthen an item
        without re-rendering it.
        """
        job, request, plan = state.job, state.request, state.plan
        work = job.work_dir
        size = state.settings.size

        state.run.check()
        channel.publish(CARDS, 0, "Rendering intro card...")
        cards = work / "cards"
        intro_png = render_intro_card(cards / f"{prefix}intro_card.png", size, self.brand)
        intro = compositor.render_card(intro_png, work / f"{prefix}intro.mp4", plan.durations[0] + headroom)
        channel.publish(CARDS, 50, "Rendering outro card...")
        outro_lines = fill_outro(request.outro_lines, self.config["outro_lines"])
        outro_png = render_outro_card(cards / f"{prefix}outro_card.png", size, self.brand, outro_lines)
        outro = compositor.render_card(outro_png, work / f"{prefix}outro.mp4", plan.durations[-1] + headroom)
        channel.publish(CARDS, 100, "Intro & outro cards ready")

        segment_files = []
        count = len(request.segments)
        for i, seg in enumerate(request.segments):
            state.run.check()
            lo, hi = 100.0 * i / count, 100.0 * (i + 1) / count
            label = f"Transforming {seg.clip_role} (from {seg.seek_to:g}s)..."
            channel.publish(SEGMENTS, lo, label)
            info = job.clip_info.get(seg.clip_role)
            seg_plan = compositor.render_segment(
                job.clip_path(seg.clip_role),
                work / f"{prefix}seg_{i}.mp4",
                seg.duration + headroom,
                seek=seg.seek_to,
                speed=seg.speed,
                fit_mode=seg.fit_mode,
                ken_burns=seg.ken_burns,
                color_grade=seg.color_grade,
                clip_duration=info.duration if info else None,
                on_progress=channel.stage_reporter(SEGMENTS, lo, hi, seg.duration + headroom, label),
            )
            state.segment_plans.append(seg_plan)
            segment_files.append(work / f"{prefix}seg_{i}.mp4")
            channel.publish(SEGMENTS, hi, f"{seg.clip_role} ready")

        state.files = [intro, *segment_files, outro]
        state.rendered_durations = [d + headroom for d in plan.durations]

    def _audio_offset(self, state: RenderState) -> float:
        for i, seg in enumerate(state.request.segments):
            if seg.clip_role == "artist":
                start, _ = state.plan.segment_window(i)
                intro = state.plan.intro_duration
                return lipsync_offset(state.segment_plans[i].seek, intro, start - intro)
        return 0.0

    def _beat_sync(self, state: RenderState, channel: ProgressChannel) -> None:
        cfg = self.config
        channel.publish(BEATS, 0, "Detecting beats...")
        plan = state.plan
        offset = state.audio_offset
        try:
            beats = self.beat_detector(state.run.transcoder, state.audio, offset + plan.total, state.job.work_dir)
        except (JobCancelled, TranscodeTimeout):
            raise
        except (TranscodeError, OSError) as exc:
            logger.warning("beat detection failed, keeping durations: %s", exc)
            channel.publish(BEATS, 100, "Beat detection unavailable, keeping durations")
            return
        # soundtrack time -> output time
        beats = [b - offset for b in beats if b >= offset]
        if not beats:
            channel.publish(BEATS, 100, "No beats detected, keeping durations")
            return
        durations = snap_durations_to_beats(
            beats,
            plan.durations,
            plan.transition_durations,
            max_shift=float(cfg["beat_max_shift"]),
            min_duration=float(cfg["min_segment_duration"]),
            max_durations=state.rendered_durations,
        )
        state.plan = plan.with_durations(durations)
        logger.info("beat sync: %s -> %s", [round(d, 2) for d in plan.durations], [round(d, 2) for d in durations])
        channel.publish(BEATS, 100, f"Snapped boundaries to {len(beats)} beats")

    def _review(self, state: RenderState, concatenator: Concatenator, concat_path: Path, channel: ProgressChannel) -> None:
        cfg = self.config
        if self.vision is None:
            logger.warning("transition review skipped: no vision client")
            channel.publish(REVIEW, 100, "Review unavailable, skipping")
            return
        reviewer = TransitionReviewer(
            self.vision,
            state.run.transcoder,
            max_retries=int(cfg["review_max_retries"]),
            frame_margin=float(cfg["review_frame_margin"]),
        )
        analysis = state.job.analysis
        outcome = reviewer.run(
            state.plan,
            concat_path,
            state.job.work_dir / "review_frames",
            rerender=lambda p: concatenator.run(state.files, p, concat_path),
            mood=analysis.mood.description if analysis else "",
            on_progress=lambda pct, msg: channel.publish(REVIEW, pct, msg),
        )
        state.plan = state.plan.with_transition_types(outcome.transition_types)
        logger.info("review finished: %s after %d call(s)", outcome.status, outcome.review_calls)

    def _thumbnail(self, state: RenderState, channel: ProgressChannel) -> Optional[Path]:
        state.run.check()
        channel.publish(THUMBNAIL, 0, "Rendering thumbnail...")
        job, request = state.job, state.request
        hero = job.analysis.hero_frame if job.analysis else None
        if hero is None:
            artist = next((s for s in request.segments if s.clip_role == "artist"), request.segments[0])
            hero = HeroFrame(artist.clip_role, artist.seek_to)
        source = job.clip_path(hero.clip_role)
        try:
            frame = self.frame_grabber(source, hero.timestamp)
            path = render_thumbnail(frame, job.work_dir / "thumbnail.jpg", state.settings.size, self.brand, request.artist_name)
        except (JobCancelled, TranscodeTimeout):
            raise
        except Exception as exc:
            logger.warning("thumbnail failed: %s", exc)
            channel.publish(THUMBNAIL, 100, "Thumbnail failed, skipping")
            return None
        channel.publish(THUMBNAIL, 100, "Thumbnail ready")
        return path

    def _exports(self, state: RenderState, composer: FinalComposer, master: Path, channel: ProgressChannel) -> Dict[str, Path]:
        cfg = self.config
        formats = state.request.export_formats
        results: Dict[str, Path] = {}
        for i, fmt in enumerate(formats):
            state.run.check()
            channel.publish(EXPORT, 100.0 * i / len(formats), f"Exporting {fmt}...")
            try:
                results[fmt] = composer.export(
                    fmt,
                    master,
                    state.job.work_dir / f"final_{fmt}.mp4",
                    square_offset=float(cfg["square_offset_ratio"]),
                    wide_size=cfg["wide_resolution"],
                    wide_blur=float(cfg["wide_blur"]),
                )
            except (JobCancelled, TranscodeTimeout):
                raise
            except Exception as exc:
                logger.warning("%s export failed: %s", fmt, exc)
        channel.publish(EXPORT, 100, f"Exported {', '.join(results) or 'nothing'}")
        return results


def stream_render(
    orchestrator: JobOrchestrator,
    job_id: str,
    request: Optional[RenderRequest] = None,
    preview: bool = False,
    timeout: Optional[float] = None,
) -> Iterator[ProgressEvent]:
    """Validate synchronously, then run the render on a worker thread and yield its events."""
    job, request = orchestrator.prepare(job_id, request)
    channel = ProgressChannel(buffered=True)
    cancel_event = threading.Event()
    worker = threading.Thread(
        target=orchestrator.run_prepared,
        args=(job, request, channel, preview, cancel_event),
        name=f"render-{job.job_id[:8]}",
        daemon=True,
    )
    worker.start()
    try:
        yield from channel.iter_events(timeout=timeout)
    finally:
        if not channel.closed:
            # consumer went away; stop only this run
            cancel_event.set()
        worker.join(timeout=5)
