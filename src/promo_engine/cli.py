"""Command-line interface for the promo_engine package.

Each subcommand drives one job operation: create a job from local clips or
a remote URL, fetch stock crowd footage, run scene analysis, and render.
Render progress is printed as ``[stage] pct% message`` lines.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import build_config_defaults, build_effective_config, format_effective_config, load_yaml_config
from .errors import PromoEngineError
from .events import CANCELLED, COMPLETE, PROGRESS, ProgressEvent
from .presets import PRESETS, detect_provided_options

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NOT_FOUND = 2
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    def parse_resolution(s):
        if s is None:
            return None
        m = re.match(r"^(\d{2,5})x(\d{2,5})$", s)
        if not m:
            raise argparse.ArgumentTypeError("--resolution must be in WIDTHxHEIGHT format, e.g. 1080x1920")
        w, h = int(m.group(1)), int(m.group(2))
        if w < 240 or h < 320 or w > 4320 or h > 8192:
            raise argparse.ArgumentTypeError("--resolution values out of supported range")
        return (w, h)

    def parse_time(value: str) -> float:
        try:
            v = float(value)
        except ValueError as exc:
            raise argparse.ArgumentTypeError("time must be a number of seconds") from exc
        if v < 0:
            raise argparse.ArgumentTypeError("time must be >= 0")
        return v

    def parse_formats(value: str) -> List[str]:
        formats = [f.strip() for f in value.split(",") if f.strip()]
        for f in formats:
            if f not in ("square", "wide"):
                raise argparse.ArgumentTypeError(f"unknown export format: {f}")
        return formats

    parser = argparse.ArgumentParser(
        prog="promo_engine",
        description="Vertical music-video promo renderer.",
    )
    parser.add_argument("--config", type=Path, help="YAML config file")
    parser.add_argument("--workdir", type=Path, help="Directory holding job folders (default: ./jobs)")
    parser.add_argument(
        "--preset",
        type=str,
        choices=sorted(PRESETS),
        help="Apply a preset of defaults. Explicit flags override preset values.",
    )
    parser.add_argument("--resolution", type=parse_resolution, default=None, help="Canvas as WIDTHxHEIGHT")
    parser.add_argument("--crf", type=int, default=None, help="x264 quality (lower is better)")
    parser.add_argument("--encoder-preset", type=str, default=None, help="x264 speed preset")
    parser.add_argument("--print-config", action="store_true", help="Print the effective config and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("probe", help="Inspect a media file")
    p.add_argument("path", type=Path)

    p = sub.add_parser("new", help="Create a job from local clips")
    p.add_argument("--artist", type=Path, required=True, help="Artist clip (must have audio)")
    p.add_argument("--guitar", type=Path, required=True, help="Guitar close-up clip")
    p.add_argument("--crowd", type=Path, help="Custom crowd clip")
    p.add_argument("--artist-name", type=str)

    p = sub.add_parser("download", help="Fetch a remote video into a clip slot")
    p.add_argument("url")
    p.add_argument("--role", choices=["artist", "guitar", "crowd"], required=True)
    p.add_argument("--job", type=str, help="Existing job id (a new job is created when omitted)")
    p.add_argument("--start", type=parse_time)
    p.add_argument("--end", type=parse_time)

    p = sub.add_parser("fetch-crowd", help="Fill the crowd slot from stock footage")
    p.add_argument("job")
    p.add_argument("--query", type=str)

    p = sub.add_parser("analyze", help="Ask the vision model for an edit plan")
    p.add_argument("job")
    p.add_argument("--artist-name", type=str)

    p = sub.add_parser("show", help="Print a job record")
    p.add_argument("job")

    for name, help_text in (("render", "Render the final video"), ("preview", "Render a fast low-res draft")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("job")
        p.add_argument("--request", type=Path, help="JSON render request (default: the job's analysis)")
        p.add_argument("--caption-style", type=str, choices=["fade", "slideUp", "slideDown", "fadeSlide", "scaleBounce"])
        p.add_argument("--dry-run", action="store_true", help="Print the timeline and exit")
        if name == "render":
            p.add_argument("--formats", type=parse_formats, default=None, help="Extra exports: square,wide")
            p.add_argument("--thumbnail", action="store_true", help="Also render a branded thumbnail")
            p.add_argument("--no-review", action="store_true", help="Skip the AI transition review")
            p.add_argument("--no-beat-sync", action="store_true", help="Keep segment durations as planned")

    return parser


def resolve_config(args: argparse.Namespace, argv_tokens: List[str]) -> Dict[str, Any]:
    base = build_config_defaults()
    config_values = load_yaml_config(args.config) if args.config else {}
    provided = detect_provided_options(argv_tokens)
    cli_values: Dict[str, Any] = {
        "resolution": args.resolution,
        "crf": args.crf,
        "encoder_preset": args.encoder_preset,
    }
    if args.workdir is not None:
        cli_values["workdir"] = args.workdir
        provided.add("workdir")
    preset = args.preset or config_values.get("preset")
    return build_effective_config(base, preset, config_values, cli_values, provided)


def build_orchestrator(cfg: Dict[str, Any]):
    from .fetch import RemoteVideoFetcher, StockFootageClient
    from .history import EditHistoryStore
    from .jobs import JobStore
    from .pipeline import JobOrchestrator
    from .vision import AnthropicVisionClient

    vision = None
    if os.environ.get("ANTHROPIC_API_KEY"):
        vision = AnthropicVisionClient(model=cfg["vision_model"])
    else:
        logger.info("ANTHROPIC_API_KEY not set; analysis and transition review are unavailable")

    orchestrator = JobOrchestrator(
        cfg,
        JobStore(Path(cfg["workdir"])),
        vision=vision,
        history=EditHistoryStore(Path(cfg["history_file"]), cap=int(cfg["history_cap"])),
        stock=StockFootageClient(per_page=int(cfg["stock_per_page"]), orientation=cfg["stock_orientation"]),
    )
    orchestrator.remote = RemoteVideoFetcher(
        orchestrator.transcoder, timeout=float(cfg["step_timeout"]) or None
    )
    return orchestrator


def _print_event(event: ProgressEvent) -> None:
    if event.kind == PROGRESS:
        print(f"[{event.stage}] {event.percent}% {event.message}", flush=True)
    elif event.kind == COMPLETE:
        print(f"[complete] {json.dumps(event.payload(), indent=2)}", flush=True)
    else:
        print(f"[{event.kind}] {event.message}", flush=True)


def _load_request(args: argparse.Namespace, orchestrator, job_id: str):
    from .request import RenderRequest

    if args.request:
        request = RenderRequest.from_dict(json.loads(args.request.read_text(encoding="utf-8")))
    else:
        _, request = orchestrator.prepare(job_id)
    if args.caption_style:
        request.caption_style = args.caption_style
    if getattr(args, "formats", None) is not None:
        request.export_formats = args.formats
    if getattr(args, "thumbnail", False):
        request.make_thumbnail = True
    if getattr(args, "no_review", False):
        request.review = False
    if getattr(args, "no_beat_sync", False):
        request.beat_sync = False
    return request


def _run_render(args: argparse.Namespace, orchestrator, preview: bool) -> int:
    from .pipeline import stream_render

    request = _load_request(args, orchestrator, args.job)
    if args.dry_run:
        orchestrator.prepare(args.job, request)
        plan = orchestrator.build_plan(request)
        print(f"Job: {args.job}")
        print(f"Mode: {'preview' if preview else 'render'}")
        print(json.dumps(plan.summary(), indent=2))
        return EXIT_OK

    events = stream_render(orchestrator, args.job, request, preview=preview)
    last: Optional[ProgressEvent] = None
    try:
        for event in events:
            _print_event(event)
            last = event
    except KeyboardInterrupt:
        print("Cancelling...", flush=True)
        orchestrator.cancel(args.job)
        events.close()
        return EXIT_CANCELLED
    if last is None or last.kind == CANCELLED:
        return EXIT_CANCELLED
    return EXIT_OK if last.kind == COMPLETE else EXIT_ERROR


def _dispatch(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    if args.command == "probe":
        from .probe import probe_media

        print(json.dumps(probe_media(args.path).to_dict(), indent=2))
        return EXIT_OK

    orchestrator = build_orchestrator(cfg)

    if args.command == "new":
        clips = {"artist": args.artist, "guitar": args.guitar}
        if args.crowd:
            clips["crowd"] = args.crowd
        job = orchestrator.store.create(clips, artist_name=args.artist_name)
        print(job.job_id)
        return EXIT_OK

    if args.command == "download":
        def on_progress(pct: int) -> None:
            print(f"[download] {pct}%", flush=True)

        job = orchestrator.download(args.url, args.role, job_id=args.job, start=args.start, end=args.end, on_progress=on_progress)
        print(job.job_id)
        return EXIT_OK

    if args.command == "fetch-crowd":
        result = orchestrator.fetch_crowd(args.job, args.query)
        if result is None:
            print("No crowd footage found for that query", file=sys.stderr)
            return EXIT_NOT_FOUND
        print(json.dumps(result, indent=2))
        return EXIT_OK

    if args.command == "analyze":
        analysis = orchestrator.analyze(
            args.job,
            artist_name=args.artist_name,
            on_progress=lambda msg: print(f"[analyze] {msg}", flush=True),
        )
        print(json.dumps(analysis.to_dict(), indent=2))
        return EXIT_OK

    if args.command == "show":
        print(json.dumps(orchestrator.store.load(args.job).to_dict(), indent=2))
        return EXIT_OK

    return _run_render(args, orchestrator, preview=args.command == "preview")


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point; returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)
    argv_tokens = argv if argv is not None else sys.argv[1:]

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        cfg = resolve_config(args, argv_tokens)
    except (FileNotFoundError, ValueError) as exc:
        parser.error(str(exc))

    if args.print_config:
        print(json.dumps(format_effective_config(cfg), indent=2))
        return EXIT_OK
    if not args.command:
        parser.error("a command is required")

    try:
        return _dispatch(args, cfg)
    except KeyboardInterrupt:
        return EXIT_CANCELLED
    except PromoEngineError as exc:
        logger.debug("command failed", exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_ERROR
