"""Typed progress events and the channel pipeline stages publish to.

A render publishes ``progress`` events in strict stage order and finishes
with exactly one terminal event (``complete``, ``error`` or ``cancelled``).
Subscribers are plain callables; ``iter_events`` drains an internal queue
so a caller on another thread can stream the events as they happen.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

PROGRESS = "progress"
COMPLETE = "complete"
ERROR = "error"
CANCELLED = "cancelled"

TERMINAL_KINDS = {COMPLETE, ERROR, CANCELLED}


@dataclass(frozen=True)
class ProgressEvent:
    kind: str
    stage: Optional[str] = None
    percent: int = 0
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    def payload(self) -> Dict[str, Any]:
        if self.kind == PROGRESS:
            return {"stage": self.stage, "percent": self.percent, "message": self.message}
        if self.kind == COMPLETE:
            return dict(self.data)
        return {"message": self.message}

    def to_sse(self) -> str:
        return f"event: {self.kind}\ndata: {json.dumps(self.payload())}\n\n"


Subscriber = Callable[[ProgressEvent], None]


class ProgressChannel:
    """Ordered, terminating stream of progress events for one job."""

    def __init__(self, subscribers: Optional[List[Subscriber]] = None, buffered: bool = False):
        self._subscribers: List[Subscriber] = list(subscribers or [])
        self._queue: Optional[queue.Queue[ProgressEvent]] = queue.Queue() if buffered else None
        self._lock = threading.Lock()
        self._stage: Optional[str] = None
        self._percent = 0
        self._closed = False
        self.history: List[ProgressEvent] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def current_stage(self) -> Optional[str]:
        return self._stage

    def subscribe(self, fn: Subscriber) -> None:
        self._subscribers.append(fn)

    def publish(self, stage: str, percent: float, message: str = "") -> ProgressEvent:
        with self._lock:
            if self._closed:
                raise RuntimeError("cannot publish after a terminal event")
            pct = int(max(0, min(100, round(percent))))
            if stage == self._stage:
                # percent never goes backwards within a stage
                pct = max(pct, self._percent)
            self._stage = stage
            self._percent = pct
            event = ProgressEvent(PROGRESS, stage=stage, percent=pct, message=message)
            self._emit(event)
        return event

    def complete(self, **locators: Any) -> ProgressEvent:
        return self._terminate(ProgressEvent(COMPLETE, data={k: v for k, v in locators.items() if v is not None}))

    def fail(self, message: str) -> ProgressEvent:
        return self._terminate(ProgressEvent(ERROR, message=message))

    def cancel(self, message: str = "Render cancelled") -> ProgressEvent:
        return self._terminate(ProgressEvent(CANCELLED, message=message))

    def stage_reporter(
        self,
        stage: str,
        lo: float,
        hi: float,
        total_seconds: float,
        message: str,
    ) -> Callable[[float], None]:
        """Return a seconds -> progress callback mapping [0, total] onto [lo, hi] percent."""

        def report(seconds: float) -> None:
            if total_seconds <= 0:
                frac = 1.0
            else:
                frac = max(0.0, min(1.0, float(seconds) / float(total_seconds)))
            self.publish(stage, lo + (hi - lo) * frac, message)

        return report

    def iter_events(self, timeout: Optional[float] = None) -> Iterator[ProgressEvent]:
        if self._queue is None:
            raise RuntimeError("channel was created without buffering")
        while True:
            event = self._queue.get(timeout=timeout)
            yield event
            if event.terminal:
                return

    def _terminate(self, event: ProgressEvent) -> ProgressEvent:
        with self._lock:
            if self._closed:
                raise RuntimeError("channel already terminated")
            self._closed = True
            self._emit(event)
        return event

    def _emit(self, event: ProgressEvent) -> None:
        self.history.append(event)
        if self._queue is not None:
            self._queue.put(event)
        for fn in self._subscribers:
            try:
                fn(event)
            except Exception as exc:
                logger.warning("progress subscriber failed: %s", exc)
