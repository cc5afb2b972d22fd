"""Bounded log of human edits to AI suggestions.

The log is the only state shared between jobs. It biases future analysis
prompts toward the phrasing users actually kept, and is capped so it never
grows past ``cap`` entries (oldest dropped first).
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_CAP = 50
DEFAULT_WINDOW = 20


class EditHistoryStore:
    def __init__(self, path: Path, cap: int = DEFAULT_CAP):
        if cap <= 0:
            raise ValueError("cap must be > 0")
        self.path = path
        self.cap = cap
        self._lock = threading.Lock()

    def entries(self) -> List[Dict[str, Any]]:
        with self._lock:
            return self._load()

    def record(self, field: str, original: str, edited: str) -> List[Dict[str, Any]]:
        return self.record_many([(field, original, edited)])

    def record_many(self, edits: Sequence[tuple[str, str, str]]) -> List[Dict[str, Any]]:
        """Append edits whose text actually changed and persist the trimmed log."""
        stamp = datetime.now(timezone.utc).isoformat()
        with self._lock:
            history = self._load()
            for field, original, edited in edits:
                if original == edited:
                    continue
                history.append({"field": field or "custom", "original": original, "edited": edited, "date": stamp})
            trimmed = history[-self.cap :]
            self._save(trimmed)
            return trimmed

    def record_caption_edits(self, suggested: Sequence[Any], final: Sequence[Any]) -> int:
        """Record caption changes between AI-suggested and rendered segments.

        Both sequences hold objects with ``clip_role`` and ``caption``
        attributes; returns the number of edits recorded.
        """
        edits = []
        for orig, fin in zip(suggested, final):
            o = (getattr(orig, "caption", "") or "").strip()
            f = (getattr(fin, "caption", "") or "").strip()
            if o and f and o != f:
                edits.append((f"caption:{getattr(orig, 'clip_role', 'custom')}", o, f))
        if edits:
            self.record_many(edits)
        return len(edits)

    def style_guide(self, window: int = DEFAULT_WINDOW) -> Optional[str]:
        history = self.entries()
        if not history:
            return None
        examples = "\n".join(
            f'- AI said: "{h.get("original", "")}" -> User changed to: "{h.get("edited", "")}"'
            for h in history[-window:]
        )
        return (
            "IMPORTANT - The user has a specific style for on-screen text. Study these past edits "
            "carefully and match the user's preferred tone, length, and phrasing style:\n\n"
            f"{examples}\n\n"
            "Key patterns to follow:\n"
            "- Match the length and punchiness the user prefers\n"
            "- Use similar vocabulary and capitalization style\n"
            "- If the user consistently shortens text, keep suggestions concise\n"
            "- If the user adds specific phrases or branding, include similar elements"
        )

    def _load(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("edit history unreadable, starting fresh: %s", exc)
            return []
        if not isinstance(data, list):
            return []
        return [d for d in data if isinstance(d, dict)]

    def _save(self, history: List[Dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(history, indent=2), encoding="utf-8")
        tmp.replace(self.path)
