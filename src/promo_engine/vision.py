"""Vision model access: image content blocks and JSON replies."""

from __future__ import annotations

import base64
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import anthropic

from .errors import VisionServiceError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"

_MEDIA_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


class VisionClient(Protocol):
    def complete_json(self, content: List[Dict[str, Any]], max_tokens: int = 2048) -> Dict[str, Any]:
        ...


def text_block(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}


def image_block(path: Path) -> Dict[str, Any]:
    data = base64.standard_b64encode(path.read_bytes()).decode("utf-8")
    media_type = _MEDIA_TYPES.get(path.suffix.lower(), "image/jpeg")
    return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}


def _strip_code_fences(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        lines = stripped.splitlines()
        if lines and lines[0].startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].startswith("```"):
            lines = lines[:-1]
        stripped = "\n".join(lines).strip()
    return stripped


def extract_json_object(text: str) -> Dict[str, Any]:
    """Pull the single JSON object out of a model reply.

    Raises ValueError when no well-formed object is present.
    """
    cleaned = _strip_code_fences(text or "")
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1:
        raise ValueError("No JSON object in response")
    if end == -1 or end < start:
        raise ValueError("Truncated JSON: missing closing brace")
    snippet = cleaned[start : end + 1].replace("\u0000", "")
    try:
        obj = json.loads(snippet)
    except json.JSONDecodeError as ex:
        raise ValueError(f"Invalid JSON object: {ex}") from ex
    if not isinstance(obj, dict):
        raise ValueError("Top-level JSON value must be an object")
    return obj


class AnthropicVisionClient:
    """Claude vision requests returning a parsed JSON object."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not api_key:
            raise ValueError("ANTHROPIC_API_KEY environment variable is required")
        self.model = model or os.environ.get("PROMO_ENGINE_VISION_MODEL") or DEFAULT_MODEL
        self._client = anthropic.Anthropic(api_key=api_key)

    def complete_json(self, content: List[Dict[str, Any]], max_tokens: int = 2048) -> Dict[str, Any]:
        images = sum(1 for block in content if block.get("type") == "image")
        logger.info("vision request: %d images, model %s", images, self.model)
        try:
            response = self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                messages=[{"role": "user", "content": content}],
            )
        except anthropic.APIError as exc:
            raise VisionServiceError(f"Vision request failed: {exc}") from exc
        text = "".join(getattr(part, "text", "") for part in response.content)
        return extract_json_object(text)
