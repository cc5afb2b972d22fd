from __future__ import annotations

from typing import Dict, Optional, Set

# Render presets: values act as defaults which can be overridden by config or CLI flags.
# - full: deliverable quality at the native 9:16 canvas
# - preview: quarter-area canvas and cheap encoding for fast iteration
PRESETS: Dict[str, Dict[str, object]] = {
    "full": {
        "resolution": (1080, 1920),
        "crf": 18,
        "encoder_preset": "medium",
    },
    "preview": {
        "resolution": (540, 960),
        "crf": 30,
        "encoder_preset": "ultrafast",
    },
}

OPTION_KEYS = {"resolution", "crf", "encoder_preset"}


def merge_preset(
    preset_name: Optional[str],
    base: Dict[str, object],
    provided: Set[str],
) -> Dict[str, object]:
    """Merge preset values into a base config, respecting explicitly provided options.

    Rules:
    - If preset_name is None or not recognized, return base unchanged.
    - Apply preset values only for keys not in `provided`.
    """
    if not preset_name:
        return base
    preset = PRESETS.get(preset_name)
    if not preset:
        return base

    effective = dict(base)
    for k in OPTION_KEYS:
        if k in preset and k not in provided:
            effective[k] = preset[k]
    return effective


def detect_provided_options(argv_tokens: Optional[list[str]]) -> Set[str]:
    """Detect which preset-controlled CLI options were explicitly provided.

    Handles both ``--crf 20`` and ``--crf=20`` forms.
    """
    provided: Set[str] = set()
    if not argv_tokens:
        return provided

    def mark_if_present(name: str, key: str):
        for t in argv_tokens:
            if t == name or t.startswith(name + "="):
                provided.add(key)
                break

    mark_if_present("--resolution", "resolution")
    mark_if_present("--crf", "crf")
    mark_if_present("--encoder-preset", "encoder_preset")
    return provided
