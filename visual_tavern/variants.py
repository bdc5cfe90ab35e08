"""NPC image variant selection from dialogue text.

Image maps are keyed ``base`` or ``<type>_<value>`` where type is one of
expression, clothing, pose and spaces in the value are underscores, e.g.
``expression_happy`` or ``clothing_rain_coat``.

This is a best-effort heuristic. A false positive only shows the wrong
portrait; a miss falls back to the base image. FUZZY_THRESHOLD and
VARIANT_PRIORITY are tunables, not derived constants.
"""

from __future__ import annotations

import math
import re

VARIANT_PRIORITY = ("expression", "clothing", "pose")
FUZZY_THRESHOLD = 0.7

_MARKUP_RE = re.compile(r"</?(?:red|yellow|green|blue|purple|jump|vibration|injury)>")
_TOKEN_SPLIT_RE = re.compile(r"[-_\s]+")


def strip_markup(text: str) -> str:
    """Remove colour/animation tags, keeping the text they wrap."""
    return _MARKUP_RE.sub("", text)


def _matches(value: str, text: str) -> bool:
    value = value.lower()
    if value in text:
        return True
    for token in _TOKEN_SPLIT_RE.split(value):
        if len(token) > 1 and token in text:
            return True
    if len(value) >= 2 and " " not in value:
        present = sum(1 for ch in value if ch in text)
        if present >= math.ceil(len(value) * FUZZY_THRESHOLD):
            return True
    return False


def resolve_variant_image(text: str, images: dict[str, str] | None) -> str | None:
    """Pick the image whose variant value best fits the dialogue text.

    Types are checked in VARIANT_PRIORITY order and variants within a type in
    map order; the first match wins. Falls back to ``images["base"]``.
    """
    if not images:
        return None
    clean = strip_markup(text).lower()
    for variant_type in VARIANT_PRIORITY:
        prefix = f"{variant_type}_"
        for key, url in images.items():
            if key.startswith(prefix) and _matches(key[len(prefix):], clean):
                return url
    return images.get("base")
