"""Lenient JSON extraction from LLM output.

Models asked for "only JSON" still wrap it in markdown fences, prefix it with
prose or leave trailing commas. parse_json_output tries, in order: the raw
text, the contents of a code fence, and the outermost {...} span; each
candidate that fails strict parsing is handed to json_repair once.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from json_repair import repair_json

from .errors import LLMOutputError

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def _try_load(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return json.loads(repair_json(text))


def parse_json_output(text: str) -> dict[str, Any]:
    """Return the first JSON object found in text.

    Raises LLMOutputError when no candidate parses to an object.
    """
    candidates = [text.strip()]
    fence = _FENCE_RE.search(text)
    if fence:
        candidates.append(fence.group(1).strip())
    obj = _OBJECT_RE.search(text)
    if obj:
        candidates.append(obj.group(0))

    last_error: Exception | None = None
    for candidate in candidates:
        try:
            data = _try_load(candidate)
        except json.JSONDecodeError as e:
            last_error = e
            continue
        if isinstance(data, dict) and data:
            return data

    logger.warning("No JSON object in LLM output: %r", text[:300])
    raise LLMOutputError(f"No valid JSON object found in response: {last_error}")
