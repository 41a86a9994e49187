from __future__ import annotations

import json
import re
from typing import Any

from .errors import MalformedOutput

_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json_object(raw: Any) -> dict[str, Any]:
    """Pull the first JSON object out of model output that may carry prose or code fences.

    Raises MalformedOutput when no object can be decoded.
    """
    if not isinstance(raw, str):
        raise MalformedOutput("completion content is not text")
    text = raw.strip()
    if not text:
        raise MalformedOutput("completion content is empty", raw)

    fence_match = _CODE_FENCE_RE.search(text)
    if fence_match:
        text = fence_match.group(1).strip()

    decoder = json.JSONDecoder()
    for index, char in enumerate(text):
        if char != "{":
            continue
        try:
            obj, _ = decoder.raw_decode(text[index:])
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            return obj

    raise MalformedOutput("no JSON object in completion content", raw)
