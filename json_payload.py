"""
json_payload.py
---------------
RecordVerify - Patient-Verified Health Records - Lenient JSON payload extraction
---------------------------------------------------------------------------------
Models are asked for "JSON only" but regularly wrap the object in markdown
fences or a sentence of prose. extract_json_object() is the single place that
turns such a response into a dict.

Contract:
    1. Strip surrounding markdown code fences.
    2. If the whole remainder parses as a JSON object, return it.
    3. Otherwise locate the outermost balanced {...} span (string- and
       escape-aware) starting at the first "{" and parse that.
    4. Otherwise try the first "{" to the last "}" span.
    5. Otherwise raise PayloadParseError.

Project: RecordVerify - Patient-Verified Health Records
"""

import json
import logging
from typing import Optional, Tuple

from errors import PayloadParseError

logger = logging.getLogger(__name__)


def _strip_code_fences(content: str) -> str:
    """Remove a leading ```/```json fence and its closing fence, if present."""
    content = content.strip()
    if content.startswith("```"):
        parts = content.split("```")
        if len(parts) >= 2:
            content = parts[1]
            if content.lower().startswith("json"):
                content = content[4:]
    return content.strip()


def find_balanced_object(text: str) -> Optional[Tuple[int, int]]:
    """
    Return (start, end) of the outermost balanced JSON object in *text*.

    The scan starts at the first "{" and tracks nesting depth, ignoring braces
    that appear inside double-quoted strings. *end* is exclusive.

    Returns:
        Optional[Tuple[int, int]]: The span, or None if no "{" exists or the
            braces never balance.
    """
    start = text.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        ch = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return start, idx + 1
    return None


def _loads_object(candidate: str) -> Optional[dict]:
    try:
        parsed = json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def extract_json_object(text: str) -> dict:
    """
    Extract the JSON object carried by a model response.

    Args:
        text: Raw model output, possibly with prose or code fences around the JSON.

    Returns:
        dict: The parsed object.

    Raises:
        PayloadParseError: If no JSON object can be recovered.
    """
    if not text or not isinstance(text, str) or not text.strip():
        raise PayloadParseError("Empty model response.")

    content = _strip_code_fences(text)

    parsed = _loads_object(content)
    if parsed is not None:
        return parsed

    span = find_balanced_object(content)
    if span is not None:
        parsed = _loads_object(content[span[0]:span[1]])
        if parsed is not None:
            return parsed

    first, last = content.find("{"), content.rfind("}")
    if 0 <= first < last:
        parsed = _loads_object(content[first:last + 1])
        if parsed is not None:
            return parsed

    logger.warning("No JSON object found in model response (%d chars).", len(text))
    raise PayloadParseError("Model response did not contain a parseable JSON object.")
