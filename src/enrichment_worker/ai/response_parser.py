"""Utilities for parsing AI responses.

Models asked for JSON still occasionally wrap it in markdown fences or add
a sentence of preamble; these helpers recover the JSON object either way.
"""

import json
import logging
import re
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


def extract_json_from_response(response: Optional[str]) -> str:
    """Extract JSON object text from an AI response.

    Handles:
    - ```json ... ``` and bare ``` ... ``` fences
    - Prose before or after the object
    - Plain JSON

    Args:
        response: Raw AI response string

    Returns:
        The JSON text, or the stripped response when no object is found
    """
    if not response:
        return ""

    cleaned = response.strip()

    fenced = _FENCE_RE.search(cleaned)
    if fenced and fenced.group(1).strip():
        cleaned = fenced.group(1).strip()

    if cleaned.startswith("{") and cleaned.endswith("}"):
        return cleaned

    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        return cleaned[start : end + 1]

    return cleaned


def parse_json_response(
    response: Optional[str],
    default: Optional[Dict[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """Parse a JSON object from an AI response.

    Args:
        response: Raw AI response string
        default: Value returned when parsing fails or the JSON is not an object

    Returns:
        Parsed dict, or ``default``
    """
    if not response:
        return default

    try:
        parsed = json.loads(extract_json_from_response(response))
    except json.JSONDecodeError as e:
        logger.warning("Failed to parse AI response as JSON: %s", e)
        logger.debug("Response was: %s", response[:500])
        return default

    if not isinstance(parsed, dict):
        logger.warning("AI response JSON is a %s, expected an object", type(parsed).__name__)
        return default
    return parsed
