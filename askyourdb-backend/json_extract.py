"""
Lenient JSON extraction for LLM responses.

Models wrap JSON in prose or ```json fences. safe_json_parse() tries the
text as-is, then the span from the first '{' to the last '}'. Anything else
is treated as unparsable (None), never raised.
"""

import json
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


def extract_json_object(text: str) -> Optional[str]:
    """Substring from the first '{' to the last '}', or None."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


def safe_json_parse(text: Optional[str]) -> Optional[Any]:
    """
    Parse JSON out of an LLM response.

    Args:
        text: Raw model output

    Returns:
        Parsed value, or None if nothing parseable was found
    """
    if not text:
        return None

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    candidate = extract_json_object(text)
    if candidate is None:
        logger.debug("No JSON object found in LLM response")
        return None

    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        logger.debug(f"Embedded JSON could not be parsed: {e}")
        return None
