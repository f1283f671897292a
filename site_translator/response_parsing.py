import json
import re
from typing import Any

_FENCE_OPEN_RE = re.compile(r'^(?:`{3,}|~{3,})(?:json|JSON)?\s*\n', re.MULTILINE)
_FENCE_CLOSE_RE = re.compile(r'\n\s*(?:`{3,}|~{3,})\s*$', re.MULTILINE)

_WRAPPING_QUOTES = (('"', '"'), ('“', '”'))


class ResponseParseError(ValueError):
    """The model response does not contain the structure that was asked for."""


def extract_json(text: str) -> Any:
    """
    Tolerantly extract a JSON object or array from a model response.

    Code fences (``` or ~~~, optionally tagged json) are stripped, then the
    outermost ``{...}`` or ``[...]`` (whichever opens first) is parsed.

    Raises:
        ResponseParseError: If no parseable JSON structure is found.
    """
    content = text.strip()
    content = _FENCE_OPEN_RE.sub('', content, count=1)
    content = _FENCE_CLOSE_RE.sub('', content, count=1)
    content = content.strip()

    start_obj = content.find('{')
    start_arr = content.find('[')
    if start_obj != -1 and (start_arr == -1 or start_obj < start_arr):
        start, close_char = start_obj, '}'
    elif start_arr != -1:
        start, close_char = start_arr, ']'
    else:
        raise ResponseParseError('No JSON found')

    end = content.rfind(close_char)
    if end <= start:
        raise ResponseParseError('No closing bracket')

    try:
        return json.loads(content[start:end + 1])
    except json.JSONDecodeError as e:
        raise ResponseParseError(f"JSON parse: {e}") from e


def strip_wrapping_quotes(text: str) -> str:
    """Remove one layer of quotation marks the model wrapped around plain-text output."""
    for open_quote, close_quote in _WRAPPING_QUOTES:
        if len(text) >= 2 and text.startswith(open_quote) and text.endswith(close_quote):
            return text[1:-1]
    return text


def preview(text: str, limit: int = 200) -> str:
    """Shorten a response for log and error messages."""
    return text if len(text) <= limit else text[:limit] + '...'
