import re
from typing import Dict, Tuple

# Opening and closing quotation marks per language code
TYPOGRAPHIC_QUOTES: Dict[str, Tuple[str, str]] = {
    'pl': ('„', '”'),
    'cs': ('„', '”'),
    'de': ('„', '“'),
    'hu': ('„', '”'),
    'ro': ('„', '”'),
    'nl': ('“', '”'),
    'sv': ('”', '”'),
    'da': ('“', '”'),
    'fi': ('”', '”'),
    'nb': ('«', '»'),
    # French guillemets take a narrow no-break space on the inside
    'fr': ('\u00AB\u202F', '\u202F\u00BB'),
    'es': ('«', '»'),
    'it': ('«', '»'),
    'pt': ('«', '»'),
    'tr': ('“', '”'),
    'ar': ('«', '»'),
    'hi': ('“', '”'),
    'ru': ('«', '»'),
    'uk': ('«', '»'),
    'ja': ('「', '」'),
    'zh': ('“', '”'),
    'ko': ('“', '”'),
}

LOW_OPENING_QUOTE = '„'

# „ followed by an ASCII closing quote, with no other quote mark in between
_HALF_CONVERTED_RE = re.compile('„([^”“"]*?)"')
_ASCII_PAIR_RE = re.compile(r'"([^"]*?)"')


def normalize_quotes(text: str, language_code: str) -> str:
    """
    Replace paired ASCII double quotes with the typographic pair of the language.

    Pairs the model half-converted (a low opening mark closed by an ASCII
    quote) are repaired first. A lone ASCII quote is left alone, and the
    function is idempotent. Languages without an entry are returned unchanged.

    Args:
        text: The translated string.
        language_code: Target language code (e.g. "pl").

    Returns:
        The normalized string.
    """
    pair = TYPOGRAPHIC_QUOTES.get(language_code)
    if not pair:
        return text
    open_quote, close_quote = pair

    result = text
    if open_quote == LOW_OPENING_QUOTE:
        result = _HALF_CONVERTED_RE.sub(lambda m: f"{LOW_OPENING_QUOTE}{m.group(1)}{close_quote}", result)

    return _ASCII_PAIR_RE.sub(lambda m: f"{open_quote}{m.group(1)}{close_quote}", result)
