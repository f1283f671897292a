"""
Detection of injected markup and scripting vectors in translated strings.

Everything a translation contains ends up inside rendered HTML, so any value
produced by the language model is treated as untrusted input. The scanner is
pure: it never modifies the value it inspects.
"""
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple, Union

# Inline formatting tags the site templates render as-is
ALLOWED_TAGS: Tuple[str, ...] = ('strong', 'cite', 'em')

TAG_RE = re.compile(r'</?([a-zA-Z][a-zA-Z0-9]*)\b[^>]*>')

DANGEROUS_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r'javascript\s*:', re.IGNORECASE), 'javascript: URI'),
    (re.compile(r'\bon[a-z]+\s*=', re.IGNORECASE), 'inline event handler'),
    (re.compile(r'<script', re.IGNORECASE), '<script> tag'),
    (re.compile(r'</script', re.IGNORECASE), '</script> tag'),
    (re.compile(r'<iframe', re.IGNORECASE), '<iframe> tag'),
    (re.compile(r'<object', re.IGNORECASE), '<object> tag'),
    (re.compile(r'<embed', re.IGNORECASE), '<embed> tag'),
    (re.compile(r'<link[\s>]', re.IGNORECASE), '<link> tag'),
    (re.compile(r'<meta[\s>]', re.IGNORECASE), '<meta> tag'),
    (re.compile(r'<svg[\s>]', re.IGNORECASE), '<svg> tag'),
    (re.compile(r'<form[\s>]', re.IGNORECASE), '<form> tag'),
    (re.compile(r'<input[\s>]', re.IGNORECASE), '<input> tag'),
    (re.compile(r'<img[\s>]', re.IGNORECASE), '<img> tag'),
    (re.compile(r'data\s*:\s*text/html', re.IGNORECASE), 'data:text/html URI'),
    (re.compile(r'expression\s*\(', re.IGNORECASE), 'CSS expression()'),
    (re.compile(r'url\s*\(\s*[\'"]?\s*javascript', re.IGNORECASE), 'CSS url(javascript:)'),
    (re.compile(r'<!--'), 'HTML comment'),
]

# Zero-width, soft hyphen, line/paragraph separators and bidi controls
UNICODE_SUSPICIOUS_RE = re.compile(
    '[\u200B\u200C\u200D\uFEFF\u00AD\u2028\u2029\u202A-\u202E\u2066-\u2069\u061C]'
)

ENCODED_TAG_RE = re.compile(
    r'&lt;\s*/?\s*(script|iframe|svg|object|embed|form|img|input|link|meta)',
    re.IGNORECASE
)

UNICODE_ESCAPE_RE = re.compile(r'\\u003[ce]', re.IGNORECASE)


@dataclass(frozen=True)
class SecurityFinding:
    """A single security violation found in a string."""
    label: str
    detail: str = ''

    def describe(self) -> str:
        return f"{self.label}: {self.detail}" if self.detail else self.label


def find_disallowed_tags(text: str, allowed_tags: Iterable[str] = ALLOWED_TAGS) -> List[str]:
    """Return lower-cased names of every tag in ``text`` outside the allow-list, in order."""
    allowed = {tag.lower() for tag in allowed_tags}
    return [
        match.group(1).lower()
        for match in TAG_RE.finditer(text)
        if match.group(1).lower() not in allowed
    ]


def suspicious_codepoints(text: str) -> List[str]:
    """Return the distinct suspicious code points in ``text`` as ``U+XXXX`` strings."""
    seen: Dict[str, None] = {}
    for char in UNICODE_SUSPICIOUS_RE.findall(text):
        seen.setdefault(f"U+{ord(char):04X}", None)
    return list(seen)


def scan_value(text: str, allowed_tags: Iterable[str] = ALLOWED_TAGS) -> List[SecurityFinding]:
    """
    Scan a single string for injected markup, scripting vectors and
    obfuscated payloads.

    Args:
        text: The string to inspect.
        allowed_tags: Tag names that may appear in the string.

    Returns:
        A list of findings. An empty list means the string is clean.
    """
    findings: List[SecurityFinding] = []

    for pattern, label in DANGEROUS_PATTERNS:
        if pattern.search(text):
            findings.append(SecurityFinding(label))

    for tag_name in find_disallowed_tags(text, allowed_tags):
        findings.append(SecurityFinding(f"disallowed <{tag_name}> tag"))

    if ENCODED_TAG_RE.search(text):
        findings.append(SecurityFinding('encoded HTML tag', 'entity-escaped <script> etc.'))

    codepoints = suspicious_codepoints(text)
    if codepoints:
        findings.append(SecurityFinding('suspicious unicode', ', '.join(codepoints)))

    if UNICODE_ESCAPE_RE.search(text):
        findings.append(SecurityFinding('unicode escape sequence', '\\u003c/\\u003e'))

    return findings


def scan_mapping(
        mapping: Mapping[str, Union[str, Sequence[str]]],
        allowed_tags: Iterable[str] = ALLOWED_TAGS
) -> Dict[str, List[SecurityFinding]]:
    """
    Scan every string value and every array item of a translation mapping.

    Returns:
        A dictionary mapping each offending key to its findings. Clean keys
        are omitted.
    """
    allowed = tuple(allowed_tags)
    results: Dict[str, List[SecurityFinding]] = {}
    for key, value in mapping.items():
        if isinstance(value, str):
            findings = scan_value(value, allowed)
        elif isinstance(value, (list, tuple)):
            findings = [
                finding
                for item in value if isinstance(item, str)
                for finding in scan_value(item, allowed)
            ]
        else:
            continue
        if findings:
            results[key] = findings
    return results
