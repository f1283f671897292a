"""
Structural validation of a candidate translation against the source document.

The validator checks schema conformance (keys, value types, array lengths),
content sanity (tags, protected names and titles, length ratio, marker
symbols) and security. Each error carries the keys it is about so that the
retry loop never has to re-parse messages to find out what to re-request.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Mapping, MutableMapping, Optional, Sequence, Set, Tuple, Union

from site_translator.security_scanner import ALLOWED_TAGS, scan_value

SECURITY_PREFIX = 'SECURITY:'

Value = Union[str, List[str]]


@dataclass(frozen=True)
class ValidationPolicy:
    """Thresholds and protected vocabulary applied by the validator."""
    allowed_tags: Tuple[str, ...] = ALLOWED_TAGS
    protected_names: Tuple[str, ...] = ()
    protected_titles: Tuple[str, ...] = ()
    # Scripts that need far fewer characters than Latin text for the same content
    dense_script_languages: FrozenSet[str] = frozenset({'ja', 'zh', 'ko', 'zh-TW', 'zh-CN', 'zh-HK'})
    dense_length_ratio: Tuple[float, float] = (0.15, 1.5)
    default_length_ratio: Tuple[float, float] = (0.4, 2.5)
    preserved_symbols: Tuple[str, ...] = ('→',)
    source_language: str = 'en'
    untranslated_min_length: int = 30
    untranslated_max_share: float = 0.3


DEFAULT_POLICY = ValidationPolicy()


@dataclass(frozen=True)
class ValidationIssue:
    """A validation error and the source keys it concerns."""
    message: str
    keys: Tuple[str, ...] = ()
    security: bool = False

    def __str__(self) -> str:
        return self.message


@dataclass
class ValidationReport:
    """Blocking errors and informational warnings produced by a validation pass."""
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.errors

    @property
    def security_errors(self) -> List[ValidationIssue]:
        return [issue for issue in self.errors if issue.security]

    @property
    def has_security_errors(self) -> bool:
        return any(issue.security for issue in self.errors)

    @property
    def messages(self) -> List[str]:
        return [issue.message for issue in self.errors]

    def failed_keys(self, key_order: Optional[Sequence[str]] = None) -> List[str]:
        """
        Return the distinct keys implicated by the errors.

        Args:
            key_order: When given, the result follows this order and contains
                only keys that appear in it (typically the source key order).
        """
        implicated: Dict[str, None] = {}
        for issue in self.errors:
            for key in issue.keys:
                implicated.setdefault(key, None)
        if key_order is None:
            return list(implicated)
        return [key for key in key_order if key in implicated]

    def errors_for_key(self, key: str) -> List[str]:
        """Return the messages of every error that concerns ``key``."""
        return [issue.message for issue in self.errors if key in issue.keys]


def value_type(value) -> str:
    """Classify a mapping value the way the source schema does."""
    if isinstance(value, list):
        return 'array'
    if isinstance(value, str):
        return 'string'
    return type(value).__name__


def count_tag(text: str, tag: str) -> Tuple[int, int]:
    """Count opening and closing occurrences of ``tag`` in ``text``."""
    opened = len(re.findall(rf'<{tag}(\s[^>]*)?>', text))
    closed = len(re.findall(rf'</{tag}>', text))
    return opened, closed


def name_stems(name: str) -> List[str]:
    """
    Return the word stems that must survive translation of a proper name.

    Initials ("P.", "N.") and words shorter than three letters are ignored.
    Words of up to five characters must appear whole; longer words are cut to
    their first ``max(4, len - 2)`` characters so that declension suffixes in
    the target language are tolerated.
    """
    stems = []
    for word in name.split():
        if len(word) < 3 or word.endswith('.'):
            continue
        stems.append(word if len(word) <= 5 else word[:max(4, len(word) - 2)])
    return stems


def length_ratio_bounds(target_language: str, policy: ValidationPolicy = DEFAULT_POLICY) -> Tuple[float, float]:
    if target_language in policy.dense_script_languages:
        return policy.dense_length_ratio
    return policy.default_length_ratio


def check_value(
        key: str,
        source_value: str,
        value: str,
        target_language: str,
        policy: ValidationPolicy = DEFAULT_POLICY
) -> List[ValidationIssue]:
    """
    Run the per-string checks on a single translated value.

    This is the subset of the document validation that is meaningful for one
    key in isolation: emptiness, tag parity and balance, protected names and
    titles, length ratio, preserved symbols and the full security scan. It is
    used both by ``validate_translation`` and to vet semantic fixes before
    they are accepted.

    Returns:
        A list of issues, each tagged with ``key``.
    """
    keys = (key,)
    issues: List[ValidationIssue] = []

    if value.strip() == '' and source_value.strip() != '':
        return [ValidationIssue(f'Empty translation for "{key}"', keys)]

    for tag in policy.allowed_tags:
        src_open, src_close = count_tag(source_value, tag)
        tgt_open, tgt_close = count_tag(value, tag)
        if (src_open, src_close) != (tgt_open, tgt_close):
            issues.append(ValidationIssue(
                f'HTML tag mismatch on "{key}": <{tag}> expected {src_open}/{src_close} open/close, '
                f'got {tgt_open}/{tgt_close}',
                keys
            ))
        if tgt_open != tgt_close:
            issues.append(ValidationIssue(
                f'Unclosed <{tag}> in "{key}": {tgt_open} opened, {tgt_close} closed', keys
            ))

    for name in policy.protected_names:
        if name not in source_value:
            continue
        for stem in name_stems(name):
            if stem not in value:
                issues.append(ValidationIssue(
                    f'Protected name missing in "{key}": "{name}" (stem "{stem}" not found)', keys
                ))

    for title in policy.protected_titles:
        if title in source_value and title not in value:
            issues.append(ValidationIssue(f'Protected title missing in "{key}": "{title}"', keys))

    if source_value:
        ratio = len(value) / len(source_value)
        min_ratio, max_ratio = length_ratio_bounds(target_language, policy)
        if ratio < min_ratio:
            issues.append(ValidationIssue(f'Suspiciously short "{key}": {round(ratio * 100)}% of original', keys))
        if ratio > max_ratio:
            issues.append(ValidationIssue(f'Suspiciously long "{key}": {round(ratio * 100)}% of original', keys))
    elif value.strip():
        issues.append(ValidationIssue(f'Suspiciously long "{key}": text added to an empty source value', keys))

    for symbol in policy.preserved_symbols:
        if symbol in source_value and symbol not in value:
            issues.append(ValidationIssue(f'Symbol {symbol} missing in "{key}"', keys))

    issues.extend(security_issues(key, value, policy))
    return issues


def security_issues(key: str, value: str, policy: ValidationPolicy = DEFAULT_POLICY) -> List[ValidationIssue]:
    """Convert scanner findings for one string into ``SECURITY:`` validation errors."""
    return [
        ValidationIssue(f'{SECURITY_PREFIX} {finding.label} in "{key}"'
                        + (f': {finding.detail}' if finding.detail else ''),
                        (key,), security=True)
        for finding in scan_value(value, policy.allowed_tags)
    ]


def validate_translation(
        source: Mapping[str, Value],
        candidate: MutableMapping[str, Value],
        target_language: str,
        policy: ValidationPolicy = DEFAULT_POLICY
) -> ValidationReport:
    """
    Validate a candidate translation against the source document.

    Extra keys are removed from ``candidate`` in place and reported as a
    warning. Every other finding is an error.

    Args:
        source: The trusted source-language document.
        candidate: The translation being built. Mutated to drop extra keys.
        target_language: Language code of the candidate.
        policy: Thresholds and protected vocabulary.

    Returns:
        The validation report.
    """
    report = ValidationReport()
    source_keys = list(source.keys())
    source_key_set: Set[str] = set(source_keys)

    missing = [key for key in source_keys if key not in candidate]
    if missing:
        report.errors.append(ValidationIssue(f"Missing keys: {', '.join(missing)}", tuple(missing)))

    extra = [key for key in candidate if key not in source_key_set]
    if extra:
        report.warnings.append(f"Extra keys (removed): {', '.join(extra)}")
        for key in extra:
            del candidate[key]

    for key in source_keys:
        if key not in candidate:
            continue
        expected, actual = value_type(source[key]), value_type(candidate[key])
        if expected != actual:
            report.errors.append(ValidationIssue(
                f'Type mismatch on "{key}": expected {expected}, got {actual}', (key,)
            ))

    for key in source_keys:
        src, tgt = source[key], candidate.get(key)
        if not isinstance(src, list) or not isinstance(tgt, list):
            continue
        if len(src) != len(tgt):
            report.errors.append(ValidationIssue(
                f'Array length mismatch on "{key}": expected {len(src)}, got {len(tgt)}', (key,)
            ))
        for item in tgt:
            if isinstance(item, str):
                report.errors.extend(security_issues(key, item, policy))

    translating = target_language != policy.source_language
    untranslated: List[str] = []

    for key in source_keys:
        src, tgt = source[key], candidate.get(key)
        if not isinstance(src, str) or not isinstance(tgt, str):
            continue
        report.errors.extend(check_value(key, src, tgt, target_language, policy))
        if translating and tgt == src and len(src) > policy.untranslated_min_length:
            untranslated.append(key)

    eligible = [
        key for key in source_keys
        if isinstance(source[key], str) and len(source[key]) > policy.untranslated_min_length
    ]
    if translating and eligible and len(untranslated) > len(eligible) * policy.untranslated_max_share:
        report.errors.append(ValidationIssue(
            f"{len(untranslated)}/{len(eligible)} keys appear untranslated "
            f"(identical to {policy.source_language} source)",
            tuple(untranslated)
        ))

    return report
