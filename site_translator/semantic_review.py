"""
Whole-document semantic review and single-key fixes.

The reviewer reports issues in a line-oriented format that is cheap to parse
tolerantly. Each fix is vetted with the per-key structural checks and
discarded if it would introduce a structural or security regression.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from site_translator.generation_backend import GenerationSession
from site_translator.prompts import (
    CLEAN_SENTINEL,
    PromptContext,
    build_fix_prompt,
    build_review_prompt,
    build_section_context,
)
from site_translator.response_parsing import strip_wrapping_quotes
from site_translator.source_document import Batch, find_batch
from site_translator.translation_validator import DEFAULT_POLICY, ValidationPolicy, check_value

logger = logging.getLogger("site_translator")

REVIEW_MAX_OUTPUT_TOKENS = 4096
FIX_MAX_OUTPUT_TOKENS = 2048

FIX_APPLIED = 'applied'
FIX_REVERTED = 'reverted'
FIX_FAILED = 'failed'
FIX_SKIPPED = 'skipped'

_KEY_RE = re.compile(r'^KEY:\s*(.+)$')
_TYPE_RE = re.compile(r'^TYPE:\s*(.+)$')
_DESC_RE = re.compile(r'^DESC:\s*(.+)$', re.DOTALL)


@dataclass(frozen=True)
class SemanticIssue:
    """One reviewer finding. ``category`` is free text chosen by the model."""
    key: str
    category: str
    description: str

    def to_dict(self) -> Dict[str, str]:
        return {'key': self.key, 'type': self.category, 'description': self.description}


def parse_review_response(text: str) -> List[SemanticIssue]:
    """
    Parse ``KEY: k | TYPE: t | DESC: d`` lines.

    A response starting with the clean sentinel yields no issues. Lines that
    do not have the three-part shape are skipped. A ``|`` inside the
    description is kept as part of it.
    """
    content = text.strip()
    if content.startswith(CLEAN_SENTINEL):
        return []

    issues = []
    for line in content.splitlines():
        line = line.strip()
        if not line.startswith('KEY:'):
            continue
        parts = [part.strip() for part in line.split('|')]
        if len(parts) < 3:
            continue
        key_match = _KEY_RE.match(parts[0])
        type_match = _TYPE_RE.match(parts[1])
        desc_match = _DESC_RE.match(' | '.join(parts[2:]))
        if key_match and type_match and desc_match:
            issues.append(SemanticIssue(
                key=key_match.group(1).strip(),
                category=type_match.group(1).strip().lower(),
                description=desc_match.group(1).strip(),
            ))
    return issues


@dataclass
class ReviewOutcome:
    issues: Optional[List[SemanticIssue]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SemanticReviewer:
    def __init__(self, session: GenerationSession, source: Mapping, prompt_context: PromptContext,
                 glossary: Mapping[str, str]):
        self.session = session
        self.source = source
        self.prompt_context = prompt_context
        self.glossary = dict(glossary)

    async def review(self, candidate: Mapping) -> ReviewOutcome:
        prompt = build_review_prompt(self.source, candidate, self.prompt_context, self.glossary)
        outcome = await self.session.request(prompt, REVIEW_MAX_OUTPUT_TOKENS)
        if not outcome.ok:
            return ReviewOutcome(error=outcome.error)
        return ReviewOutcome(issues=parse_review_response(outcome.text))


@dataclass
class FixOutcome:
    key: str
    status: str
    value: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        entry: Dict[str, Any] = {'key': self.key, 'status': self.status}
        if self.reason:
            entry['reason'] = self.reason
        return entry


@dataclass
class SemanticFixer:
    """
    Requests a corrected value for one reviewed key.

    A fix is only returned as applied when ``check_value`` finds nothing
    wrong with it; otherwise the caller keeps the current value.
    """
    session: GenerationSession
    source: Mapping
    prompt_context: PromptContext
    glossary: Mapping[str, str]
    target_language: str
    batches: Sequence[Batch] = field(default_factory=tuple)
    policy: ValidationPolicy = DEFAULT_POLICY

    async def fix(self, issue: SemanticIssue, candidate: Mapping) -> FixOutcome:
        if issue.key not in self.source:
            return FixOutcome(issue.key, FIX_SKIPPED, reason='unknown key')
        source_value = self.source[issue.key]
        if not isinstance(source_value, str):
            return FixOutcome(issue.key, FIX_SKIPPED, reason='array key')
        current_value = candidate.get(issue.key)
        if not isinstance(current_value, str):
            return FixOutcome(issue.key, FIX_SKIPPED, reason='no current value')

        section_block = build_section_context(issue.key, find_batch(self.batches, issue.key), self.source,
                                              candidate, self.prompt_context.language_name, limit=None)
        prompt = build_fix_prompt(issue.key, issue.category, issue.description, source_value, current_value,
                                  self.prompt_context, self.glossary, section_block)
        outcome = await self.session.request(prompt, FIX_MAX_OUTPUT_TOKENS)
        if not outcome.ok:
            return FixOutcome(issue.key, FIX_FAILED, reason=outcome.error)

        value = strip_wrapping_quotes(outcome.text)
        problems = check_value(issue.key, source_value, value, self.target_language, self.policy)
        if problems:
            return FixOutcome(issue.key, FIX_REVERTED, reason=problems[0].message)
        return FixOutcome(issue.key, FIX_APPLIED, value=value)
