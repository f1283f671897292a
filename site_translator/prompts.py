"""
Prompt construction for every generation request the pipeline makes.

Prompts are plain strings. The builders only assemble text; they never call
the backend and never parse responses.
"""
import json
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Sequence, Tuple, Union

import tiktoken

from site_translator.source_document import Batch

Value = Union[str, Sequence[str]]

SECTION_CONTEXT_CHAR_LIMIT = 200
PRIOR_TRANSLATION_CHAR_LIMIT = 120
PRIOR_TRANSLATIONS_TOKEN_BUDGET = 3000

CLEAN_SENTINEL = 'CLEAN'

# Language-specific quotation examples quoted in the rules
QUOTE_EXAMPLES = 'Polish: „...”, German: „...“, French: « ... »'


@dataclass(frozen=True)
class PromptContext:
    """Per-run values shared by all prompts for one target language."""
    language_name: str
    protected_names: Tuple[str, ...] = ()
    protected_titles: Tuple[str, ...] = ()
    content_register: str = 'Academic critical theory register'
    translator_persona: str = ('an expert academic translator specializing in critical theory, '
                               'media studies, and philosophy of technology')
    source_language_name: str = 'English'
    model_name: str = 'gpt-4o'


def count_tokens(text: str, model_name: str = 'gpt-4o') -> int:
    """Count the number of tokens in ``text`` for ``model_name``.

    ``tiktoken.encoding_for_model`` may need to download encoding data and
    does not know non-OpenAI models. It falls back to ``cl100k_base`` and, as
    a last resort, to a whitespace split.
    """
    try:
        encoding = tiktoken.encoding_for_model(model_name)
    except Exception:
        try:
            encoding = tiktoken.get_encoding("cl100k_base")
        except Exception:
            return len(text.split())

    try:
        return len(encoding.encode(text))
    except Exception:
        return len(text.split())


def truncate_text(text: str, limit: Optional[int]) -> str:
    if limit is None or len(text) <= limit:
        return text
    return text[:limit] + '...'


def format_glossary(glossary: Mapping[str, str]) -> str:
    if not glossary:
        return ''
    entries = '\n'.join(f'  "{source}" → "{target}"' for source, target in glossary.items())
    return f"\nGLOSSARY (use these EXACT terms for consistency):\n{entries}\n"


def _names_list(ctx: PromptContext) -> str:
    return ', '.join(ctx.protected_names)


def _titles_list(ctx: PromptContext) -> str:
    return ', '.join(f'"{title}"' for title in ctx.protected_titles)


def build_rules(ctx: PromptContext) -> str:
    """The rule list shared by key translation, retries and fixes."""
    lines = ["- Use EXACTLY the terms from the GLOSSARY above"]
    if ctx.protected_names:
        lines.append(
            f"- Proper names ({_names_list(ctx)}): keep recognizable. Grammatical declension IS ALLOWED "
            f"for natural {ctx.language_name} grammar. Do NOT transliterate or translate."
        )
    if ctx.protected_titles:
        lines.append(f"- Brand names and book titles VERBATIM, no declension: {_titles_list(ctx)}")
    lines.extend([
        "- Preserve ALL HTML tags exactly (<strong>, </strong>, <cite>, </cite>, <em>, </em>), same count",
        "- Preserve → arrow symbols",
        "- Preserve markdown formatting (**, -, \\n) if present",
        f"- {ctx.content_register}",
        f"- Use proper typographic quotation marks for {ctx.language_name} (e.g. {QUOTE_EXAMPLES}). "
        "Never leave ASCII straight quotes.",
        "- GRAMMAR: Verb number must agree with its subject. Plural subject → plural verb.",
    ])
    return '\n'.join(lines)


def build_section_context(
        key: str,
        batch: Optional[Batch],
        source: Mapping[str, Value],
        translations: Mapping[str, Value],
        language_name: str,
        limit: Optional[int] = SECTION_CONTEXT_CHAR_LIMIT
) -> str:
    """
    Describe the neighbouring keys of ``key`` within its batch.

    Includes the source text of every other string key in the batch and the
    target text already produced for them, each capped at ``limit``
    characters (``None`` disables the cap).
    """
    if batch is None:
        return ''

    section_source: Dict[str, str] = {}
    section_target: Dict[str, str] = {}
    for other in batch.keys:
        if other == key or other not in source:
            continue
        if isinstance(source[other], str):
            section_source[other] = truncate_text(source[other], limit)
        if isinstance(translations.get(other), str):
            section_target[other] = truncate_text(translations[other], limit)

    if not section_source:
        return ''

    block = (f"\nSECTION CONTEXT ({batch.context or batch.name}; neighbouring text, keep terminology consistent):\n"
             f"Source: {json.dumps(section_source, ensure_ascii=False, indent=2)}")
    if section_target:
        block += f"\nAlready translated into {language_name}: {json.dumps(section_target, ensure_ascii=False, indent=2)}"
    return block + '\n'


def build_prior_translations_block(
        translations: Mapping[str, Value],
        model_name: str,
        max_tokens: int = PRIOR_TRANSLATIONS_TOKEN_BUDGET
) -> str:
    """
    Condense translations produced so far into a terminology reference.

    Only string values are included, each cut to a short prefix; entries are
    added in order until the token budget is spent.
    """
    summary: Dict[str, str] = {}
    total_tokens = 0
    for key, value in translations.items():
        if not isinstance(value, str):
            continue
        entry = truncate_text(value, PRIOR_TRANSLATION_CHAR_LIMIT)
        entry_tokens = count_tokens(f'"{key}": "{entry}"', model_name)
        if total_tokens + entry_tokens > max_tokens:
            break
        summary[key] = entry
        total_tokens += entry_tokens

    if not summary:
        return ''
    return ("\nPRIOR TRANSLATIONS (maintain consistent terminology with these):\n"
            f"{json.dumps(summary, ensure_ascii=False, indent=2)}\n")


def build_glossary_prompt(source: Mapping[str, Value], ctx: PromptContext, required_terms: Sequence[str]) -> str:
    required = '\n'.join(f'- "{term}"' for term in required_terms)
    return f"""You are {ctx.translator_persona}.

Analyze this {ctx.source_language_name} text and extract ALL key domain-specific terms that require consistent translation into {ctx.language_name}. Include:
- Philosophical/theoretical concepts
- Technical terms used in specific academic senses
- Key phrases that form the argumentative backbone
- Meta-terms that refer to the text itself (e.g. "framework", "manifesto")
- Any term that appears in multiple places and MUST be translated consistently

IMPORTANT: You MUST include translations for ALL of these terms:
{required}

Return ONLY a JSON object mapping {ctx.source_language_name} term → canonical {ctx.language_name} translation.
No markdown fences, no explanation. Example format:
{{"feedback loop": "translated term", "divergence": "translated term"}}

TEXT:
{json.dumps(dict(source), ensure_ascii=False, indent=2)}"""


def build_key_prompt(
        source_value: Value,
        ctx: PromptContext,
        glossary: Mapping[str, str],
        section_block: str = '',
        feedback: Sequence[str] = ()
) -> str:
    """
    Prompt for translating a single key.

    String values ask for plain text back; array values ask for a JSON array
    of the same length. ``feedback`` carries validation errors from a
    previous attempt.
    """
    glossary_block = format_glossary(glossary)
    feedback_block = ''
    if feedback:
        feedback_block = "\nFIX THESE ERRORS:\n" + '\n'.join(feedback) + '\n'

    if isinstance(source_value, (list, tuple)):
        count = len(source_value)
        return f"""Translate these {count} items from {ctx.source_language_name} to {ctx.language_name}.
Return ONLY a JSON array with exactly {count} translated strings. No explanation, no fences.
{glossary_block}{feedback_block}
SOURCE: {json.dumps(list(source_value), ensure_ascii=False)}"""

    return f"""Translate this text from {ctx.source_language_name} to {ctx.language_name}.
Return ONLY the translated text. No quotes around it, no explanation, no labels.
{glossary_block}{section_block}
RULES:
{build_rules(ctx)}
{feedback_block}
SOURCE:
{source_value}"""


def build_batch_prompt(
        batch: Batch,
        batch_source: Mapping[str, Value],
        ctx: PromptContext,
        glossary: Mapping[str, str],
        prior_block: str = ''
) -> str:
    """Prompt for translating a derived batch as one JSON object."""
    rules = ["Return ONLY valid JSON with the exact same keys. No markdown fences, no explanation."]
    if ctx.protected_names:
        rules.append(f"Proper names ({_names_list(ctx)}): keep recognizable. Grammatical declension for natural "
                     f"{ctx.language_name} grammar IS ALLOWED. Do NOT transliterate or translate.")
    if ctx.protected_titles:
        rules.append(f"Brand names and book titles VERBATIM (no declension): {_titles_list(ctx)}.")
    rules.extend([
        "Preserve ALL HTML tags exactly (<strong>, </strong>, <cite>, </cite>, <em>, </em>). "
        "Tag count must match source.",
        "Preserve → arrow symbols in <cite> references.",
        "Preserve markdown formatting (**, -, \\n) if present.",
        f"{ctx.content_register}. Maintain precision and depth. Do not simplify.",
        "For array values, return arrays with the SAME number of items.",
        f"Translate EVERY value into {ctx.language_name}. Do not leave anything in {ctx.source_language_name}.",
        "Use EXACTLY the terms from the GLOSSARY above. Do not deviate.",
        f"Use proper typographic quotation marks for {ctx.language_name} (e.g. {QUOTE_EXAMPLES}). "
        "Never leave ASCII straight quotes.",
        "GRAMMAR: Ensure verb number agrees with its subject. If the subject is plural, the verb MUST be plural.",
    ])
    numbered_rules = '\n'.join(f"{number}. {rule}" for number, rule in enumerate(rules, 1))

    return f"""Translate the following JSON from {ctx.source_language_name} to {ctx.language_name}.

CONTEXT: {batch.context}
{format_glossary(glossary)}{prior_block}
RULES:
{numbered_rules}

SOURCE:
{json.dumps(dict(batch_source), ensure_ascii=False, indent=2)}"""


def build_review_prompt(
        source: Mapping[str, Value],
        candidate: Mapping[str, Value],
        ctx: PromptContext,
        glossary: Mapping[str, str]
) -> str:
    protected = '; '.join(ctx.protected_names + ctx.protected_titles) or '(none)'
    lang = ctx.language_name
    return f"""You are a professional {lang} translation quality reviewer.

Compare the {lang} translation against the {ctx.source_language_name} source and find issues:

1. UNTRANSLATED: {ctx.source_language_name} words left untranslated in {lang} text (except protected names/titles)
2. INCONSISTENCY: Same concept translated with different {lang} terms across keys
3. GLOSSARY: Term translated differently than the canonical glossary entry below
4. QUOTES: Mismatched or inconsistent quotation mark styles
5. REGISTER: Breaks in the expected register ({ctx.content_register})
6. MEANING: Significant meaning shifts, omissions, or additions vs the source
{format_glossary(glossary)}
PROTECTED (must stay in original language, do NOT flag these):
{protected}

IMPORTANT: Use this EXACT line-based format (NOT JSON). One issue per line:
KEY: the.key | TYPE: untranslated | DESC: concise description of the problem and how to fix it

If the translation is clean, write ONLY: {CLEAN_SENTINEL}

Do NOT flag:
- Protected names/titles staying in the original language
- Minor stylistic preferences, only clear errors
- Key ordering (handled separately)
- Grammatical case of protected names after prepositions

{ctx.source_language_name.upper()} SOURCE:
{json.dumps(dict(source), ensure_ascii=False, indent=2)}

{lang.upper()} TRANSLATION:
{json.dumps(dict(candidate), ensure_ascii=False, indent=2)}"""


def build_fix_prompt(
        key: str,
        category: str,
        description: str,
        source_value: str,
        current_value: str,
        ctx: PromptContext,
        glossary: Mapping[str, str],
        section_block: str = ''
) -> str:
    lang = ctx.language_name
    return f"""Fix this {lang} translation based on the review feedback.

KEY: {key}
ISSUE TYPE: {category}
ISSUE: {description}
{format_glossary(glossary)}{section_block}
{ctx.source_language_name.upper()} SOURCE:
{source_value}

CURRENT {lang.upper()} TRANSLATION:
{current_value}

RULES:
- Return ONLY the corrected translation. No quotes around it, no explanation, no labels.
{build_rules(ctx)}"""
