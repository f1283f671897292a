"""
First-pass translation of the source document and per-key re-requests.

Body batches are translated one key at a time so every request can carry the
neighbouring source text and what has already been produced for it. Derived
batches (metadata, structured data, short lists) are requested as one JSON
object each and fall back to the single-key path when that fails.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from tqdm import tqdm

from site_translator.generation_backend import GenerationSession
from site_translator.prompts import (
    PromptContext,
    build_batch_prompt,
    build_key_prompt,
    build_prior_translations_block,
    build_section_context,
)
from site_translator.response_parsing import ResponseParseError, extract_json, preview, strip_wrapping_quotes
from site_translator.source_document import Batch
from site_translator.translation_validator import ValidationReport

logger = logging.getLogger("site_translator")

KEY_MAX_OUTPUT_TOKENS = 2048
BATCH_MAX_OUTPUT_TOKENS = 8192

Value = Union[str, List[str]]


@dataclass
class KeyOutcome:
    """The translated value of one key, or why there is none."""
    key: str
    value: Optional[Value] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _is_string_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


def parse_key_response(text: str, source_value: Value) -> Value:
    """
    Turn a single-key response into a value shaped like ``source_value``.

    Raises:
        ResponseParseError: If an array was expected and the response is not
            a JSON array of strings.
    """
    if isinstance(source_value, list):
        parsed = extract_json(text)
        if not isinstance(parsed, list):
            raise ResponseParseError('Expected array, got object')
        if not _is_string_list(parsed):
            raise ResponseParseError('Array items must be strings')
        return parsed
    return strip_wrapping_quotes(text)


class BatchTranslator:
    """
    Translates keys of one source document into one target language.

    The accumulated translations are owned by the caller: every batch method
    takes the current mapping and returns a new one.
    """

    def __init__(self, session: GenerationSession, source: Mapping[str, Value],
                 prompt_context: PromptContext, glossary: Mapping[str, str]):
        self.session = session
        self.source = source
        self.prompt_context = prompt_context
        self.glossary = dict(glossary)

    async def translate_key(
            self,
            key: str,
            batch: Optional[Batch] = None,
            translations: Optional[Mapping[str, Value]] = None,
            feedback: Sequence[str] = ()
    ) -> KeyOutcome:
        """
        Request a translation for a single key.

        Args:
            key: Source key to translate.
            batch: Body batch the key belongs to. When given, neighbouring keys
                are included as section context.
            translations: Target values produced so far, for section context.
            feedback: Validation errors from a previous attempt.
        """
        source_value = self.source[key]
        section_block = ''
        if batch is not None and isinstance(source_value, str):
            section_block = build_section_context(key, batch, self.source, translations or {},
                                                  self.prompt_context.language_name)

        prompt = build_key_prompt(source_value, self.prompt_context, self.glossary, section_block, feedback)
        outcome = await self.session.request(prompt, KEY_MAX_OUTPUT_TOKENS)
        if not outcome.ok:
            return KeyOutcome(key, error=outcome.error)

        try:
            value = parse_key_response(outcome.text, source_value)
        except ResponseParseError as e:
            logger.debug(f"Unparseable response for '{key}': {preview(outcome.text)}")
            return KeyOutcome(key, error=f"Array parse failed: {e}")
        return KeyOutcome(key, value=value)

    async def translate_body_batch(
            self,
            batch: Batch,
            translations: Mapping[str, Value]
    ) -> Tuple[Dict[str, Value], Dict[str, Any]]:
        """
        Translate every key of a body batch in declared order.

        Returns:
            The updated translations and the batch entry for the run log.
        """
        accumulated = dict(translations)
        failures: List[Dict[str, str]] = []

        for key in tqdm(batch.keys, desc=f"{batch.name}", unit="key", leave=False):
            result = await self.translate_key(key, batch, accumulated)
            if not result.ok:
                logger.warning(f"  {key}: FAIL {result.error}")
                failures.append({'key': key, 'error': result.error})
                continue
            accumulated[key] = result.value

        translated_count = len(batch.keys) - len(failures)
        logger.info(f"  {batch.name}: {translated_count}/{len(batch.keys)}")
        batch_log: Dict[str, Any] = {'name': batch.name, 'keys': len(batch.keys), 'translated': translated_count}
        if failures:
            batch_log['failures'] = failures
        return accumulated, batch_log

    async def translate_derived_batch(
            self,
            batch: Batch,
            translations: Mapping[str, Value]
    ) -> Tuple[Dict[str, Value], Dict[str, Any]]:
        """
        Translate a derived batch with one structured request.

        The prompt includes a condensed view of the translations produced so
        far. If the response is truncated, unparseable or not an object, each
        key is requested on its own instead, without section context.
        """
        accumulated = dict(translations)
        batch_source = {key: self.source[key] for key in batch.keys}
        prior_block = build_prior_translations_block(translations, self.prompt_context.model_name)
        prompt = build_batch_prompt(batch, batch_source, self.prompt_context, self.glossary, prior_block)

        outcome = await self.session.request(prompt, BATCH_MAX_OUTPUT_TOKENS)
        error = outcome.error
        result = None
        if outcome.ok:
            try:
                result = extract_json(outcome.text)
                if not isinstance(result, dict):
                    error = 'Expected object, got array'
            except ResponseParseError as e:
                error = str(e)

        if error is None:
            merged = 0
            for key in batch.keys:
                value = result.get(key)
                if isinstance(value, str) or _is_string_list(value):
                    accumulated[key] = value
                    merged += 1
            logger.info(f"  {batch.name}: OK {merged}/{len(batch.keys)}")
            return accumulated, {'name': batch.name, 'keys': len(batch.keys), 'merged': merged}

        logger.warning(f"  {batch.name}: batch request failed ({error}), translating per key")
        merged = 0
        for key in batch.keys:
            key_result = await self.translate_key(key)
            if not key_result.ok:
                logger.warning(f"    {key}: FAIL {key_result.error}")
                continue
            accumulated[key] = key_result.value
            merged += 1
        return accumulated, {'name': batch.name, 'keys': len(batch.keys), 'merged': merged,
                             'perKey': True, 'error': error}


class RetryEngine:
    """Re-requests single keys with the validation errors that concern them."""

    def __init__(self, translator: BatchTranslator):
        self.translator = translator

    async def retry(self, key: str, report: ValidationReport) -> KeyOutcome:
        return await self.translator.translate_key(key, feedback=report.errors_for_key(key))
