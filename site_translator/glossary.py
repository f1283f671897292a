"""
Per-language terminology glossary: cached on disk next to the locale files,
generated from the full source document when absent or when regeneration is
requested.
"""
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

import jsonschema

from site_translator.generation_backend import GenerationSession
from site_translator.prompts import PromptContext, build_glossary_prompt
from site_translator.response_parsing import ResponseParseError, extract_json, preview
from site_translator.source_document import glossary_file_path, load_json_mapping, write_json_file

logger = logging.getLogger("site_translator")

GLOSSARY_MAX_OUTPUT_TOKENS = 2048

PROVENANCE_CACHED = 'cached'
PROVENANCE_GENERATED = 'generated'
PROVENANCE_NONE = 'none'

GLOSSARY_SCHEMA = {
    "type": "object",
    "patternProperties": {
        "^.*$": {"type": "string"}
    },
    "additionalProperties": False
}


@dataclass
class Glossary:
    terms: Dict[str, str] = field(default_factory=dict)
    provenance: str = PROVENANCE_NONE
    error: Optional[str] = None


class GlossaryManager:
    """Loads or generates the glossary of one target language."""

    def __init__(self, session: GenerationSession, locales_dir: str, source: Mapping,
                 prompt_context: PromptContext, required_base: Sequence[str] = (), dry_run: bool = False):
        self.session = session
        self.locales_dir = locales_dir
        self.source = source
        self.prompt_context = prompt_context
        self.required_base = list(required_base)
        self.dry_run = dry_run

    def load_cached(self, language_code: str) -> Optional[Dict[str, str]]:
        """Return the persisted glossary, or None if it is absent or unreadable."""
        file_path = glossary_file_path(self.locales_dir, language_code)
        if not os.path.exists(file_path):
            return None
        try:
            terms = load_json_mapping(file_path)
            jsonschema.validate(instance=terms, schema=GLOSSARY_SCHEMA)
        except (OSError, ValueError, jsonschema.ValidationError) as e:
            logger.warning(f"Ignoring unreadable glossary '{file_path}': {e}")
            return None
        return terms

    def required_terms(self, language_code: str) -> List[str]:
        """Base vocabulary followed by the terms of any cached glossary, without duplicates."""
        terms: Dict[str, None] = dict.fromkeys(self.required_base)
        cached = self.load_cached(language_code) or {}
        terms.update(dict.fromkeys(cached))
        return list(terms)

    async def load(self, language_code: str, regenerate: bool = False) -> Glossary:
        if not regenerate:
            cached = self.load_cached(language_code)
            if cached is not None:
                logger.info(f"Using cached glossary for {language_code} ({len(cached)} terms).")
                return Glossary(terms=cached, provenance=PROVENANCE_CACHED)

        required = self.required_terms(language_code)
        logger.info(f"Generating glossary for {language_code} ({len(required)} required terms)...")
        prompt = build_glossary_prompt(self.source, self.prompt_context, required)
        outcome = await self.session.request(prompt, GLOSSARY_MAX_OUTPUT_TOKENS)
        if not outcome.ok:
            logger.warning(f"Glossary generation failed, continuing without glossary: {outcome.error}")
            return Glossary(error=outcome.error)

        try:
            terms = extract_json(outcome.text)
            jsonschema.validate(instance=terms, schema=GLOSSARY_SCHEMA)
        except ResponseParseError as e:
            logger.warning(f"Glossary response could not be parsed ({e}): {preview(outcome.text)}")
            return Glossary(error=str(e))
        except jsonschema.ValidationError as e:
            logger.warning(f"Glossary response is not a flat term mapping: {e.message}")
            return Glossary(error=f"Invalid glossary: {e.message}")

        if not terms:
            logger.warning("Glossary response was empty, continuing without glossary.")
            return Glossary(error='Empty glossary')

        present = {term.lower() for term in terms}
        missing = [term for term in required if term.lower() not in present]
        if missing:
            logger.warning(f"Glossary is missing required terms: {', '.join(missing)}")

        if self.dry_run:
            logger.info("Dry run enabled; glossary not persisted.")
        else:
            file_path = glossary_file_path(self.locales_dir, language_code)
            write_json_file(file_path, terms)
            logger.info(f"Glossary saved to '{file_path}' ({len(terms)} terms).")

        return Glossary(terms=terms, provenance=PROVENANCE_GENERATED)
