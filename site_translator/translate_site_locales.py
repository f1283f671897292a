"""
Translate the site's source locale file into target languages.

For each requested language the pipeline runs:

1. Glossary: load the cached term list or generate one from the full source.
2. First pass: body sections key by key with section context, then derived
   batches as structured requests.
3. Technical validation and per-key retries until the candidate is clean.
   Security violations abort the language immediately.
4. Semantic review and vetted fixes.
5. Typographic quote normalization, a final security scan, key reordering
   and a single write of the finished file.

A language that fails is never written, so the site keeps serving the
previously published file or the source language. A run log is written for
every language that was attempted.
"""
import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

# --- Python Version Check ---
# This script requires Python 3.11 or newer.
if sys.version_info < (3, 11):
    sys.stderr.write("Error: This script requires Python 3.11 or newer.\n")
    sys.stderr.write(f"You are running Python {sys.version.split()[0]}.\n")
    sys.exit(1)
# --- End Version Check ---

import jsonschema

from site_translator.app_config import AppConfig, create_configured_backend, load_app_config
from site_translator.batch_translator import BatchTranslator, RetryEngine
from site_translator.generation_backend import GenerationBackend, GenerationSession
from site_translator.glossary import GlossaryManager
from site_translator.logging_config import LOGGER_NAME
from site_translator.prompts import PromptContext
from site_translator.quotes import normalize_quotes
from site_translator.run_log import RESULT_FAILED, RESULT_SUCCESS, TranslationRunLog
from site_translator.security_scanner import scan_mapping
from site_translator.semantic_review import FIX_APPLIED, SemanticFixer, SemanticReviewer
from site_translator.source_document import (
    SourceDocument,
    complete_batches,
    load_published_translations,
    locale_file_path,
    reorder_keys,
    write_json_file,
)
from site_translator.translation_validator import ValidationPolicy, validate_translation

logger = logging.getLogger(LOGGER_NAME)

RUN_SUCCESS = RESULT_SUCCESS
RUN_FAILED = RESULT_FAILED
RUN_SKIPPED = 'skipped'


@dataclass
class RunResult:
    language: str
    status: str
    output_path: Optional[str] = None
    log_path: Optional[str] = None


def build_prompt_context(config: AppConfig, language_code: str, model_name: str) -> PromptContext:
    return PromptContext(
        language_name=config.language_name(language_code),
        protected_names=tuple(config.protected_names),
        protected_titles=tuple(config.protected_titles),
        content_register=config.content_register,
        translator_persona=config.translator_persona,
        source_language_name=config.language_name(config.source_language),
        model_name=model_name,
    )


def normalize_candidate_quotes(candidate: Dict[str, Any], language_code: str) -> int:
    """Normalize quotation marks of every string value in place; returns the number of changed keys."""
    changed = 0
    for key, value in candidate.items():
        if not isinstance(value, str):
            continue
        normalized = normalize_quotes(value, language_code)
        if normalized != value:
            candidate[key] = normalized
            changed += 1
    return changed


async def run_technical_loop(
        source: Mapping,
        candidate: Dict[str, Any],
        language_code: str,
        policy: ValidationPolicy,
        retry_engine: RetryEngine,
        max_rounds: int,
        run_log: TranslationRunLog
) -> bool:
    """
    Validate and retry failed keys until the candidate is clean.

    Returns:
        True once a validation round reports no errors; False on a security
        violation, when the rounds are exhausted or when no key can be
        identified for a retry.
    """
    for round_number in range(1, max_rounds + 1):
        label = 'Technical validation' if round_number == 1 else f'Retry round {round_number - 1} -> re-validate'
        logger.info(f"=== {label} ===")

        report = validate_translation(source, candidate, language_code, policy)
        for warning in report.warnings:
            logger.warning(f"  {warning}")

        if report.is_clean:
            logger.info(f"  All {len(candidate)} keys passed technical validation")
            run_log.add_phase({'phase': label, 'errors': 0, 'warnings': len(report.warnings)})
            return True

        if report.has_security_errors:
            logger.error("  SECURITY VIOLATION - aborting:")
            for issue in report.security_errors:
                logger.error(f"    {issue.message}")
            run_log.add_phase({'phase': label, 'errors': report.messages, 'securityAbort': True})
            return False

        logger.warning(f"  {len(report.errors)} error(s):")
        for message in report.messages:
            logger.warning(f"    - {message}")
        run_log.add_phase({'phase': label, 'errors': report.messages, 'warnings': len(report.warnings)})

        if round_number == max_rounds:
            return False

        failed_keys = report.failed_keys(list(source))
        if not failed_keys:
            logger.error("  Cannot identify specific keys to retry.")
            return False

        logger.info(f"  Retrying {len(failed_keys)} key(s)...")
        retry_entries = []
        for key in failed_keys:
            outcome = await retry_engine.retry(key, report)
            retry_entries.append({'key': key, 'error': outcome.error})
            if not outcome.ok:
                logger.warning(f"    {key}: FAIL {outcome.error}")
                continue
            candidate[key] = outcome.value
        run_log.add_phase({'phase': f'retry-{round_number}', 'keys': retry_entries})

    return False


async def run_semantic_loop(
        reviewer: SemanticReviewer,
        fixer: SemanticFixer,
        candidate: Dict[str, Any],
        max_rounds: int,
        run_log: TranslationRunLog
) -> None:
    """Review the candidate and apply vetted fixes in place until nothing changes."""
    for round_number in range(1, max_rounds + 1):
        label = 'Semantic review' if round_number == 1 else f'Semantic review (round {round_number})'
        logger.info(f"=== {label} ===")

        review = await reviewer.review(candidate)
        if not review.ok:
            logger.warning(f"  Review failed: {review.error}")
            run_log.add_phase({'phase': label, 'error': review.error})
            return

        phase: Dict[str, Any] = {
            'phase': label,
            'issuesFound': len(review.issues),
            'issues': [issue.to_dict() for issue in review.issues],
            'applied': [],
        }
        if not review.issues:
            logger.info("  No semantic issues found")
            run_log.add_phase(phase)
            return

        applied = 0
        for issue in review.issues:
            logger.info(f"  [{issue.category}] {issue.key}: {issue.description}")
            fix = await fixer.fix(issue, candidate)
            logger.info(f"    -> {fix.status}" + (f" ({fix.reason})" if fix.reason else ''))
            phase['applied'].append(fix.to_dict())
            if fix.status == FIX_APPLIED:
                candidate[issue.key] = fix.value
                applied += 1

        logger.info(f"  Applied {applied}/{len(review.issues)} fix(es)")
        run_log.add_phase(phase)
        if applied == 0:
            return


async def _run_pipeline(
        language_code: str,
        config: AppConfig,
        backend: GenerationBackend,
        source: SourceDocument,
        model: str,
        review_model: str,
        output_path: str,
        regenerate_glossary: bool,
        run_log: TranslationRunLog
) -> bool:
    policy = config.validation_policy
    session = GenerationSession(backend, model, run_log)
    review_session = session if review_model == model else GenerationSession(backend, review_model, run_log)
    prompt_context = build_prompt_context(config, language_code, model)
    body_batches, derived_batches = complete_batches(source, config.body_batches, config.derived_batches)

    # Glossary
    glossary_manager = GlossaryManager(session, config.locales_dir, source, prompt_context,
                                       config.required_glossary_terms, dry_run=config.dry_run)
    glossary = await glossary_manager.load(language_code, regenerate=regenerate_glossary)
    if glossary.error:
        run_log.add_phase({'phase': 'glossary', 'error': glossary.error})
    else:
        run_log.add_phase({'phase': 'glossary', 'source': glossary.provenance, 'terms': len(glossary.terms)})

    # First pass
    logger.info(f"=== Translating body ({len(body_batches)} sections) + derived ({len(derived_batches)} batches) ===")
    translator = BatchTranslator(session, source, prompt_context, glossary.terms)
    candidate: Dict[str, Any] = {}
    batch_entries: List[Dict[str, Any]] = []
    for batch in body_batches:
        candidate, entry = await translator.translate_body_batch(batch, candidate)
        batch_entries.append(entry)
    for batch in derived_batches:
        candidate, entry = await translator.translate_derived_batch(batch, candidate)
        batch_entries.append(entry)
    run_log.add_phase({'phase': 'batch-translate', 'batches': batch_entries})

    # Technical validation
    technically_clean = await run_technical_loop(source, candidate, language_code, policy,
                                                 RetryEngine(translator), config.max_technical_rounds, run_log)
    if not technically_clean:
        logger.error(f"FAILED technical validation for {language_code}. Falling back to {config.source_language}.")
        return False

    # Semantic review
    reviewer = SemanticReviewer(review_session, source, prompt_context, glossary.terms)
    fixer = SemanticFixer(session, source, prompt_context, glossary.terms, language_code,
                          batches=body_batches + derived_batches, policy=policy)
    await run_semantic_loop(reviewer, fixer, candidate, config.max_semantic_rounds, run_log)

    quotes_fixed = normalize_candidate_quotes(candidate, language_code)
    if quotes_fixed:
        logger.info(f"Normalized quotes in {quotes_fixed} key(s)")

    findings = scan_mapping(candidate, policy.allowed_tags)
    if findings:
        details = [f'{key}: {finding.describe()}' for key, key_findings in findings.items()
                   for finding in key_findings]
        logger.error("Final security scan failed; not writing the translation:")
        for detail in details:
            logger.error(f"  {detail}")
        run_log.add_phase({'phase': 'final-security-scan', 'errors': details})
        return False

    ordered = reorder_keys(candidate, source)
    if config.dry_run:
        logger.info(f"Dry run enabled; not writing '{output_path}'.")
    else:
        write_json_file(output_path, ordered)
        logger.info(f"Saved: {output_path}")
    return True


async def translate_language(
        language_code: str,
        config: AppConfig,
        backend: GenerationBackend,
        source: SourceDocument,
        force: bool = False,
        regenerate_glossary: bool = False,
        model_name: Optional[str] = None
) -> RunResult:
    """
    Run the full pipeline for one language.

    Args:
        language_code: Target language code; must be configured in ``supported_locales``.
        config: Application configuration.
        backend: Generation backend shared by all requests.
        source: The source document.
        force: Translate even if the language file already exists.
        regenerate_glossary: Ignore the cached glossary.
        model_name: Model alias or id overriding the configured model.

    Returns:
        The run status with the written output and log paths.
    """
    if language_code not in config.language_codes:
        raise ValueError(f"Unsupported language code '{language_code}'.")

    output_path = locale_file_path(config.locales_dir, language_code)
    if os.path.exists(output_path) and not force:
        logger.info(f"{output_path} already exists. Use --force to overwrite.")
        return RunResult(language_code, RUN_SKIPPED)

    model = config.resolve_model(model_name)
    review_model = model if model_name else config.review_model_name
    language_name = config.language_name(language_code)
    logger.info(f"=== {config.language_name(config.source_language)} -> {language_name} ({language_code}) "
                f"using {model} ===")

    run_log = TranslationRunLog(lang=language_code, lang_name=language_name, model=model)
    succeeded = False
    try:
        succeeded = await _run_pipeline(language_code, config, backend, source, model, review_model,
                                        output_path, regenerate_glossary, run_log)
    except Exception as e:
        logger.exception(f"Unexpected error while translating {language_code}: {e}")
        run_log.add_phase({'phase': 'error', 'error': f"{e.__class__.__name__}: {e}"})
    finally:
        run_log.finish(RESULT_SUCCESS if succeeded else RESULT_FAILED)
        log_path = None
        try:
            log_path = run_log.write(config.logs_dir)
        except OSError as e:
            logger.exception(f"Could not write the run log for {language_code}: {e}")
        logger.info(f"Tokens: {run_log.total_tokens_in} in / {run_log.total_tokens_out} out")

    if not succeeded:
        return RunResult(language_code, RUN_FAILED, log_path=log_path)
    return RunResult(language_code, RUN_SUCCESS,
                     output_path=None if config.dry_run else output_path, log_path=log_path)


def check_published(
        config: AppConfig,
        source: SourceDocument,
        language_codes: Sequence[str] = ()
) -> Dict[str, List[str]]:
    """
    Validate already published translation files without calling any model.

    Returns:
        Error messages per checked language; a clean language maps to an empty list.
    """
    published = load_published_translations(config.locales_dir, config.source_language)
    wanted = list(language_codes) or list(published)
    results: Dict[str, List[str]] = {}
    for language_code in wanted:
        if language_code not in published:
            logger.warning(f"{language_code}: no valid published translation.")
            results[language_code] = ['No valid published translation']
            continue
        report = validate_translation(source, dict(published[language_code]), language_code,
                                      config.validation_policy)
        for warning in report.warnings:
            logger.warning(f"{language_code}: {warning}")
        if report.is_clean:
            logger.info(f"{language_code}: OK")
        else:
            for message in report.messages:
                logger.error(f"{language_code}: {message}")
        results[language_code] = report.messages
    return results


def _build_arg_parser(config: AppConfig) -> argparse.ArgumentParser:
    models = ', '.join(f'{alias} -> {model_id}' for alias, model_id in config.models.items()) or 'none'
    parser = argparse.ArgumentParser(
        prog='site-translate',
        description='Translate the site source locale file with a language model.',
        epilog=f"Languages: {', '.join(config.language_codes)}. Models: {models}. Default model: {config.model_name}.",
    )
    parser.add_argument('languages', nargs='*', metavar='LANG', help='Target language codes.')
    parser.add_argument('--force', action='store_true', help='Overwrite existing translation files.')
    parser.add_argument('--model', help='Model alias from the configuration or a literal model id.')
    parser.add_argument('--regen-glossary', action='store_true', help='Regenerate the glossary even if cached.')
    parser.add_argument('--check', action='store_true',
                        help='Validate published translation files against the source and exit.')
    parser.add_argument('--dry-run', action='store_true', help='Run the pipeline without writing any files '
                                                               'except the run log.')
    return parser


async def _translate_all(languages: Sequence[str], config: AppConfig, backend: GenerationBackend,
                         source: SourceDocument, args: argparse.Namespace) -> List[RunResult]:
    results = []
    for language_code in languages:
        results.append(await translate_language(language_code, config, backend, source, force=args.force,
                                                regenerate_glossary=args.regen_glossary, model_name=args.model))
    return results


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Command line entry point.

    Returns:
        The process exit code: 0 when every language succeeded or was skipped.
    """
    config = load_app_config()
    parser = _build_arg_parser(config)
    args = parser.parse_args(argv)
    if args.dry_run:
        config.dry_run = True

    if not args.languages and not args.check:
        parser.print_help()
        return 0

    unknown = [code for code in args.languages if code not in config.language_codes]
    if unknown:
        parser.error(f"unsupported language code(s): {', '.join(unknown)}")

    try:
        source = SourceDocument.load(config.source_file, config.source_language)
    except (OSError, json.JSONDecodeError, jsonschema.ValidationError) as e:
        logger.critical(f"Cannot load source file '{config.source_file}': {e}")
        return 1

    if args.check:
        results = check_published(config, source, args.languages)
        return 1 if any(results.values()) else 0

    backend = create_configured_backend(config, logger)
    results = asyncio.run(_translate_all(args.languages, config, backend, source, args))

    for result in results:
        logger.info(f"{result.language}: {result.status}")
    return 1 if any(result.status == RUN_FAILED for result in results) else 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
