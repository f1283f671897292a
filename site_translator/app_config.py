"""Application configuration module for the site translation pipeline."""
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

import yaml
from dotenv import load_dotenv

from site_translator.generation_backend import (
    PROVIDER_ANTHROPIC,
    PROVIDER_OPENAI,
    SUPPORTED_PROVIDERS,
    GenerationBackend,
    create_backend,
)
from site_translator.logging_config import setup_logger
from site_translator.source_document import Batch, build_batches
from site_translator.translation_validator import ValidationPolicy

API_KEY_ENV_VARS = {
    PROVIDER_OPENAI: 'OPENAI_API_KEY',
    PROVIDER_ANTHROPIC: 'ANTHROPIC_API_KEY',
}

DEFAULT_REQUIRED_GLOSSARY_TERMS = ['framework', 'critical framework', 'manifesto', 'generative practice']


@dataclass
class AppConfig:
    """Application configuration dataclass."""
    # Core paths
    project_root: str
    locales_dir: str
    logs_dir: str
    source_language: str

    # Model configuration
    provider: str
    model_name: str
    review_model_name: str
    models: Dict[str, str]
    requests_per_minute: int

    # Processing settings
    dry_run: bool
    max_technical_rounds: int
    max_semantic_rounds: int

    # Language configuration
    language_codes: Dict[str, str]
    name_to_code: Dict[str, str]

    # Content
    protected_names: List[str]
    protected_titles: List[str]
    required_glossary_terms: List[str]
    content_register: str
    translator_persona: str
    body_batches: List[Batch] = field(default_factory=list)
    derived_batches: List[Batch] = field(default_factory=list)
    validation_policy: ValidationPolicy = field(default_factory=ValidationPolicy)

    @property
    def source_file(self) -> str:
        return os.path.join(self.locales_dir, f'{self.source_language}.json')

    def resolve_model(self, name: Optional[str]) -> str:
        """Map a model alias from the ``models`` table to its id; anything else is used as given."""
        if not name:
            return self.model_name
        return self.models.get(name, name)

    def language_name(self, language_code: str) -> str:
        return self.language_codes.get(language_code, language_code)


def _compute_project_root() -> str:
    """Compute the project root directory."""
    script_real_path = os.path.realpath(__file__)
    script_dir = os.path.dirname(script_real_path)
    return os.path.abspath(os.path.join(script_dir, os.pardir))


def _load_dotenv_files(project_root: str) -> None:
    """Load .env files from project root or docker directory."""
    dotenv_path_project_root = os.path.join(project_root, '.env')
    dotenv_path_docker_dir = os.path.join(project_root, 'docker', '.env')

    if os.path.exists(dotenv_path_project_root):
        load_dotenv(dotenv_path_project_root)
    elif os.path.exists(dotenv_path_docker_dir):
        load_dotenv(dotenv_path_docker_dir)


def _load_yaml_config(project_root: str) -> Dict[str, Any]:
    """Load the YAML configuration file, falling back to defaults on any problem."""
    # TRANSLATOR_CONFIG_FILE (possibly set from .env) overrides the default location
    default_config_path = os.path.join(project_root, 'config.yaml')
    config_file = os.environ.get('TRANSLATOR_CONFIG_FILE', default_config_path)

    if not os.path.isabs(config_file):
        config_file = os.path.abspath(config_file)

    config = {}
    try:
        if not os.path.exists(config_file):
            print(f"Warning: Configuration file '{config_file}' not found. Using default configuration.",
                  file=sys.stderr)
            print(f"Tip: Create a config.yaml file in '{project_root}' or set TRANSLATOR_CONFIG_FILE environment variable.",
                  file=sys.stderr)
            return config

        if not os.access(config_file, os.R_OK):
            print(f"Error: Configuration file '{config_file}' exists but is not readable. Check file permissions.",
                  file=sys.stderr)
            return config

        with open(config_file, 'r', encoding='utf-8') as config_file_stream:
            loaded_config = yaml.safe_load(config_file_stream)
            if loaded_config is None:
                print(f"Warning: Configuration file '{config_file}' is empty. Using default configuration.",
                      file=sys.stderr)
            elif isinstance(loaded_config, dict):
                config = loaded_config
                print(f"Successfully loaded configuration from: {config_file}", file=sys.stderr)
            else:
                print(f"Error: Configuration file '{config_file}' must contain a YAML dictionary. Using defaults.",
                      file=sys.stderr)

    except yaml.YAMLError as e:
        print(f"Error: Invalid YAML in configuration file '{config_file}': {e}", file=sys.stderr)
        print("Please check your YAML syntax. Using default configuration.", file=sys.stderr)
    except OSError as e:
        print(f"Error: Could not read configuration file '{config_file}': {e}", file=sys.stderr)
        print("Using default configuration.", file=sys.stderr)

    return config


def _setup_logger_from_config(config: Dict[str, Any], project_root: str) -> logging.Logger:
    """Set up logger based on configuration."""
    log_config = config.get('logging', {})
    log_level_str = log_config.get('log_level', 'INFO').upper()
    log_file_path = log_config.get('log_file_path', 'logs/site_translator.log')
    if log_file_path and not os.path.isabs(log_file_path):
        log_file_path = os.path.join(project_root, log_file_path)
    log_to_console = log_config.get('log_to_console', True)
    return setup_logger(log_level_str, log_file_path, log_to_console)


def _log_dotenv_status(logger: logging.Logger, project_root: str) -> None:
    """Log the status of .env file loading."""
    dotenv_path_project_root = os.path.join(project_root, '.env')
    dotenv_path_docker_dir = os.path.join(project_root, 'docker', '.env')

    if os.path.exists(dotenv_path_project_root):
        logger.info("Loaded environment variables from: %s", dotenv_path_project_root)
    elif os.path.exists(dotenv_path_docker_dir):
        logger.info("Loaded environment variables from: %s", dotenv_path_docker_dir)
    else:
        logger.info(
            "No .env file found in project root ('%s') or in docker/ ('%s'). Relying on system environment variables if any.",
            dotenv_path_project_root,
            dotenv_path_docker_dir
        )


def _build_language_mappings(locales_list: List[Dict[str, str]]) -> tuple[Dict[str, str], Dict[str, str]]:
    """Build language code mappings from supported locales."""
    language_codes: Dict[str, str] = {}
    name_to_code: Dict[str, str] = {}

    for locale in locales_list:
        code = locale.get('code')
        name = locale.get('name')
        if code and name:
            language_codes[code] = name
            name_to_code[name.lower()] = code

    return language_codes, name_to_code


def _resolve_path(project_root: str, path: str) -> str:
    return path if os.path.isabs(path) else os.path.join(project_root, path)


def _build_validation_policy(config: Dict[str, Any], source_language: str,
                             protected_names: List[str], protected_titles: List[str]) -> ValidationPolicy:
    """Build the validator thresholds, overriding defaults with the ``validation`` section."""
    validation = config.get('validation', {}) or {}
    defaults = ValidationPolicy()
    return ValidationPolicy(
        allowed_tags=tuple(validation.get('allowed_tags', defaults.allowed_tags)),
        protected_names=tuple(protected_names),
        protected_titles=tuple(protected_titles),
        dense_script_languages=frozenset(validation.get('dense_script_languages', defaults.dense_script_languages)),
        dense_length_ratio=tuple(validation.get('dense_length_ratio', defaults.dense_length_ratio)),
        default_length_ratio=tuple(validation.get('default_length_ratio', defaults.default_length_ratio)),
        preserved_symbols=tuple(validation.get('preserved_symbols', defaults.preserved_symbols)),
        source_language=source_language,
        untranslated_min_length=validation.get('untranslated_min_length', defaults.untranslated_min_length),
        untranslated_max_share=validation.get('untranslated_max_share', defaults.untranslated_max_share),
    )


def create_configured_backend(config: AppConfig, logger: logging.Logger) -> GenerationBackend:
    """Create the generation backend of the configured provider, exiting if its API key is missing."""
    env_var = API_KEY_ENV_VARS[config.provider]
    api_key = os.environ.get(env_var)
    if not api_key:
        logger.critical(f"CRITICAL: {env_var} environment variable not found.")
        logger.critical(f"Please set {env_var} or choose another provider in the configuration.")
        sys.exit(1)

    backend = create_backend(config.provider, api_key, config.requests_per_minute)
    logger.info(f"{config.provider} client initialized successfully")
    return backend


def load_app_config() -> AppConfig:
    """
    Load application configuration from YAML file and environment variables.

    Returns:
        AppConfig: The loaded application configuration.
    """
    project_root = _compute_project_root()

    _load_dotenv_files(project_root)

    config = _load_yaml_config(project_root)

    logger = _setup_logger_from_config(config, project_root)

    # Log .env status now that logger is available
    _log_dotenv_status(logger, project_root)

    locales_list = config.get('supported_locales', [])
    language_codes, name_to_code = _build_language_mappings(locales_list)

    provider = os.environ.get('TRANSLATOR_PROVIDER', config.get('provider', PROVIDER_OPENAI))
    if provider not in SUPPORTED_PROVIDERS:
        logger.critical(f"Unsupported provider '{provider}'. Expected one of: {', '.join(SUPPORTED_PROVIDERS)}")
        sys.exit(1)

    models = dict(config.get('models', {}) or {})
    configured_model = config.get('model_name', 'gpt-4o')
    model_name = models.get(configured_model, configured_model)
    configured_review_model = os.environ.get('REVIEW_MODEL_NAME', config.get('review_model_name', model_name))
    review_model_name = models.get(configured_review_model, configured_review_model)

    source_language = config.get('source_language', 'en')
    protected_names = list(config.get('protected_names', []) or [])
    protected_titles = list(config.get('protected_titles', []) or [])

    batches_config = config.get('batches', {}) or {}

    return AppConfig(
        project_root=project_root,
        locales_dir=_resolve_path(project_root, config.get('locales_dir', 'locales')),
        logs_dir=_resolve_path(project_root, config.get('logs_dir', 'logs')),
        source_language=source_language,
        provider=provider,
        model_name=model_name,
        review_model_name=review_model_name,
        models=models,
        requests_per_minute=int(config.get('requests_per_minute', 60)),
        dry_run=config.get('dry_run', False),
        max_technical_rounds=int(config.get('max_technical_rounds', 3)),
        max_semantic_rounds=int(config.get('max_semantic_rounds', 3)),
        language_codes=language_codes,
        name_to_code=name_to_code,
        protected_names=protected_names,
        protected_titles=protected_titles,
        required_glossary_terms=list(config.get('required_glossary_terms', DEFAULT_REQUIRED_GLOSSARY_TERMS)),
        content_register=config.get('content_register', 'Academic critical theory register'),
        translator_persona=config.get(
            'translator_persona',
            'an expert academic translator specializing in critical theory, media studies, '
            'and philosophy of technology'
        ),
        body_batches=build_batches(batches_config.get('body', []) or [], derived=False),
        derived_batches=build_batches(batches_config.get('derived', []) or [], derived=True),
        validation_policy=_build_validation_policy(config, source_language, protected_names, protected_titles),
    )
