import json
import logging
import os
import tempfile
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import jsonschema

logger = logging.getLogger("site_translator")

# A locale file is a flat object whose values are strings or arrays of strings.
LOCALE_SCHEMA = {
    "type": "object",
    "patternProperties": {
        "^.*$": {
            "anyOf": [
                {"type": "string"},
                {"type": "array", "items": {"type": "string"}}
            ]
        }
    },
    "additionalProperties": False
}

GLOSSARY_FILE_PREFIX = 'glossary-'

Value = Union[str, List[str]]


@dataclass(frozen=True)
class Batch:
    """A named group of source keys translated together for shared context."""
    name: str
    keys: Tuple[str, ...]
    context: str = ''
    derived: bool = False


class SourceDocument(Mapping):
    """
    The trusted source-language document.

    Read-only and ordered: key order is the canonical order of every
    published translation.
    """

    def __init__(self, data: Mapping[str, Value], language: str = 'en'):
        instance = dict(data) if isinstance(data, Mapping) else data
        jsonschema.validate(instance=instance, schema=LOCALE_SCHEMA)
        frozen = {key: (list(value) if isinstance(value, list) else value) for key, value in data.items()}
        self._data = MappingProxyType(frozen)
        self.language = language

    @classmethod
    def load(cls, file_path: str, language: str = 'en') -> 'SourceDocument':
        """
        Load the source document from a JSON file.

        Raises:
            OSError: If the file cannot be read.
            json.JSONDecodeError: If the file is not valid JSON.
            jsonschema.ValidationError: If the content is not a flat locale mapping.
        """
        with open(file_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return cls(data, language=language)

    def __getitem__(self, key: str) -> Value:
        value = self._data[key]
        # Hand out copies so callers cannot mutate array values in place
        return list(value) if isinstance(value, list) else value

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def is_array(self, key: str) -> bool:
        return isinstance(self._data.get(key), list)

    def string_keys(self) -> List[str]:
        return [key for key, value in self._data.items() if isinstance(value, str)]

    def to_dict(self) -> Dict[str, Value]:
        return {key: self[key] for key in self._data}


def build_batches(
        batch_configs: Sequence[Mapping],
        derived: bool
) -> List[Batch]:
    """Build ``Batch`` records from the ``batches`` section of the configuration."""
    batches = []
    for entry in batch_configs:
        name = entry.get('name')
        keys = entry.get('keys') or []
        if not name or not keys:
            logger.warning("Ignoring batch definition without a name or keys: %s", entry)
            continue
        batches.append(Batch(name=name, keys=tuple(keys), context=entry.get('context', ''), derived=derived))
    return batches


def complete_batches(
        source: Mapping[str, Value],
        body_batches: Sequence[Batch],
        derived_batches: Sequence[Batch]
) -> Tuple[List[Batch], List[Batch]]:
    """
    Make sure every source key is requested by at least one batch.

    Keys that no configured batch lists are gathered, in source order, into a
    trailing body batch named ``unbatched``. Batch keys that do not exist in
    the source are dropped with a warning.
    """
    def _known(batch: Batch) -> Batch:
        unknown = [key for key in batch.keys if key not in source]
        if unknown:
            logger.warning("Batch '%s' lists keys absent from the source (ignored): %s",
                           batch.name, ', '.join(unknown))
        return Batch(batch.name, tuple(key for key in batch.keys if key in source), batch.context, batch.derived)

    body = [_known(batch) for batch in body_batches]
    derived = [_known(batch) for batch in derived_batches]

    covered = {key for batch in body + derived for key in batch.keys}
    leftover = tuple(key for key in source if key not in covered)
    if leftover:
        logger.warning("%d source key(s) are not part of any batch; translating them as 'unbatched'.",
                       len(leftover))
        body.append(Batch(name='unbatched', keys=leftover, context='Remaining site strings.'))

    return [b for b in body if b.keys], [b for b in derived if b.keys]


def find_batch(batches: Sequence[Batch], key: str) -> Optional[Batch]:
    """Return the first batch that lists ``key``."""
    for batch in batches:
        if key in batch.keys:
            return batch
    return None


def reorder_keys(candidate: Mapping[str, Value], source: Mapping[str, Value]) -> Dict[str, Value]:
    """Return a copy of ``candidate`` whose keys follow the source key order."""
    return {key: candidate[key] for key in source if key in candidate}


def load_json_mapping(file_path: str) -> Dict:
    """Load a JSON object from ``file_path``; raises ``ValueError`` if it is not an object."""
    with open(file_path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"'{file_path}' does not contain a JSON object.")
    return data


def write_json_file(file_path: str, data: Mapping) -> None:
    """
    Write ``data`` as pretty-printed UTF-8 JSON.

    The content goes to a temporary file in the destination directory which
    then replaces the target, so readers see either the old or the new file.
    """
    directory = os.path.dirname(os.path.abspath(file_path))
    os.makedirs(directory, exist_ok=True)
    content = json.dumps(data, ensure_ascii=False, indent=2) + '\n'

    temp_file_path = None
    try:
        with tempfile.NamedTemporaryFile(mode='w', delete=False, dir=directory, suffix='.tmp',
                                         encoding='utf-8') as temp_f:
            temp_file_path = temp_f.name
            temp_f.write(content)
        os.replace(temp_file_path, file_path)
        temp_file_path = None
    finally:
        if temp_file_path and os.path.exists(temp_file_path):
            os.remove(temp_file_path)


def locale_file_path(locales_dir: str, language_code: str) -> str:
    return os.path.join(locales_dir, f'{language_code}.json')


def glossary_file_path(locales_dir: str, language_code: str) -> str:
    return os.path.join(locales_dir, f'{GLOSSARY_FILE_PREFIX}{language_code}.json')


def load_published_translations(locales_dir: str, source_language: str = 'en') -> Dict[str, Dict[str, Value]]:
    """
    Load every published translation the serving layer may offer.

    Glossary files and the source file are not translations. Files that are
    not valid JSON or not flat locale mappings are skipped, so the language
    simply falls back to the source content.

    Returns:
        A dictionary mapping language code to its translation mapping.
    """
    translations: Dict[str, Dict[str, Value]] = {}
    if not os.path.isdir(locales_dir):
        logger.warning("Locales directory '%s' does not exist.", locales_dir)
        return translations

    for filename in sorted(os.listdir(locales_dir)):
        if not filename.endswith('.json') or filename.startswith(GLOSSARY_FILE_PREFIX):
            continue
        language_code = filename[:-len('.json')]
        if language_code == source_language:
            continue
        file_path = os.path.join(locales_dir, filename)
        try:
            data = load_json_mapping(file_path)
            jsonschema.validate(instance=data, schema=LOCALE_SCHEMA)
        except (OSError, ValueError, jsonschema.ValidationError) as e:
            logger.warning("Skipping locale file '%s': %s", file_path, e)
            continue
        translations[language_code] = data

    return translations
