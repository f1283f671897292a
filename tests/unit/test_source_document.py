"""Unit tests for the source document model and locale file helpers."""
import json
import os

import jsonschema
import pytest

from site_translator.source_document import (
    Batch,
    SourceDocument,
    build_batches,
    complete_batches,
    find_batch,
    glossary_file_path,
    load_json_mapping,
    load_published_translations,
    locale_file_path,
    reorder_keys,
    write_json_file,
)


class TestSourceDocument:

    def test_load_keeps_order_and_types(self, tmp_path):
        path = tmp_path / 'en.json'
        path.write_text(json.dumps({'b': 'Bee', 'a': ['x', 'y']}), encoding='utf-8')
        source = SourceDocument.load(str(path))
        assert list(source) == ['b', 'a']
        assert source.is_array('a')
        assert not source.is_array('b')
        assert source.string_keys() == ['b']
        assert source.language == 'en'

    def test_values_cannot_be_mutated(self):
        source = SourceDocument({'tags': ['a', 'b']})
        source['tags'].append('c')
        assert source['tags'] == ['a', 'b']
        with pytest.raises(TypeError):
            source['new'] = 'value'

    @pytest.mark.parametrize("data", [
        {'nested': {'a': 'b'}},
        {'number': 3},
        {'mixed': ['a', 1]},
        ['not', 'an', 'object'],
    ])
    def test_rejects_non_locale_shapes(self, data):
        with pytest.raises(jsonschema.ValidationError):
            SourceDocument(data)

    def test_to_dict(self):
        assert SourceDocument({'a': 'b'}).to_dict() == {'a': 'b'}


class TestBatches:

    def test_build_batches_skips_incomplete_entries(self):
        batches = build_batches([
            {'name': 'meta', 'keys': ['page.title'], 'context': 'Metadata'},
            {'name': 'empty', 'keys': []},
            {'keys': ['x']},
        ], derived=True)
        assert batches == [Batch('meta', ('page.title',), 'Metadata', derived=True)]

    def test_complete_batches_adds_unbatched_keys_and_drops_unknown(self):
        source = {'a': '1', 'b': '2', 'c': '3', 'd': '4'}
        body = [Batch('s1', ('a', 'missing'))]
        derived = [Batch('meta', ('c',), derived=True)]
        body_out, derived_out = complete_batches(source, body, derived)
        assert body_out == [Batch('s1', ('a',)), Batch('unbatched', ('b', 'd'), 'Remaining site strings.')]
        assert derived_out == [Batch('meta', ('c',), derived=True)]

    def test_complete_batches_removes_batches_left_empty(self):
        body_out, derived_out = complete_batches({'a': '1'}, [Batch('s1', ('a',))], [Batch('m', ('gone',))])
        assert body_out == [Batch('s1', ('a',))]
        assert derived_out == []

    def test_find_batch(self):
        batches = [Batch('s1', ('a',)), Batch('s2', ('b', 'c'))]
        assert find_batch(batches, 'c').name == 's2'
        assert find_batch(batches, 'z') is None


class TestFiles:

    def test_reorder_keys_matches_source_order(self):
        source = {'a': '1', 'b': '2', 'c': '3'}
        candidate = {'c': 'z', 'a': 'x', 'b': 'y'}
        assert list(reorder_keys(candidate, source)) == ['a', 'b', 'c']

    def test_write_json_file_replaces_atomically(self, tmp_path):
        path = str(tmp_path / 'out' / 'pl.json')
        write_json_file(path, {'a': 'ą'})
        write_json_file(path, {'b': 'ę'})
        with open(path, encoding='utf-8') as f:
            content = f.read()
        assert content == '{\n  "b": "ę"\n}\n'
        assert os.listdir(tmp_path / 'out') == ['pl.json']

    def test_load_json_mapping_rejects_arrays(self, tmp_path):
        path = tmp_path / 'x.json'
        path.write_text('[1, 2]', encoding='utf-8')
        with pytest.raises(ValueError):
            load_json_mapping(str(path))

    def test_paths(self):
        assert locale_file_path('locales', 'pl') == os.path.join('locales', 'pl.json')
        assert glossary_file_path('locales', 'pl') == os.path.join('locales', 'glossary-pl.json')

    def test_load_published_translations(self, locales_dir):
        files = {
            'en.json': '{"a": "Hello"}',
            'pl.json': '{"a": "Cześć"}',
            'de.json': '{"a": {"nested": true}}',
            'fr.json': '{broken',
            'glossary-pl.json': '{"hello": "cześć"}',
            'notes.txt': 'ignored',
        }
        for name, content in files.items():
            with open(os.path.join(locales_dir, name), 'w', encoding='utf-8') as f:
                f.write(content)

        assert load_published_translations(locales_dir) == {'pl': {'a': 'Cześć'}}

    def test_load_published_translations_missing_dir(self, tmp_path):
        assert load_published_translations(str(tmp_path / 'nope')) == {}
