"""Unit tests for the security scanner."""
import pytest

from site_translator.security_scanner import (
    DANGEROUS_PATTERNS,
    find_disallowed_tags,
    scan_mapping,
    scan_value,
    suspicious_codepoints,
)

# One sample per entry of the dangerous pattern catalogue, in catalogue order
DANGEROUS_SAMPLES = [
    '<a href="javascript:alert(1)">x</a>',
    '<b onclick="steal()">x</b>',
    '<script>alert(1)',
    'text</script>',
    '<iframe src="x">',
    '<object data="x">',
    '<embed src="x">',
    '<link rel="stylesheet">',
    '<meta http-equiv="refresh">',
    '<svg onload=x>',
    '<form action="x">',
    '<input value="x">',
    '<img src=x>',
    'data:text/html;base64,AAAA',
    'width: expression(alert(1))',
    "background: url('javascript:alert(1)')",
    'hidden <!-- comment -->',
]


class TestDangerousPatterns:

    def test_every_pattern_has_a_sample(self):
        assert len(DANGEROUS_SAMPLES) == len(DANGEROUS_PATTERNS)

    @pytest.mark.parametrize("index, sample", list(enumerate(DANGEROUS_SAMPLES)))
    def test_pattern_is_detected(self, index, sample):
        _, label = DANGEROUS_PATTERNS[index]
        labels = [finding.label for finding in scan_value(sample)]
        assert label in labels

    def test_detection_is_case_insensitive(self):
        labels = [finding.label for finding in scan_value('<SCRIPT>alert(1)</SCRIPT>')]
        assert '<script> tag' in labels
        assert '</script> tag' in labels

    def test_words_starting_with_on_are_not_event_handlers(self):
        assert scan_value('questionnaire=yes, button = ok') == []


class TestTagsAndEncodings:

    def test_allowed_tags_are_clean(self):
        assert scan_value('<strong>Bold</strong> and <cite>→ Zuboff</cite> and <em>it</em>') == []

    def test_disallowed_tag_is_reported(self):
        assert find_disallowed_tags('<strong>a</strong><span>b</span><DIV>') == ['span', 'span', 'div']
        labels = [finding.label for finding in scan_value('<span>b</span>')]
        assert 'disallowed <span> tag' in labels

    def test_entity_encoded_script(self):
        labels = [finding.label for finding in scan_value('&lt;script&gt;alert(1)')]
        assert 'encoded HTML tag' in labels

    def test_suspicious_codepoints_are_listed_once(self):
        text = 'a\u200bb\u200bc\u202ed'
        assert suspicious_codepoints(text) == ['U+200B', 'U+202E']
        findings = scan_value(text)
        assert len(findings) == 1
        assert findings[0].describe() == 'suspicious unicode: U+200B, U+202E'

    def test_unicode_escape_sequence(self):
        labels = [finding.label for finding in scan_value('\\u003cscript\\u003e')]
        assert 'unicode escape sequence' in labels

    def test_plain_text_is_clean(self):
        assert scan_value('Pętla sprzężenia zwrotnego jest formą polityczną.') == []


class TestScanMapping:

    def test_reports_only_offending_keys(self):
        results = scan_mapping({
            'clean': 'Hello',
            'bad': '<script>x</script>',
            'tags': ['ok', '<iframe src=x>'],
        })
        assert set(results) == {'bad', 'tags'}
        assert any(finding.label == '<iframe> tag' for finding in results['tags'])

    def test_clean_mapping(self):
        assert scan_mapping({'a': 'b', 'c': ['d', 'e']}) == {}
