"""Unit tests for message parsing, rich text stripping and email normalization."""
from datetime import datetime, timedelta, timezone

import pytest

from processor.date_resolver import DateTimeResolver
from processor.text_parser import (
    TextBlockParser,
    detect_trigger,
    is_top_level,
    is_valid_email,
    normalize_email,
    strip_rich_text,
    strip_trigger,
    tokenize,
)


FIXED_NOW = datetime(2025, 11, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def parser():
    """Create a parser with a fixed clock."""
    return TextBlockParser(DateTimeResolver(now=lambda: FIXED_NOW))


COMPLETE_MESSAGE = """@auto
Priority: P1
Issue: Production API timeout
How to replicate: Call /checkout endpoint
Customer: Acme Corp
1Password: support@acme.com
Needed by: 11/04/2025 7PM
Relevant Links: https://x.io"""


class TestTriggerDetection:
    """Test cases for trigger keyword handling."""

    @pytest.mark.parametrize('text,expected', [
        ('@auto\nPriority: P1', 'auto'),
        ('  @CAT hello', 'cat'),
        ('@Peepo\n', 'peepo'),
        ('@automatic', None),
        ('hello @auto', None),
        ('', None),
        (None, None),
    ])
    def test_detect_trigger(self, text, expected):
        """Test trigger detection at the start of a message only."""
        assert detect_trigger(text) == expected

    def test_strip_trigger_removes_keyword_and_newline(self):
        """Test the trigger line is removed."""
        assert strip_trigger('@auto\nPriority: P1') == 'Priority: P1'

    def test_strip_trigger_same_line(self):
        """Test a trigger followed by text on the same line."""
        assert strip_trigger('@cat Priority: P1') == 'Priority: P1'

    def test_is_top_level(self):
        """Test thread replies are detected."""
        assert is_top_level({'ts': '1.1'})
        assert is_top_level({'ts': '1.1', 'thread_ts': '1.1'})
        assert not is_top_level({'ts': '2.2', 'thread_ts': '1.1'})


class TestStripRichText:
    """Test cases for strip_rich_text."""

    def test_strips_bold(self):
        """Test bold asterisks are removed."""
        assert strip_rich_text('*bold* text') == 'bold text'

    def test_strips_italic(self):
        """Test italic underscores are removed."""
        assert strip_rich_text('_italic_ text') == 'italic text'

    def test_strips_mixed(self):
        """Test mixed bold and italic markers."""
        assert strip_rich_text('*bold* and _italic_ text') == 'bold and italic text'

    def test_preserves_links(self):
        """Test bracketed URLs are left alone."""
        text = 'Check <https://example.com/a_b_c|my_link>'
        assert strip_rich_text(text) == text

    def test_preserves_mailto(self):
        """Test mailto links are left alone."""
        text = '<mailto:first_last@example.com|first_last@example.com>'
        assert strip_rich_text(text) == text

    def test_strips_around_brackets(self):
        """Test emphasis wrapping a bracketed link is removed."""
        assert strip_rich_text('*<mailto:a@b.com|a@b.com>*') == '<mailto:a@b.com|a@b.com>'

    def test_keeps_intra_word_underscores(self):
        """Test underscores inside a word are not emphasis."""
        assert strip_rich_text('first_last@example.com') == 'first_last@example.com'

    def test_plain_text_unchanged(self):
        """Test text without formatting is unchanged."""
        assert strip_rich_text('plain text') == 'plain text'

    @pytest.mark.parametrize('value', [None, '', 42])
    def test_non_string_returns_empty(self, value):
        """Test None and non-strings yield an empty string."""
        assert strip_rich_text(value) == ''


class TestNormalizeEmail:
    """Test cases for normalize_email."""

    @pytest.mark.parametrize('raw,expected', [
        ('*<mailto:support+k1893@doss.com|support+k1893@doss.com>*', 'support+k1893@doss.com'),
        ('_<mailto:user@example.com|user@example.com>_', 'user@example.com'),
        ('<mailto:user+tag@example.com|user+tag@example.com>', 'user+tag@example.com'),
        ('<mailto:target@example.com>', 'target@example.com'),
        ('<user@example.com>', 'user@example.com'),
        ('plain@email.com', 'plain@email.com'),
        ('*plain@email.com*', 'plain@email.com'),
        ('user-name@ex-ample.com', 'user-name@ex-ample.com'),
        ('  spaced@example.com  ', 'spaced@example.com'),
        ('an email email@acme.corp or hint', 'email@acme.corp'),
        ('email@acme.corp is the login', 'email@acme.corp'),
        ('login is support+x@acme.io', 'support+x@acme.io'),
        ('first@a.com and second@b.com', 'first@a.com'),
        ('not-an-email', 'not-an-email'),
    ])
    def test_normalize(self, raw, expected):
        """Test each accepted input form."""
        assert normalize_email(raw) == expected

    def test_display_portion_wins(self):
        """Test the link's display portion is preferred over its target."""
        assert normalize_email('<mailto:target@a.com|shown@b.com>') == 'shown@b.com'

    @pytest.mark.parametrize('value', [None, ''])
    def test_empty(self, value):
        """Test empty input yields an empty string."""
        assert normalize_email(value) == ''

    @pytest.mark.parametrize('address', [
        'a@b.com', 'first_last@example.com', 'user+tag@sub.example.co.uk'
    ])
    def test_idempotent(self, address):
        """Test normalizing a plain address returns it unchanged."""
        assert normalize_email(address) == address
        assert normalize_email(normalize_email(address)) == address

    @pytest.mark.parametrize('address,valid', [
        ('user@company.com', True),
        ('user+tag@company.co', True),
        ('first.last@company.com', True),
        ('user@localhost', False),
        ('user@@company.com', False),
        ('.user@company.com', False),
        ('user..name@company.com', False),
        ('not-an-email', False),
        ('', False),
    ])
    def test_is_valid_email(self, address, valid):
        """Test the email grammar."""
        assert is_valid_email(address) is valid


class TestTokenize:
    """Test cases for the label tokenizer."""

    def test_labels_in_any_order(self):
        """Test labels can appear in any order."""
        pairs = list(tokenize('Customer: Acme\nPriority: P0'))
        assert pairs == [('customer', 'Acme'), ('priority', 'P0')]

    def test_multi_line_values(self):
        """Test a value runs until the next label line."""
        text = 'How to replicate: step one\nstep two\n\nstep three\nCustomer: Acme'
        pairs = dict(tokenize(text))
        assert pairs['replicate'] == 'step one\nstep two\n\nstep three'
        assert pairs['customer'] == 'Acme'

    def test_unknown_label_terminates_value(self):
        """Test an unknown label line ends the previous value and is dropped."""
        pairs = list(tokenize('Issue: broken\nNotes: ignore me\nCustomer: Acme'))
        assert pairs == [('issue', 'broken'), ('customer', 'Acme')]

    def test_url_line_is_not_a_label(self):
        """Test a line starting with a URL continues the current value."""
        pairs = dict(tokenize('Relevant Links:\nhttps://a.io\nhttps://b.io'))
        assert pairs['links'] == 'https://a.io\nhttps://b.io'

    def test_emphasized_label(self):
        """Test bold labels are recognized."""
        pairs = dict(tokenize('*Priority:* P2\n_Customer_: Acme'))
        assert pairs['priority'] == 'P2'
        assert pairs['customer'] == 'Acme'

    def test_label_variants(self):
        """Test whitespace and suffix variants of labels."""
        text = (
            '1 Password: a@b.com\n'
            'HowToReplicate: click\n'
            'Needed by date/time: ASAP\n'
            'Relevant Link: https://x.io'
        )
        pairs = dict(tokenize(text))
        assert pairs['onepass'] == 'a@b.com'
        assert pairs['replicate'] == 'click'
        assert pairs['needed'] == 'ASAP'
        assert pairs['links'] == 'https://x.io'

    def test_lowercase_colon_line_continues_value(self):
        """Test a lowercase "x:" line is part of the current value."""
        text = 'How to replicate: open the app\nstep 2: click pay\nCustomer: Acme'
        pairs = dict(tokenize(text))
        assert pairs['replicate'] == 'open the app\nstep 2: click pay'
        assert pairs['customer'] == 'Acme'

    def test_digit_led_colon_line_continues_value(self):
        """Test a line like "10:30 it crashed" is part of the current value."""
        text = 'Issue: checkout broke\n10:30 it crashed\nafter retry: still broken\nPriority: P0'
        pairs = dict(tokenize(text))
        assert pairs['issue'] == 'checkout broke\n10:30 it crashed\nafter retry: still broken'
        assert pairs['priority'] == 'P0'

    def test_lowercase_known_label_still_starts_field(self):
        """Test known labels begin a field in any case."""
        pairs = dict(tokenize('issue: broken\ncustomer: Acme'))
        assert pairs == {'issue': 'broken', 'customer': 'Acme'}


class TestTextBlockParser:
    """Test cases for TextBlockParser class."""

    def test_parse_complete_message(self, parser):
        """Test a message with every field."""
        result = parser.parse(COMPLETE_MESSAGE)

        assert result.priority == 'P1'
        assert result.issue == 'Production API timeout'
        assert result.replicate == 'Call /checkout endpoint'
        assert result.customer == 'Acme Corp'
        assert result.onepass == 'support@acme.com'
        assert result.needed.hour == 19
        assert result.needed_valid is True
        assert result.needed_raw == '11/04/2025 7PM'
        assert result.urls == ['https://x.io']
        assert result.links_text == 'https://x.io'

    @pytest.mark.parametrize('raw,expected', [
        ('P0', 'P0'),
        ('P2', 'P2'),
        ('**P1**', 'P1'),
        ('*P2*', 'P2'),
        ('__P0__', 'P0'),
        ('_P1_', 'P1'),
        ('p2', 'P2'),
        ('*p1*', 'P1'),
        ('P 1', 'P1'),
        ('P5', ''),
        ('high', ''),
    ])
    def test_priority_normalization(self, parser, raw, expected):
        """Test priority is always canonical or empty."""
        result = parser.parse(f'@auto\nPriority: {raw}\nIssue: Test')
        assert result.priority == expected

    def test_missing_priority(self, parser):
        """Test a missing priority is an empty string."""
        assert parser.parse('@auto\nIssue: Test issue').priority == ''

    def test_asap(self, parser):
        """Test ASAP is 20 minutes after now."""
        result = parser.parse('@auto\nPriority: P1\nNeeded by: *ASAP*')
        assert result.needed == FIXED_NOW + timedelta(minutes=20)
        assert result.needed_valid is True

    @pytest.mark.parametrize('raw', ['*', '_', '**'])
    def test_marker_only_date_is_invalid(self, parser, raw):
        """Test a needed-by made only of emphasis markers is flagged."""
        result = parser.parse(f'@auto\nPriority: P1\nNeeded by: {raw}')
        assert result.needed_raw == raw
        assert result.needed_valid is False
        assert result.needed == parser.date_resolver.default_needed()

    def test_invalid_date_falls_back_to_default(self, parser):
        """Test an unparsable date is flagged and defaulted."""
        result = parser.parse('@auto\nPriority: P1\nNeeded by: invalid-date')
        assert result.needed_valid is False
        assert result.needed_raw == 'invalid-date'
        assert result.needed == parser.date_resolver.default_needed()

    def test_absent_date_uses_default(self, parser):
        """Test a missing needed-by uses the default and is valid."""
        result = parser.parse('@auto\nPriority: P1')
        assert result.needed_raw == ''
        assert result.needed_valid is True
        assert result.needed == parser.date_resolver.default_needed()

    @pytest.mark.parametrize('raw,hour,minute', [
        ('*11/13/2025 6*', 6, 0),
        ('_11/13/2025 7pm_', 19, 0),
        ('*11/13/2025* _1432_', 14, 32),
    ])
    def test_needed_by_strips_formatting(self, parser, raw, hour, minute):
        """Test emphasis markers are removed before date parsing."""
        result = parser.parse(f'@auto\nNeeded by: {raw}')
        assert result.needed_valid is True
        assert (result.needed.hour, result.needed.minute) == (hour, minute)
        assert result.needed_raw == raw

    def test_multiple_urls(self, parser):
        """Test every URL in the links field is extracted in order."""
        message = (
            '@auto\nPriority: P1\n'
            'Relevant Links: https://example.com https://status.io https://docs.example.com/page'
        )
        result = parser.parse(message)
        assert result.urls == [
            'https://example.com', 'https://status.io', 'https://docs.example.com/page'
        ]

    def test_slack_formatted_url(self, parser):
        """Test URLs inside Slack link syntax are extracted without the label."""
        result = parser.parse('@auto\nRelevant Links: <https://example.com|example>')
        assert result.urls == ['https://example.com']
        assert 'https://example.com' in result.links_text

    def test_case_insensitive_labels(self, parser):
        """Test labels match regardless of case."""
        message = '@auto\nPRIORITY: P1\nISSUE: Test\nhow to REPLICATE: Steps\nCUSTOMER: Test Corp'
        result = parser.parse(message)
        assert result.priority == 'P1'
        assert result.issue == 'Test'
        assert result.replicate == 'Steps'
        assert result.customer == 'Test Corp'

    def test_raw_onepass_kept(self, parser):
        """Test the 1Password value is kept raw for later normalization."""
        result = parser.parse('@auto\n1Password: *<mailto:user@test.com|user@test.com>*')
        assert 'user@test.com' in result.onepass

    def test_empty_message(self, parser):
        """Test an empty message yields empty fields and a default date."""
        result = parser.parse('')
        assert result.priority == ''
        assert result.issue == ''
        assert result.urls == []
        assert result.needed_valid is True

    def test_none_message(self, parser):
        """Test None is treated as an empty message."""
        assert parser.parse(None).issue == ''

    def test_message_without_trigger(self, parser):
        """Test the body parses even without the trigger line."""
        result = parser.parse('Priority: P1\nIssue: Test without trigger')
        assert result.priority == 'P1'
        assert result.issue == 'Test without trigger'

    def test_whitespace_trimmed(self, parser):
        """Test values are trimmed."""
        message = '@auto\nPriority:  P1  \nIssue:   Production issue with spaces   \nCustomer:  Acme Corp  '
        result = parser.parse(message)
        assert result.priority == 'P1'
        assert result.issue == 'Production issue with spaces'
        assert result.customer == 'Acme Corp'

    def test_first_occurrence_wins(self, parser):
        """Test a repeated label keeps its first value."""
        result = parser.parse('@auto\nIssue: first\nIssue: second')
        assert result.issue == 'first'

    def test_multi_line_issue(self, parser):
        """Test a multi-line issue description."""
        result = parser.parse('@cat\nIssue: line one\nline two\nCustomer: Acme')
        assert result.issue == 'line one\nline two'
        assert result.customer == 'Acme'
