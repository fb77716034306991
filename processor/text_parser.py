"""Parser for triggered Slack messages describing on-call issues."""
import logging
import re
from typing import Dict, Iterator, List, Optional, Tuple

from processor.date_resolver import DateTimeResolver
from processor.models import PRIORITIES, ParsedIssue

logger = logging.getLogger(__name__)


TRIGGERS = ('auto', 'cat', 'peepo')

TRIGGER_PATTERN = re.compile(r'^\s*@(auto|cat|peepo)\b', re.IGNORECASE)
TRIGGER_PREFIX = re.compile(r'^\s*@(?:auto|cat|peepo)\b[ \t]*\n?', re.IGNORECASE)

# A label-like token at the start of a line: "Priority:", "*Needed by:*".
# "https://..." is not a label.
LABEL_LINE = re.compile(
    r'^\s*[*_]*(?P<label>[A-Za-z0-9][\w /]*?)[*_]*\s*:(?!//)[*_]*\s*(?P<rest>.*)$'
)

URL_PATTERN = re.compile(r'https?://[^\s<>|]+', re.IGNORECASE)

BRACKET_SEGMENT = re.compile(r'(<[^>]*>)')
EMPHASIS_RUN = re.compile(r'(?:(?<![^\s(\[{])[*_]+|[*_]+(?![^\s.,;:!?)\]}]))')

MAILTO_LINK = re.compile(r'^<mailto:([^>|]+)(?:\|([^>]+))?>$', re.IGNORECASE)
ANGLE_BRACKETS = re.compile(r'^<([^>]+)>$')
EMBEDDED_EMAIL = re.compile(
    r"[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@"
    r"[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*"
)
VALID_EMAIL = re.compile(
    r"^(?!\.)(?!.*\.\.)[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64}(?<!\.)@"
    r"(?=.{1,253}$)"
    r"[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)+$"
)

# Canonical field name for each accepted label, keyed by the label with all
# whitespace removed and lower-cased.
FIELD_LABELS: Dict[str, str] = {
    'priority': 'priority',
    'issue': 'issue',
    'howtoreplicate': 'replicate',
    'customer': 'customer',
    '1password': 'onepass',
    'neededby': 'needed',
    'neededbydate/time': 'needed',
    'neededbydatetime': 'needed',
    'relevantlink': 'links',
    'relevantlinks': 'links',
}


def detect_trigger(text: Optional[str]) -> Optional[str]:
    """
    Find the trigger keyword that prefixes a message.

    Args:
        text: Slack message text

    Returns:
        'auto', 'cat' or 'peepo', or None if the message is not a trigger
    """
    match = TRIGGER_PATTERN.match(text or '')
    return match.group(1).lower() if match else None


def strip_trigger(text: str) -> str:
    """Remove the trigger keyword and the newline that follows it."""
    return TRIGGER_PREFIX.sub('', text or '', count=1)


def is_top_level(message: dict) -> bool:
    """True unless the message is a reply inside a thread."""
    thread_ts = message.get('thread_ts')
    return not (thread_ts and thread_ts != message.get('ts'))


def strip_rich_text(text: Optional[str]) -> str:
    """
    Remove Slack bold (*) and italic (_) markers.

    Markers are removed where they open or close a word. Text inside
    <...> link syntax is left untouched so mailto links and URLs survive.

    Args:
        text: Text possibly containing emphasis markers

    Returns:
        Text with emphasis markers removed
    """
    if not text or not isinstance(text, str):
        return ''

    parts = BRACKET_SEGMENT.split(text)
    stripped = [
        part if BRACKET_SEGMENT.fullmatch(part) else EMPHASIS_RUN.sub('', part)
        for part in parts
    ]
    return ''.join(stripped)


def normalize_email(value: Optional[str]) -> str:
    """
    Recover a plain email address from a Slack field value.

    Precedence: <mailto:target|display> link, <address> wrapping, first
    embedded address, then the trimmed input unchanged.

    Args:
        value: Raw 1Password field value

    Returns:
        Plain address, or '' for empty input
    """
    if not value:
        return ''
    text = strip_rich_text(str(value).strip()).strip()

    mailto = MAILTO_LINK.match(text)
    if mailto:
        return (mailto.group(2) or mailto.group(1) or '').strip()

    angle = ANGLE_BRACKETS.match(text)
    if angle:
        return angle.group(1).strip()

    embedded = EMBEDDED_EMAIL.search(text)
    if embedded:
        return embedded.group(0).strip()

    return text


def is_valid_email(value: str) -> bool:
    return bool(value) and VALID_EMAIL.match(value) is not None


def _normalize_label(label: str) -> str:
    return re.sub(r'\s+', '', label).lower()


def tokenize(text: str) -> Iterator[Tuple[str, str]]:
    """
    Split a message body into (field, value) pairs.

    A line that starts with a known label (any case) or a capitalized
    label-like token followed by a colon begins a new segment. Lowercase or
    digit-led "x:" lines such as "step 2: click pay" are continuation text.
    Segments for unknown labels are dropped; known segments run until the
    next label line or the end of the text.

    Args:
        text: Message body with the trigger already removed

    Yields:
        Tuples of (canonical field name, trimmed value)
    """
    current_field = None
    buffer: List[str] = []

    for line in text.splitlines():
        match = LABEL_LINE.match(line)
        field = None
        if match:
            label = match.group('label')
            field = FIELD_LABELS.get(_normalize_label(label))
            if field is None and not label[0].isupper():
                match = None

        if match:
            if current_field is not None:
                yield current_field, '\n'.join(buffer).strip()
            current_field = field
            buffer = [match.group('rest')]
        elif current_field is not None:
            buffer.append(line)

    if current_field is not None:
        yield current_field, '\n'.join(buffer).strip()


class TextBlockParser:
    """Parser turning a triggered message into a ParsedIssue."""

    def __init__(self, date_resolver: Optional[DateTimeResolver] = None):
        """
        Initialize the parser.

        Args:
            date_resolver: Resolver for the "Needed by" field
        """
        self.date_resolver = date_resolver or DateTimeResolver()

    def extract_fields(self, text: str) -> Dict[str, str]:
        """
        Extract the raw value of every known field.

        Args:
            text: Full message text, trigger included or not

        Returns:
            Dict of canonical field name to value; the first occurrence of a
            label wins and missing labels map to ''
        """
        fields = {name: '' for name in set(FIELD_LABELS.values())}
        seen = set()
        for name, value in tokenize(strip_trigger(text)):
            if name in seen:
                continue
            seen.add(name)
            fields[name] = value
        return fields

    def parse(self, text: Optional[str]) -> ParsedIssue:
        """
        Parse a triggered message.

        Args:
            text: Slack message text

        Returns:
            ParsedIssue with empty strings for absent fields
        """
        fields = self.extract_fields(text or '')

        priority = self._normalize_priority(fields['priority'])

        needed_raw = fields['needed']
        needed_text = strip_rich_text(needed_raw)
        if needed_raw.strip() and not needed_text.strip():
            # Only emphasis markers: non-empty input that no grammar accepts
            needed, needed_valid = self.date_resolver.default_needed(), False
        else:
            needed, needed_valid = self.date_resolver.resolve_needed(needed_text)
        if not needed_valid:
            logger.info(f"Needed by value not recognized, using default: {needed_raw!r}")

        links_text = fields['links']
        urls = URL_PATTERN.findall(links_text)

        return ParsedIssue(
            priority=priority,
            issue=fields['issue'],
            replicate=fields['replicate'],
            customer=fields['customer'],
            onepass=fields['onepass'],
            needed=needed,
            needed_raw=needed_raw,
            needed_valid=needed_valid,
            urls=urls,
            links_text=links_text
        )

    def _normalize_priority(self, value: str) -> str:
        priority = re.sub(r'\s+', '', strip_rich_text(value)).upper()
        return priority if priority in PRIORITIES else ''
