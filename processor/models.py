"""Data models for issue parsing and Notion synchronization."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


PRIORITIES = ('P0', 'P1', 'P2')


@dataclass
class ParsedIssue:
    """Fields recovered from a triggered Slack message."""
    priority: str
    issue: str
    replicate: str
    customer: str
    onepass: str
    needed: datetime
    needed_raw: str
    needed_valid: bool
    urls: List[str] = field(default_factory=list)
    links_text: str = ''


@dataclass
class ValidationResult:
    """Missing required fields and present-but-malformed fields."""
    missing: List[str] = field(default_factory=list)
    type_issues: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.missing and not self.type_issues


@dataclass
class PropertyMeta:
    """A single Notion database property definition."""
    id: str
    name: str
    type: str
    options: List[str] = field(default_factory=list)


@dataclass
class ExternalSchema:
    """Notion database properties keyed by lower-cased name."""
    by_name: Dict[str, PropertyMeta]
    timestamp_prop: Optional[PropertyMeta] = None
    permalink_prop: Optional[PropertyMeta] = None

    def get(self, name: str) -> Optional[PropertyMeta]:
        return self.by_name.get(name.lower())


@dataclass(frozen=True)
class SyncKey:
    """Identity of a Slack message in the Notion database."""
    message_ts: str
    permalink: str = ''


def _text_content(content: str) -> List[Dict[str, Any]]:
    return [{'type': 'text', 'text': {'content': content}}]


@dataclass(frozen=True)
class TitleValue:
    content: str

    def to_payload(self) -> Dict[str, Any]:
        return {'title': _text_content(self.content)}


@dataclass(frozen=True)
class RichTextValue:
    content: str

    def to_payload(self) -> Dict[str, Any]:
        return {'rich_text': _text_content(self.content)}


@dataclass(frozen=True)
class SelectValue:
    name: str

    def to_payload(self) -> Dict[str, Any]:
        return {'select': {'name': self.name}}


@dataclass(frozen=True)
class DateValue:
    start: datetime

    def to_payload(self) -> Dict[str, Any]:
        start = self.start
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        return {'date': {'start': start.astimezone(timezone.utc).isoformat()}}


@dataclass(frozen=True)
class UrlValue:
    url: str

    def to_payload(self) -> Dict[str, Any]:
        return {'url': self.url}


@dataclass(frozen=True)
class NumberValue:
    number: float

    def to_payload(self) -> Dict[str, Any]:
        return {'number': self.number}


@dataclass(frozen=True)
class EmailValue:
    address: str

    def to_payload(self) -> Dict[str, Any]:
        return {'email': self.address}


class SyncOutcome(Enum):
    """Terminal state of a processed Slack message."""
    IGNORED = 'ignored'
    MISSING_FIELDS = 'missing_fields'
    INVALID_FIELDS = 'invalid_fields'
    CREATED = 'created'
    UPDATED = 'updated'
    PERMISSION_DENIED = 'permission_denied'


@dataclass
class SyncResult:
    """Result of processing one Slack message."""
    outcome: SyncOutcome
    page_id: Optional[str] = None
    page_url: Optional[str] = None
    missing: List[str] = field(default_factory=list)
    type_issues: List[str] = field(default_factory=list)


@dataclass
class SyncMetrics:
    """Running counters for messages handled by one engine instance."""
    messages_processed: int = 0
    messages_created: int = 0
    messages_updated: int = 0
    messages_failed: int = 0
    validation_errors: int = 0
    api_timeouts: int = 0

    def success_rate(self) -> float:
        if self.messages_processed == 0:
            return 0.0
        succeeded = self.messages_processed - self.messages_failed
        return round(succeeded / self.messages_processed * 100, 2)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'messages_processed': self.messages_processed,
            'messages_created': self.messages_created,
            'messages_updated': self.messages_updated,
            'messages_failed': self.messages_failed,
            'validation_errors': self.validation_errors,
            'api_timeouts': self.api_timeouts,
            'success_rate': self.success_rate()
        }
