"""Mapping of parsed issues onto typed Notion property payloads."""
import logging
import math
from datetime import datetime
from typing import Any, Dict, Optional, Union
from urllib.parse import urlparse

from processor.models import (
    DateValue,
    EmailValue,
    ExternalSchema,
    NumberValue,
    ParsedIssue,
    PropertyMeta,
    RichTextValue,
    SelectValue,
    SyncKey,
    TitleValue,
    UrlValue,
)
from processor.text_parser import normalize_email

logger = logging.getLogger(__name__)


PropertyValue = Union[
    TitleValue, RichTextValue, SelectValue, DateValue, UrlValue, NumberValue, EmailValue
]


# Notion column names written by the sync
ISSUE = 'Issue'
PRIORITY = 'Priority'
HOW_TO_REPLICATE = 'How to replicate'
CUSTOMER = 'Customer'
ONE_PASSWORD = '1Password'
NEEDED_BY = 'Needed by'
RELEVANT_LINKS = 'Relevant Links'
REPORTED_BY_TEXT = 'Reported by (text)'


def is_url(value: str) -> bool:
    parsed = urlparse(value.strip())
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc) and ' ' not in value.strip()


def timestamp_number(message_ts: str) -> Optional[int]:
    """Slack ts '1730744400.123456' as the integer 1730744400123456."""
    digits = str(message_ts).replace('.', '')
    return int(digits) if digits.isdigit() else None


class PropertyMapper:
    """Serialize values according to the resolved Notion schema."""

    def __init__(self, schema: ExternalSchema):
        """
        Initialize the mapper.

        Args:
            schema: Resolved database schema
        """
        self.schema = schema

    def value_for(self, meta: PropertyMeta, value: Any) -> Optional[PropertyValue]:
        """
        Convert a value into the variant matching the property type.

        Args:
            meta: Target property definition
            value: str, datetime, int or float

        Returns:
            Property value, or None when the value is empty or cannot be
            represented in the column
        """
        if value is None:
            return None
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return None

        text = value.isoformat() if isinstance(value, datetime) else str(value)
        prop_type = meta.type

        if prop_type == 'title':
            return TitleValue(text)
        if prop_type == 'rich_text':
            return RichTextValue(text)
        if prop_type == 'select':
            return SelectValue(text)
        if prop_type == 'date':
            start = self._to_datetime(value)
            if start is None:
                logger.warning(f"Skipping '{meta.name}': not a date: {text!r}")
                return None
            return DateValue(start)
        if prop_type == 'url':
            return UrlValue(text) if is_url(text) else RichTextValue(text)
        if prop_type == 'number':
            number = self._to_number(value)
            if number is None:
                logger.warning(f"Skipping '{meta.name}': not a number: {text!r}")
                return None
            return NumberValue(number)
        if prop_type == 'email':
            return EmailValue(text)

        return RichTextValue(text)

    def timestamp_value(self, meta: PropertyMeta, message_ts: str) -> Optional[PropertyValue]:
        if not message_ts:
            return None
        if meta.type == 'number':
            number = timestamp_number(message_ts)
            return NumberValue(number) if number is not None else None
        if meta.type == 'title':
            return TitleValue(str(message_ts))
        return RichTextValue(str(message_ts))

    def permalink_value(self, meta: PropertyMeta, permalink: str) -> Optional[PropertyValue]:
        if not permalink:
            return None
        if meta.type == 'url':
            return UrlValue(permalink)
        if meta.type == 'title':
            return TitleValue(permalink)
        return RichTextValue(permalink)

    def build_properties(
        self,
        issue: ParsedIssue,
        key: SyncKey,
        reporter: Optional[str] = None
    ) -> Dict[str, Dict[str, Any]]:
        """
        Build the property payload for a create or update call.

        Columns missing from the schema and empty values are omitted, so
        properties maintained by hand in Notion are never cleared.

        Args:
            issue: Validated issue
            key: Sync key of the Slack message
            reporter: Slack user ID of the author

        Returns:
            Properties keyed by their Notion display name
        """
        properties: Dict[str, Dict[str, Any]] = {}

        self._set(properties, ISSUE, issue.issue)
        self._set(properties, PRIORITY, issue.priority)
        self._set(properties, HOW_TO_REPLICATE, issue.replicate)
        self._set(properties, CUSTOMER, issue.customer)
        self._set(properties, ONE_PASSWORD, normalize_email(issue.onepass))
        self._set(properties, NEEDED_BY, issue.needed)
        self._set(properties, REPORTED_BY_TEXT, reporter)

        links_meta = self.schema.get(RELEVANT_LINKS)
        if links_meta is not None:
            if links_meta.type == 'url':
                links_value = issue.urls[0] if issue.urls else None
            else:
                links_value = issue.links_text
            self._set(properties, RELEVANT_LINKS, links_value)

        ts_meta = self.schema.timestamp_prop
        if ts_meta is not None:
            self._put(properties, ts_meta, self.timestamp_value(ts_meta, key.message_ts))

        url_meta = self.schema.permalink_prop
        if url_meta is not None:
            self._put(properties, url_meta, self.permalink_value(url_meta, key.permalink))

        return properties

    def timestamp_filter(self, meta: PropertyMeta, message_ts: str) -> Optional[Dict[str, Any]]:
        """Equality filter on the timestamp column."""
        if meta.type == 'number':
            number = timestamp_number(message_ts)
            if number is None:
                return None
            return {'property': meta.name, 'number': {'equals': number}}
        text_type = 'title' if meta.type == 'title' else 'rich_text'
        return {'property': meta.name, text_type: {'equals': str(message_ts)}}

    def permalink_filter(self, meta: PropertyMeta, permalink: str) -> Dict[str, Any]:
        """Equality filter for url columns, contains for text columns."""
        if meta.type == 'url':
            return {'property': meta.name, 'url': {'equals': permalink}}
        text_type = 'title' if meta.type == 'title' else 'rich_text'
        return {'property': meta.name, text_type: {'contains': permalink}}

    def _set(self, properties: Dict[str, Any], name: str, value: Any) -> None:
        meta = self.schema.get(name)
        if meta is None:
            return
        self._put(properties, meta, self.value_for(meta, value))

    @staticmethod
    def _put(
        properties: Dict[str, Any],
        meta: PropertyMeta,
        value: Optional[PropertyValue]
    ) -> None:
        if value is not None:
            properties[meta.name] = value.to_payload()

    @staticmethod
    def _to_datetime(value: Any) -> Optional[datetime]:
        if isinstance(value, datetime):
            return value
        try:
            return datetime.fromisoformat(str(value).replace('Z', '+00:00'))
        except ValueError:
            return None

    @staticmethod
    def _to_number(value: Any) -> Optional[float]:
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return value
        try:
            number = float(str(value))
        except ValueError:
            return None
        if not math.isfinite(number):
            return None
        return int(number) if number.is_integer() else number
