"""Engine syncing triggered Slack messages to a Notion database."""
import logging
import time
from typing import Any, Dict, Optional, Tuple

from chat import replies
from chat.slack_client import SlackAPIError, SlackClient
from config import Settings
from processor.date_resolver import DateTimeResolver
from processor.models import (
    ExternalSchema,
    ParsedIssue,
    SyncKey,
    SyncMetrics,
    SyncOutcome,
    SyncResult,
)
from processor.text_parser import TextBlockParser, detect_trigger, is_top_level
from processor.validator import IssueValidator
from storage.notion_client import NotionAPIError, NotionClient
from storage.property_mapper import PropertyMapper
from storage.schema_resolver import SchemaCache, SchemaResolver
from storage.sync_lock import DynamoDBSyncLock, KeyedLock

logger = logging.getLogger(__name__)


class SyncEngine:
    """
    Parse, validate and upsert Slack issue reports into Notion.

    Each Slack message maps to at most one Notion page. The page is found
    by the message timestamp column first and the permalink column second,
    and both columns are written on every upsert. Locate and upsert for one
    message run under a per-message lock. The default KeyedLock only covers
    threads of one process; a Lambda container handles one event at a time,
    so concurrent deliveries are serialized only by the DynamoDB lock.
    """

    EDIT_SUBTYPE = 'message_changed'
    CREATE_ATTEMPTS = 3
    CREATE_RETRY_DELAY = 1

    def __init__(
        self,
        settings: Settings,
        notion: NotionClient,
        slack: SlackClient,
        lock=None,
        date_resolver: Optional[DateTimeResolver] = None
    ):
        """
        Initialize the engine.

        Args:
            settings: Runtime settings
            notion: Notion API client
            slack: Slack API client
            lock: Object with a hold(key) context manager (default: KeyedLock)
            date_resolver: Resolver for "Needed by" values
        """
        self.settings = settings
        self.notion = notion
        self.slack = slack
        self.lock = lock or KeyedLock()
        self.date_resolver = date_resolver or DateTimeResolver(
            default_days=settings.needed_by_days,
            default_hour=settings.needed_by_hour,
            tz=settings.tz()
        )
        self.parser = TextBlockParser(self.date_resolver)
        self.validator = IssueValidator(self.date_resolver)
        self.metrics = SyncMetrics()
        self._resolvers: Dict[str, SchemaResolver] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> 'SyncEngine':
        """Build an engine and its API clients from settings."""
        notion = NotionClient(
            settings.notion_token,
            timeout=settings.api_timeout_seconds,
            max_retries=settings.notion_max_retries
        )
        slack = SlackClient(settings.slack_bot_token, timeout=settings.api_timeout_seconds)
        lock = None
        if settings.lock_table_name:
            lock = DynamoDBSyncLock(settings.lock_table_name)
        else:
            logger.warning(
                "LOCK_TABLE_NAME not set, concurrent edits of one message are not "
                "serialized across Lambda instances"
            )
        return cls(settings, notion, slack, lock=lock)

    def resolver_for(self, database_id: str) -> SchemaResolver:
        resolver = self._resolvers.get(database_id)
        if resolver is None:
            resolver = SchemaResolver(
                self.notion,
                database_id,
                SchemaCache(ttl_seconds=self.settings.schema_cache_ttl_seconds)
            )
            self._resolvers[database_id] = resolver
        return resolver

    def warm_up(self) -> None:
        """Load every configured database schema; failures are only logged."""
        for database_id in self.settings.database_ids():
            self.resolver_for(database_id).warm_up()

    def handle_event(self, event: Dict[str, Any]) -> SyncResult:
        """
        Process a Slack message event.

        Fresh posts and message_changed edits are handled; every other
        subtype, unmonitored channels, thread replies (unless allowed) and
        messages without a trigger are ignored.

        Args:
            event: Slack 'message' event payload

        Returns:
            SyncResult describing what happened
        """
        subtype = event.get('subtype')
        if subtype and subtype != self.EDIT_SUBTYPE:
            return SyncResult(SyncOutcome.IGNORED)

        channel = event.get('channel', '')
        database_id = self.settings.database_for_channel(channel)
        if not database_id:
            logger.debug(f"Ignoring message in unmonitored channel {channel}")
            return SyncResult(SyncOutcome.IGNORED)

        is_edit = subtype == self.EDIT_SUBTYPE
        if is_edit:
            message = event.get('message') or {}
            previous = event.get('previous_message') or {}
            message_ts = previous.get('ts') or message.get('ts')
        else:
            message = event
            message_ts = event.get('ts')

        if not message_ts:
            return SyncResult(SyncOutcome.IGNORED)
        if not self.settings.allow_threads and not is_top_level(message):
            return SyncResult(SyncOutcome.IGNORED)

        text = message.get('text') or ''
        trigger = detect_trigger(text)
        if not trigger:
            return SyncResult(SyncOutcome.IGNORED)

        return self.process_message(
            database_id=database_id,
            channel=channel,
            text=text,
            message_ts=message_ts,
            user=message.get('user'),
            trigger=trigger,
            is_edit=is_edit
        )

    def process_message(
        self,
        database_id: str,
        channel: str,
        text: str,
        message_ts: str,
        user: Optional[str] = None,
        trigger: Optional[str] = None,
        is_edit: bool = False
    ) -> SyncResult:
        """
        Parse, validate, locate, upsert and reply for one message.

        Args:
            database_id: Target Notion database
            channel: Slack channel ID
            text: Message text
            message_ts: Timestamp identifying the original message
            user: Slack user ID of the author
            trigger: Trigger keyword used
            is_edit: Whether the event was an edit

        Returns:
            SyncResult

        Raises:
            NotionAPIError, SchemaError, SyncLockTimeout: On operational
                failures other than missing database access
        """
        self.metrics.messages_processed += 1
        context = {
            'channel': channel,
            'message_ts': message_ts,
            'database_id': database_id,
            'is_edit': is_edit
        }

        parsed = self.parser.parse(text)
        validation = self.validator.validate(parsed)

        if validation.missing:
            self.metrics.validation_errors += 1
            logger.info("Missing required fields", extra={**context, 'missing': validation.missing})
            self._reply(channel, message_ts, replies.missing_fields_reply(validation.missing, trigger))
            return SyncResult(SyncOutcome.MISSING_FIELDS, missing=validation.missing)

        if validation.type_issues:
            self.metrics.validation_errors += 1
            logger.info("Invalid field formats", extra={**context, 'issue_count': len(validation.type_issues)})
            self._reply(channel, message_ts, replies.invalid_fields_reply(validation.type_issues, trigger))
            return SyncResult(SyncOutcome.INVALID_FIELDS, type_issues=validation.type_issues)

        key = SyncKey(message_ts, self.slack.get_permalink(channel, message_ts))

        try:
            with self.lock.hold(f'{channel}:{message_ts}'):
                page, created = self.sync_issue(database_id, parsed, key, reporter=user)
        except NotionAPIError as e:
            self.metrics.messages_failed += 1
            if e.is_permission_error:
                logger.warning(
                    f"No access to Notion database: {e}",
                    extra={**context, 'status': e.status, 'code': e.code}
                )
                self._reply(channel, message_ts, replies.access_denied_reply(trigger))
                return SyncResult(SyncOutcome.PERMISSION_DENIED)
            if e.is_timeout:
                self.metrics.api_timeouts += 1
            logger.error(
                f"Notion sync failed: {e}",
                extra={**context, 'status': e.status, 'code': e.code},
                exc_info=True
            )
            self._reply(channel, message_ts, replies.failure_reply(trigger))
            raise
        except Exception as e:
            self.metrics.messages_failed += 1
            logger.error(
                f"Notion sync failed: {e}",
                extra={**context, 'error_type': type(e).__name__},
                exc_info=True
            )
            self._reply(channel, message_ts, replies.failure_reply(trigger))
            raise

        page_url = page.get('url') or ''
        if created:
            self.metrics.messages_created += 1
            reply = replies.created_reply(page_url, trigger)
        else:
            self.metrics.messages_updated += 1
            reply = replies.updated_reply(page_url, trigger)

        logger.info(
            f"{'Created' if created else 'Updated'} Notion page {page.get('id')}",
            extra={**context, 'page_id': page.get('id')}
        )
        self._reply(channel, message_ts, reply)
        return SyncResult(
            SyncOutcome.CREATED if created else SyncOutcome.UPDATED,
            page_id=page.get('id'),
            page_url=page_url
        )

    def sync_issue(
        self,
        database_id: str,
        parsed: ParsedIssue,
        key: SyncKey,
        reporter: Optional[str] = None
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Locate the page for a message and create or update it.

        A Notion validation error is taken as schema drift: the schema is
        reloaded once and the sync repeated.

        Args:
            database_id: Target Notion database
            parsed: Validated issue
            key: Sync key of the message
            reporter: Slack user ID of the author

        Returns:
            Tuple of (page, created)
        """
        resolver = self.resolver_for(database_id)
        schema = resolver.get_schema()
        try:
            return self._locate_and_upsert(database_id, schema, parsed, key, reporter)
        except NotionAPIError as e:
            if e.code != 'validation_error':
                raise
            logger.warning(
                f"Notion rejected the payload, reloading schema: {e}",
                extra={'database_id': database_id}
            )
            schema = resolver.get_schema(force=True)
            return self._locate_and_upsert(database_id, schema, parsed, key, reporter)

    def locate(
        self,
        database_id: str,
        schema: ExternalSchema,
        key: SyncKey
    ) -> Optional[Dict[str, Any]]:
        """
        Find the page already synced for a message.

        Tries the timestamp column, then the permalink column. A column the
        schema lacks is skipped.

        Args:
            database_id: Notion database to query
            schema: Resolved schema
            key: Sync key of the message

        Returns:
            The first matching page, or None
        """
        mapper = PropertyMapper(schema)

        if schema.timestamp_prop is not None:
            ts_filter = mapper.timestamp_filter(schema.timestamp_prop, key.message_ts)
            if ts_filter is not None:
                page = self._first_result(database_id, ts_filter)
                if page is not None:
                    return page

        if schema.permalink_prop is not None and key.permalink:
            url_filter = mapper.permalink_filter(schema.permalink_prop, key.permalink)
            page = self._first_result(database_id, url_filter)
            if page is not None:
                return page

        return None

    def upsert(
        self,
        database_id: str,
        schema: ExternalSchema,
        parsed: ParsedIssue,
        key: SyncKey,
        page_id: Optional[str] = None,
        reporter: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a page, or update page_id when given.

        Args:
            database_id: Parent database for a new page
            schema: Resolved schema
            parsed: Validated issue
            key: Sync key written to the page
            page_id: Existing page to update
            reporter: Slack user ID of the author

        Returns:
            The Notion page object
        """
        properties = PropertyMapper(schema).build_properties(parsed, key, reporter)
        if page_id:
            return self.notion.update_page(page_id, properties)
        return self.notion.create_page(database_id, properties)

    def _locate_and_upsert(
        self,
        database_id: str,
        schema: ExternalSchema,
        parsed: ParsedIssue,
        key: SyncKey,
        reporter: Optional[str]
    ) -> Tuple[Dict[str, Any], bool]:
        # Creates are not retried by the client; each retry here locates
        # again so a page that was created despite the error gets updated.
        for attempt in range(self.CREATE_ATTEMPTS):
            existing = self.locate(database_id, schema, key)
            page_id = existing.get('id') if existing else None
            try:
                page = self.upsert(database_id, schema, parsed, key, page_id, reporter)
                return page, page_id is None
            except NotionAPIError as e:
                if page_id or not e.is_transient or attempt == self.CREATE_ATTEMPTS - 1:
                    raise
                delay = self.CREATE_RETRY_DELAY * (2 ** attempt)
                logger.warning(
                    f"Create failed (attempt {attempt + 1}/{self.CREATE_ATTEMPTS}): {e}. "
                    f"Re-checking for an existing page in {delay} seconds..."
                )
                time.sleep(delay)

    def _first_result(self, database_id: str, filter: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        response = self.notion.query_database(database_id, filter, page_size=1)
        results = response.get('results') or []
        return results[0] if results else None

    def _reply(self, channel: str, thread_ts: str, text: str) -> None:
        try:
            self.slack.post_reply(channel, thread_ts, text)
        except SlackAPIError as e:
            logger.error(
                f"Failed to post Slack reply: {e}",
                extra={'channel': channel, 'thread_ts': thread_ts, 'error': e.error}
            )
