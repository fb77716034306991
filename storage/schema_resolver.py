"""Discovery and caching of the Notion database schema."""
import logging
import time
from typing import Any, Callable, Dict, Optional

from processor.models import ExternalSchema, PropertyMeta
from storage.notion_client import NotionClient

logger = logging.getLogger(__name__)


class SchemaError(Exception):
    """The database schema is unavailable or cannot key the sync."""


class SchemaCache:
    """
    Holder for one schema snapshot with TTL-based expiry.

    The snapshot is swapped in a single assignment, so a reader sees either
    the old or the new schema. No lock is taken and overlapping refreshes
    are not deduplicated.
    """

    DEFAULT_TTL_SECONDS = 3600

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._schema: Optional[ExternalSchema] = None
        self._loaded_at = 0.0

    @property
    def current(self) -> Optional[ExternalSchema]:
        return self._schema

    def is_expired(self) -> bool:
        if self._schema is None:
            return True
        return (self._clock() - self._loaded_at) > self.ttl_seconds

    def get(
        self,
        fetch: Callable[[], ExternalSchema],
        force: bool = False
    ) -> ExternalSchema:
        """
        Return the cached schema, refreshing it first when expired.

        Args:
            fetch: Callable loading a fresh schema
            force: Refresh even if the cached value is still fresh

        Returns:
            The cached schema
        """
        if force or self.is_expired():
            self.refresh(fetch, forced=force)
        return self._schema

    def refresh(self, fetch: Callable[[], ExternalSchema], forced: bool = False) -> None:
        start_time = self._clock()
        schema = fetch()
        self._schema, self._loaded_at = schema, self._clock()

        logger.info(
            "Schema loaded and cached",
            extra={
                'property_count': len(schema.by_name),
                'cache_ttl': self.ttl_seconds,
                'load_seconds': round(self._loaded_at - start_time, 3),
                'forced': forced
            }
        )

    def clear(self) -> None:
        self._schema = None
        self._loaded_at = 0.0

    def stats(self) -> Dict[str, Any]:
        return {
            'has_schema': self._schema is not None,
            'age_seconds': (self._clock() - self._loaded_at) if self._schema else None,
            'ttl_seconds': self.ttl_seconds,
            'is_expired': self.is_expired()
        }


class SchemaResolver:
    """Resolve property names, types and sync-key columns of a database."""

    TIMESTAMP_CANDIDATES = (
        'slack message ts',
        'slack ts',
        'message ts',
    )
    PERMALINK_CANDIDATES = (
        'slack message url',
        'slack url',
        'slack message link',
        'slack permalink',
        'message url',
    )

    def __init__(
        self,
        client: NotionClient,
        database_id: str,
        cache: Optional[SchemaCache] = None
    ):
        """
        Initialize the resolver.

        Args:
            client: Notion API client
            database_id: Database whose schema is resolved
            cache: Cache holding the schema (default: one hour TTL)
        """
        self.client = client
        self.database_id = database_id
        self.cache = cache or SchemaCache()

    def get_schema(self, force: bool = False) -> ExternalSchema:
        """
        Return the database schema, loading it when absent or expired.

        Args:
            force: Bypass the TTL and reload

        Returns:
            ExternalSchema for the database

        Raises:
            SchemaError: If no sync-key column exists
            NotionAPIError: If the database cannot be fetched
        """
        return self.cache.get(self._load, force=force)

    def warm_up(self) -> bool:
        """
        Load the schema ahead of the first message.

        Failure is logged and left for the next get_schema call to raise.

        Returns:
            True if the schema was loaded
        """
        try:
            self.get_schema(force=True)
            return True
        except Exception as e:
            logger.error(
                f"Notion schema error for database {self.database_id}: {e}",
                extra={'database_id': self.database_id, 'error_type': type(e).__name__}
            )
            return False

    def clear(self) -> None:
        self.cache.clear()

    def _load(self) -> ExternalSchema:
        database = self.client.retrieve_database(self.database_id)
        return self.build_schema(database.get('properties') or {})

    @classmethod
    def build_schema(cls, properties: Dict[str, Dict[str, Any]]) -> ExternalSchema:
        """
        Build an ExternalSchema from Notion property definitions.

        Args:
            properties: The 'properties' object of a Notion database

        Returns:
            ExternalSchema keyed by lower-cased property name

        Raises:
            SchemaError: If neither a timestamp nor a permalink column exists
        """
        by_name = {}
        for name, definition in properties.items():
            prop_type = definition.get('type', '')
            options = (definition.get(prop_type) or {}).get('options') or []
            by_name[name.lower()] = PropertyMeta(
                id=definition.get('id', ''),
                name=name,
                type=prop_type,
                options=[option.get('name', '') for option in options]
            )

        timestamp_prop = cls._first_match(by_name, cls.TIMESTAMP_CANDIDATES)
        permalink_prop = cls._first_match(by_name, cls.PERMALINK_CANDIDATES)

        if timestamp_prop is None and permalink_prop is None:
            raise SchemaError(
                'Notion DB: add a permalink column (URL or Text) named '
                '"Slack Message URL" or a TS column (Text or Number) named '
                '"Slack Message TS".'
            )

        return ExternalSchema(
            by_name=by_name,
            timestamp_prop=timestamp_prop,
            permalink_prop=permalink_prop
        )

    @staticmethod
    def _first_match(by_name: Dict[str, PropertyMeta], candidates) -> Optional[PropertyMeta]:
        for candidate in candidates:
            if candidate in by_name:
                return by_name[candidate]
        return None
