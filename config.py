"""Configuration loaded from environment variables."""
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import timezone, tzinfo
from typing import Dict, List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Required configuration is missing or malformed."""


DEFAULT_NEEDED_BY_DAYS = 30
DEFAULT_NEEDED_BY_HOUR = 17


def _as_bool(value: Optional[str]) -> bool:
    return str(value or '').strip().lower() == 'true'


def _as_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name, '')
    if not str(raw).strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"{name} is not an integer ({raw!r}), using {default}")
        return default


def parse_channel_mappings(document: dict) -> Dict[str, List[str]]:
    """
    Parse a channel mapping document.

    Expected shape:
        {"databases": [{"databaseId": "...", "channels": [{"channelId": "..."}]}]}

    Args:
        document: Decoded JSON document

    Returns:
        Dict of database ID to channel IDs

    Raises:
        ConfigError: If the document does not have the expected shape
    """
    databases = document.get('databases') if isinstance(document, dict) else None
    if not isinstance(databases, list):
        raise ConfigError('Mappings must have a "databases" array')

    mappings = {}
    for database in databases:
        database_id = database.get('databaseId')
        if not database_id:
            raise ConfigError('Each database entry must have a "databaseId" field')

        channels = database.get('channels')
        if not isinstance(channels, list):
            raise ConfigError(f'Database "{database_id}" must have a "channels" array')
        if not channels:
            logger.warning(f"Database {database_id} has no channels configured")

        channel_ids = []
        for channel in channels:
            if not channel.get('channelId'):
                raise ConfigError(
                    f'Channel in database "{database_id}" must have a "channelId" field'
                )
            channel_ids.append(channel['channelId'])
        mappings[database_id] = channel_ids

    return mappings


def load_channel_mappings_file(path: str) -> Dict[str, List[str]]:
    if not os.path.exists(path):
        raise ConfigError(f"Channel mappings file not found: {path}")
    try:
        with open(path, 'r', encoding='utf-8') as f:
            document = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in mappings file: {e}")
    return parse_channel_mappings(document)


@dataclass
class Settings:
    """Runtime settings for the issue sync."""
    slack_bot_token: str
    notion_token: str
    notion_database_id: str = ''
    slack_signing_secret: str = ''
    watch_channel_id: str = ''
    allow_threads: bool = False
    channel_mappings: Dict[str, List[str]] = field(default_factory=dict)
    needed_by_days: int = DEFAULT_NEEDED_BY_DAYS
    needed_by_hour: int = DEFAULT_NEEDED_BY_HOUR
    schema_cache_ttl_seconds: int = 3600
    api_timeout_seconds: float = 10.0
    notion_max_retries: int = 3
    timezone_name: str = 'UTC'
    lock_table_name: str = ''
    log_level: str = 'INFO'

    def __post_init__(self):
        if not 1 <= self.needed_by_days <= 365:
            logger.warning(
                f"DEFAULT_NEEDED_BY_DAYS out of range (1-365): {self.needed_by_days}, "
                f"using {DEFAULT_NEEDED_BY_DAYS}"
            )
            self.needed_by_days = DEFAULT_NEEDED_BY_DAYS
        if not 0 <= self.needed_by_hour <= 23:
            logger.warning(
                f"DEFAULT_NEEDED_BY_HOUR out of range (0-23): {self.needed_by_hour}, "
                f"using {DEFAULT_NEEDED_BY_HOUR}"
            )
            self.needed_by_hour = DEFAULT_NEEDED_BY_HOUR

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        """
        Load settings from environment variables.

        Args:
            environ: Mapping to read instead of os.environ

        Returns:
            Validated Settings

        Raises:
            ConfigError: If required variables are missing
        """
        env = os.environ if environ is None else environ

        channel_mappings: Dict[str, List[str]] = {}
        if _as_bool(env.get('CHANNEL_DB_MAPPINGS')):
            if env.get('CHANNEL_MAPPINGS_JSON'):
                try:
                    document = json.loads(env['CHANNEL_MAPPINGS_JSON'])
                except json.JSONDecodeError as e:
                    raise ConfigError(f"Invalid CHANNEL_MAPPINGS_JSON format: {e}")
                channel_mappings = parse_channel_mappings(document)
                source = 'environment variable'
            else:
                source = env.get('CHANNEL_DB_MAPPINGS_FILE') or os.path.join(
                    os.getcwd(), 'channel-mappings.json'
                )
                channel_mappings = load_channel_mappings_file(source)
            logger.info(
                "Multi-channel mode enabled",
                extra={
                    'source': source,
                    'databases': len(channel_mappings),
                    'total_channels': sum(len(c) for c in channel_mappings.values())
                }
            )

        settings = cls(
            slack_bot_token=env.get('SLACK_BOT_TOKEN', ''),
            notion_token=env.get('NOTION_TOKEN', ''),
            notion_database_id=env.get('NOTION_DATABASE_ID', ''),
            slack_signing_secret=env.get('SLACK_SIGNING_SECRET', ''),
            watch_channel_id=env.get('WATCH_CHANNEL_ID', ''),
            allow_threads=_as_bool(env.get('ALLOW_THREADS')),
            channel_mappings=channel_mappings,
            needed_by_days=_as_int(env, 'DEFAULT_NEEDED_BY_DAYS', DEFAULT_NEEDED_BY_DAYS),
            needed_by_hour=_as_int(env, 'DEFAULT_NEEDED_BY_HOUR', DEFAULT_NEEDED_BY_HOUR),
            schema_cache_ttl_seconds=_as_int(env, 'SCHEMA_CACHE_TTL_SECONDS', 3600),
            api_timeout_seconds=_as_int(env, 'API_TIMEOUT', 10000) / 1000,
            notion_max_retries=_as_int(env, 'NOTION_MAX_RETRIES', 3),
            timezone_name=env.get('TIMEZONE', 'UTC') or 'UTC',
            lock_table_name=env.get('LOCK_TABLE_NAME', ''),
            log_level=env.get('LOG_LEVEL', 'INFO')
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        missing = []
        if not self.slack_bot_token:
            missing.append('SLACK_BOT_TOKEN')
        if not self.notion_token:
            missing.append('NOTION_TOKEN')
        if not self.channel_mappings and not self.notion_database_id:
            missing.append('NOTION_DATABASE_ID')

        if missing:
            logger.error(
                "Missing required environment variables",
                extra={'missing': missing}
            )
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}"
            )

        self.tz()

    def tz(self) -> tzinfo:
        if self.timezone_name.upper() == 'UTC':
            return timezone.utc
        try:
            return ZoneInfo(self.timezone_name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigError(f"Unknown TIMEZONE {self.timezone_name!r}: {e}")

    def database_for_channel(self, channel_id: str) -> Optional[str]:
        """
        Find the Notion database that tracks a channel.

        Args:
            channel_id: Slack channel ID

        Returns:
            Database ID, or None if the channel is not monitored
        """
        if self.channel_mappings:
            for database_id, channel_ids in self.channel_mappings.items():
                if channel_id in channel_ids:
                    return database_id
            return None

        if self.watch_channel_id:
            return self.notion_database_id if channel_id == self.watch_channel_id else None

        return self.notion_database_id or None

    def database_ids(self) -> List[str]:
        if self.channel_mappings:
            return list(self.channel_mappings)
        return [self.notion_database_id] if self.notion_database_id else []
