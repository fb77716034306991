"""Resolver for free-form "Needed by" date/time strings."""
import logging
import re
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Optional, Tuple

logger = logging.getLogger(__name__)


class DateTimeResolver:
    """Parse "Needed by" values into timezone-aware datetimes."""

    ASAP_MINUTES = 20
    DEFAULT_DAYS = 30
    DEFAULT_HOUR = 17

    # Shared time token: 1-4 digits, optional :MM, optional am/pm with or
    # without periods.
    _TIME = r'(?P<time>\d{1,4})(?::(?P<minute>\d{2}))?\s*(?:(?P<meridiem>[ap])\.?m\.?)?'

    US_DATE_PATTERN = re.compile(
        r'^(?P<month>\d{1,2})[/-](?P<day>\d{1,2})[/-](?P<year>\d{4}|\d{2})'
        r'(?:\s+' + _TIME + r')?$',
        re.IGNORECASE
    )
    ISO_DATE_PATTERN = re.compile(
        r'^(?P<year>\d{4})-(?P<month>\d{2})-(?P<day>\d{2})'
        r'(?:[ T]' + _TIME + r')?$',
        re.IGNORECASE
    )
    ISO_DATETIME_HINT = re.compile(r'^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}')

    def __init__(
        self,
        default_days: int = DEFAULT_DAYS,
        default_hour: int = DEFAULT_HOUR,
        tz: Optional[tzinfo] = None,
        now: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the resolver.

        Args:
            default_days: Days from today used when no date is given
            default_hour: Hour of day used when no time is given
            tz: Zone in which naive input is interpreted (default: UTC)
            now: Clock returning the current aware datetime
        """
        self.default_days = default_days
        self.default_hour = default_hour
        self.tz = tz or timezone.utc
        self._now = now or (lambda: datetime.now(self.tz))

    def now(self) -> datetime:
        return self._now().astimezone(self.tz)

    def default_needed(self) -> datetime:
        """
        Compute the fallback "Needed by" value.

        Returns:
            Today plus default_days at default_hour:00:00
        """
        target = self.now() + timedelta(days=self.default_days)
        return target.replace(
            hour=self.default_hour, minute=0, second=0, microsecond=0
        )

    def resolve(self, raw: str) -> Optional[datetime]:
        """
        Parse a "Needed by" string.

        Accepted, in order: ASAP, full ISO-8601 datetime, MM/DD/YYYY [time],
        YYYY-MM-DD [time].

        Args:
            raw: User supplied text, emphasis markers already removed

        Returns:
            Aware datetime, or None if no grammar matched
        """
        if not raw:
            return None
        text = str(raw).strip()
        if not text:
            return None

        if text.upper() == 'ASAP':
            # ASAP is elapsed time: add in UTC
            now_utc = self.now().astimezone(timezone.utc)
            return (now_utc + timedelta(minutes=self.ASAP_MINUTES)).astimezone(self.tz)

        parsed = self._parse_iso_datetime(text)
        if parsed:
            return parsed

        for pattern in (self.US_DATE_PATTERN, self.ISO_DATE_PATTERN):
            match = pattern.match(text)
            if match:
                return self._build_from_match(match)

        logger.debug(f"Unrecognized needed-by value: {text!r}")
        return None

    def resolve_needed(self, raw: str) -> Tuple[datetime, bool]:
        """
        Resolve a "Needed by" value, substituting the default.

        Args:
            raw: User supplied text (may be empty)

        Returns:
            Tuple of (datetime, valid) where valid is False only when a
            non-empty value could not be parsed
        """
        if not raw or not raw.strip():
            return self.default_needed(), True

        parsed = self.resolve(raw)
        if parsed is None:
            return self.default_needed(), False
        return parsed, True

    def describe_default_time(self) -> str:
        """Render the default hour the way users write it, e.g. 5PM."""
        hour = self.default_hour
        if hour == 0:
            return '12AM'
        if hour < 12:
            return f'{hour}AM'
        if hour == 12:
            return '12PM'
        return f'{hour - 12}PM'

    def _parse_iso_datetime(self, text: str) -> Optional[datetime]:
        if not self.ISO_DATETIME_HINT.match(text):
            return None

        candidate = text[:-1] + '+00:00' if text.endswith(('Z', 'z')) else text
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError:
            return None

        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=self.tz)
        return parsed.astimezone(self.tz)

    def _build_from_match(self, match: re.Match) -> Optional[datetime]:
        year_text = match.group('year')
        year = 2000 + int(year_text) if len(year_text) == 2 else int(year_text)

        clock = self._parse_time_token(
            match.group('time'), match.group('minute'), match.group('meridiem')
        )
        if clock is None:
            return None
        hours, minutes = clock

        try:
            return datetime(
                year,
                int(match.group('month')),
                int(match.group('day')),
                hours,
                minutes,
                tzinfo=self.tz
            )
        except ValueError:
            return None

    def _parse_time_token(
        self,
        time_str: Optional[str],
        minute_str: Optional[str],
        meridiem: Optional[str]
    ) -> Optional[Tuple[int, int]]:
        """
        Convert a time token into (hours, minutes).

        Args:
            time_str: Digit run after the date, or None
            minute_str: Digits after a colon, or None
            meridiem: 'a' or 'p' (any case), or None

        Returns:
            (hours, minutes) or None if the token is out of range
        """
        if time_str is None:
            return self.default_hour, 0

        if len(time_str) >= 3:
            # Military time, e.g. 1432 or 800
            if minute_str is not None:
                return None
            value = int(time_str)
            hours, minutes = value // 100, value % 100
        else:
            hours = int(time_str)
            minutes = int(minute_str) if minute_str is not None else 0

        if meridiem:
            if not 1 <= hours <= 12:
                return None
            if meridiem.lower() == 'p' and hours < 12:
                hours += 12
            elif meridiem.lower() == 'a' and hours == 12:
                hours = 0

        if not (0 <= hours <= 23 and 0 <= minutes <= 59):
            return None
        return hours, minutes
