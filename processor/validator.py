"""Validation of parsed on-call issues."""
import logging
from typing import List, Optional

from processor.date_resolver import DateTimeResolver
from processor.models import ParsedIssue, ValidationResult
from processor.text_parser import is_valid_email, normalize_email

logger = logging.getLogger(__name__)


class IssueValidator:
    """Classify problems with a ParsedIssue as missing or malformed."""

    def __init__(self, date_resolver: Optional[DateTimeResolver] = None):
        """
        Initialize the validator.

        Args:
            date_resolver: Resolver whose defaults are quoted in messages
        """
        self.date_resolver = date_resolver or DateTimeResolver()

    def validate(self, parsed: ParsedIssue) -> ValidationResult:
        """
        Validate a parsed issue.

        Args:
            parsed: Output of TextBlockParser.parse

        Returns:
            ValidationResult with independent missing and type_issues lists
        """
        result = ValidationResult(
            missing=self.missing_fields(parsed),
            type_issues=self.type_issues(parsed)
        )
        if not result.is_valid:
            logger.info(
                f"Validation failed: {len(result.missing)} missing, "
                f"{len(result.type_issues)} malformed"
            )
        return result

    def missing_fields(self, parsed: ParsedIssue) -> List[str]:
        """
        List required fields that are absent.

        "Needed by" and "Relevant Links" are optional.

        Args:
            parsed: Parsed issue

        Returns:
            Human-readable field names
        """
        missing = []
        if not parsed.priority:
            missing.append('Priority (P0/P1/P2)')
        if not parsed.issue:
            missing.append('Issue')
        if not parsed.replicate:
            missing.append('How to replicate')
        if not parsed.customer:
            missing.append('Customer')
        if not parsed.onepass:
            missing.append('1Password (email)')
        return missing

    def type_issues(self, parsed: ParsedIssue) -> List[str]:
        """
        List fields that are present but malformed.

        Args:
            parsed: Parsed issue

        Returns:
            Descriptions including the accepted formats
        """
        issues = []

        if parsed.onepass:
            address = normalize_email(parsed.onepass)
            if not is_valid_email(address):
                issues.append(
                    '1Password field must be an email address.\n'
                    f'Got: "{parsed.onepass}"\n'
                    'Expected format: user@company.com '
                    '(supports +, -, numbers, and dots)'
                )

        if parsed.needed_raw and not parsed.needed_valid:
            default_time = self.date_resolver.describe_default_time()
            default_days = self.date_resolver.default_days
            issues.append(
                f'Needed by date/time format not recognized: "{parsed.needed_raw}"\n\n'
                '*Accepted formats:*\n'
                '• `ASAP` → 20 minutes from now\n'
                f'• `MM/DD/YYYY` → 11/04/2025 (defaults to {default_time})\n'
                '• `MM/DD/YYYY HH:MM AM/PM` → 11/04/2025 7:30 PM\n'
                '• `MM/DD/YYYY HPM` → 11/04/2025 7PM\n'
                '• `MM/DD/YYYY HHMM` → 11/04/2025 1430\n'
                f'• `YYYY-MM-DD` → 2025-11-04 (defaults to {default_time})\n'
                '• `YYYY-MM-DD HH:MM` → 2025-11-04 19:00\n\n'
                f'Using the default for now: {default_days} days from today '
                f'at {default_time}.'
            )

        return issues
