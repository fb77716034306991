"""Text of the threaded replies posted back to Slack."""
from typing import List, Optional


def trigger_suffix(trigger: Optional[str]) -> str:
    if trigger == 'cat':
        return ' 🐈'
    if trigger == 'peepo':
        return ' :peepo-yessir:'
    return ''


def _bullets(items: List[str]) -> str:
    return '\n'.join(f'• {item}' for item in items)


def missing_fields_reply(fields: List[str], trigger: Optional[str] = None) -> str:
    keyword = f'@{trigger or "auto"}'
    return (
        "❗ I couldn't track this yet. The following fields are missing:\n"
        f"{_bullets(fields)}\n\n"
        f"Please *edit the original message* to include the missing fields "
        f"(keep the *{keyword}* line at the top). "
        "I'll pick up the edit automatically."
        f"{trigger_suffix(trigger)}"
    )


def invalid_fields_reply(issues: List[str], trigger: Optional[str] = None) -> str:
    return (
        "⚠️ I couldn't track this yet. Some fields have an invalid format:\n"
        f"{_bullets(issues)}\n\n"
        "Please *edit the original message* to fix these fields. "
        "I'll pick up the edit automatically."
        f"{trigger_suffix(trigger)}"
    )


def created_reply(url: str, trigger: Optional[str] = None) -> str:
    return f"✅ Tracked in Notion: {url}{trigger_suffix(trigger)}"


def updated_reply(url: str, trigger: Optional[str] = None) -> str:
    return f"🔄 Updated in Notion: {url}{trigger_suffix(trigger)}"


def access_denied_reply(trigger: Optional[str] = None) -> str:
    return (
        "🔒 I don't have access to the Notion database for this channel.\n"
        "Ask a workspace admin to open the database in Notion, choose "
        "*••• → Connections → Add connection* and add this integration, "
        "then edit the original message to retry."
        f"{trigger_suffix(trigger)}"
    )


def failure_reply(trigger: Optional[str] = None) -> str:
    return (
        "❌ Something went wrong while saving this issue to Notion. "
        "Edit the original message to retry, or contact the bot maintainers."
        f"{trigger_suffix(trigger)}"
    )
