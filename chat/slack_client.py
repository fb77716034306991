"""Minimal Slack Web API client for threaded replies."""
import logging
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)


class SlackAPIError(Exception):
    """Slack returned ok=false or the request failed."""

    def __init__(self, message: str, error: str = ''):
        super().__init__(message)
        self.error = error


class SlackClient:
    """Client for the two Slack Web API methods the sync uses."""

    BASE_URL = "https://slack.com/api"

    def __init__(
        self,
        token: str,
        timeout: float = 10,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the Slack client.

        Args:
            token: Bot token (xoxb-...)
            timeout: HTTP request timeout in seconds (default: 10)
            session: Optional requests session to reuse
        """
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({'Authorization': f'Bearer {token}'})

    def post_reply(self, channel: str, thread_ts: str, text: str) -> Dict[str, Any]:
        """
        Post a reply in the thread of a message.

        Args:
            channel: Channel ID
            thread_ts: Timestamp of the parent message
            text: mrkdwn text

        Returns:
            Slack response body
        """
        return self._call(
            'chat.postMessage',
            json={'channel': channel, 'thread_ts': thread_ts, 'text': text}
        )

    def get_permalink(self, channel: str, message_ts: str) -> str:
        """
        Look up the permalink of a message.

        Args:
            channel: Channel ID
            message_ts: Message timestamp

        Returns:
            Permalink URL, or '' if it could not be retrieved
        """
        try:
            body = self._call(
                'chat.getPermalink',
                params={'channel': channel, 'message_ts': message_ts}
            )
        except SlackAPIError as e:
            logger.warning(f"Could not fetch permalink for {channel}/{message_ts}: {e}")
            return ''
        return body.get('permalink') or ''

    def _call(
        self,
        method: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        url = f'{self.BASE_URL}/{method}'
        try:
            if json is not None:
                response = self.session.post(url, json=json, timeout=self.timeout)
            else:
                response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            raise SlackAPIError(f"{method} failed: {e}")

        if not body.get('ok'):
            error = body.get('error', 'unknown_error')
            raise SlackAPIError(f"{method} returned error: {error}", error=error)
        return body
