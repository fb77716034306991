"""Minimal Notion REST client used for database sync."""
import logging
import time
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)


class NotionAPIError(Exception):
    """Error returned by the Notion API or raised while calling it."""

    PERMISSION_CODES = ('unauthorized', 'restricted_resource', 'object_not_found')
    TRANSIENT_STATUSES = (429, 500, 502, 503, 504)

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: str = '',
        retry_after: Optional[str] = None
    ):
        super().__init__(message)
        self.status = status
        self.code = code
        self.retry_after = retry_after

    @property
    def is_permission_error(self) -> bool:
        """True when the integration lacks access to the database or page."""
        return self.status in (401, 403) or self.code in self.PERMISSION_CODES

    @property
    def is_transient(self) -> bool:
        # status None means the request never got a response
        return self.status is None or self.status in self.TRANSIENT_STATUSES

    @property
    def is_timeout(self) -> bool:
        return self.code == 'timeout'


class NotionClient:
    """Client for the subset of the Notion API the sync needs."""

    BASE_URL = "https://api.notion.com/v1"
    NOTION_VERSION = "2022-06-28"

    def __init__(
        self,
        token: str,
        timeout: float = 10,
        max_retries: int = 3,
        base_delay: float = 1,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the Notion client.

        Args:
            token: Integration token
            timeout: HTTP request timeout in seconds (default: 10)
            max_retries: Attempts for idempotent requests (default: 3)
            base_delay: First backoff delay in seconds (default: 1)
            session: Optional requests session to reuse
        """
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.session = session or requests.Session()
        self.session.headers.update({
            'Authorization': f'Bearer {token}',
            'Notion-Version': self.NOTION_VERSION,
            'Content-Type': 'application/json'
        })

    def retrieve_database(self, database_id: str) -> Dict[str, Any]:
        """Fetch a database object including its property definitions."""
        return self._request('GET', f'/databases/{database_id}')

    def query_database(
        self,
        database_id: str,
        filter: Dict[str, Any],
        page_size: int = 1
    ) -> Dict[str, Any]:
        """
        Query a database with a property filter.

        Args:
            database_id: Notion database ID
            filter: Notion filter object
            page_size: Maximum results to return (default: 1)

        Returns:
            Query response with a 'results' list of pages
        """
        return self._request(
            'POST',
            f'/databases/{database_id}/query',
            json={'filter': filter, 'page_size': page_size}
        )

    def create_page(self, database_id: str, properties: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a page under a database.

        Sent once with no retry: a retried create could duplicate the page
        when the first attempt reached Notion.
        """
        return self._request(
            'POST',
            '/pages',
            json={'parent': {'database_id': database_id}, 'properties': properties},
            retry=False
        )

    def update_page(self, page_id: str, properties: Dict[str, Any]) -> Dict[str, Any]:
        """Update the properties of an existing page."""
        return self._request(
            'PATCH', f'/pages/{page_id}', json={'properties': properties}
        )

    def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        retry: bool = True
    ) -> Dict[str, Any]:
        """
        Send a request with exponential backoff on transient failures.

        Args:
            method: HTTP method
            path: Path below BASE_URL
            json: Request body
            retry: Whether transient failures are retried

        Returns:
            Decoded JSON response

        Raises:
            NotionAPIError: On an error response or after the last attempt
        """
        url = f'{self.BASE_URL}{path}'
        attempts = self.max_retries if retry else 1

        for attempt in range(attempts):
            try:
                return self._send(method, url, json)
            except NotionAPIError as e:
                if not e.is_transient or attempt == attempts - 1:
                    if attempt > 0:
                        logger.error(
                            f"All {attempts} attempts failed for {method} {path}. "
                            f"Last error: {e}"
                        )
                    raise

                delay = self._retry_delay(e, attempt)
                logger.warning(
                    f"Notion request failed (attempt {attempt + 1}/{attempts}): {e}. "
                    f"Retrying in {delay} seconds...",
                    extra={'status': e.status, 'code': e.code}
                )
                time.sleep(delay)

    def _send(
        self,
        method: str,
        url: str,
        json: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        try:
            response = self.session.request(
                method, url, json=json, timeout=self.timeout
            )
        except requests.Timeout as e:
            raise NotionAPIError(f"Request timed out: {e}", code='timeout')
        except requests.RequestException as e:
            raise NotionAPIError(f"Request failed: {e}", code='connection_error')

        if response.ok:
            return response.json()

        try:
            body = response.json()
        except ValueError:
            body = {}
        raise NotionAPIError(
            body.get('message') or f"HTTP {response.status_code}",
            status=response.status_code,
            code=body.get('code', ''),
            retry_after=response.headers.get('Retry-After')
        )

    def _retry_delay(self, error: NotionAPIError, attempt: int) -> float:
        if error.retry_after:
            try:
                return float(error.retry_after)
            except ValueError:
                logger.debug(f"Ignoring non-numeric Retry-After: {error.retry_after!r}")
        return self.base_delay * (2 ** attempt)
