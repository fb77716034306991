"""AWS Lambda handler for the Slack to Notion on-call issue sync."""
import base64
import hashlib
import hmac
import json
import logging
import os
import time
from typing import Any, Dict, Mapping, Optional

from config import ConfigError, Settings
from sync.sync_engine import SyncEngine

SIGNATURE_MAX_AGE_SECONDS = 60 * 5

# LogRecord attributes that are not user supplied extras
_RESERVED_LOG_ATTRS = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}

_engine: Optional[SyncEngine] = None


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON, including any extra fields."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'severity': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in vars(record).items():
            if key not in _RESERVED_LOG_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def verify_slack_signature(
    signing_secret: str,
    headers: Mapping[str, str],
    body: str,
    now: Optional[float] = None
) -> bool:
    """
    Check the X-Slack-Signature header of a request.

    Args:
        signing_secret: Slack app signing secret
        headers: Request headers with lower-cased names
        body: Raw request body
        now: Current unix time (default: time.time())

    Returns:
        True if the signature matches and the request is recent
    """
    timestamp = headers.get('x-slack-request-timestamp', '')
    signature = headers.get('x-slack-signature', '')
    if not timestamp or not signature:
        return False

    try:
        age = abs((now if now is not None else time.time()) - int(timestamp))
    except ValueError:
        return False
    if age > SIGNATURE_MAX_AGE_SECONDS:
        return False

    basestring = f'v0:{timestamp}:{body}'.encode('utf-8')
    expected = 'v0=' + hmac.new(
        signing_secret.encode('utf-8'), basestring, hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(expected, signature)


def get_engine(settings: Settings) -> SyncEngine:
    """Build the engine once per Lambda container so its schema cache persists."""
    global _engine
    if _engine is None:
        _engine = SyncEngine.from_settings(settings)
        _engine.warm_up()
    return _engine


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps(body)
    }


def _raw_body(event: Dict[str, Any]) -> str:
    body = event.get('body') or ''
    if event.get('isBase64Encoded'):
        body = base64.b64decode(body).decode('utf-8')
    return body


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler for Slack Events API callbacks.

    Args:
        event: API Gateway / Function URL request event
        context: Lambda context object

    Returns:
        HTTP response dict with statusCode and a JSON body
    """
    setup_logging(os.environ.get('LOG_LEVEL', 'INFO'))
    logger = logging.getLogger(__name__)

    start_time = time.time()
    headers = {k.lower(): v for k, v in (event.get('headers') or {}).items()}
    body = _raw_body(event)

    try:
        settings = Settings.from_env()
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}", exc_info=True)
        return _response(500, {'message': 'Invalid configuration', 'error': str(e)})

    if settings.slack_signing_secret:
        if not verify_slack_signature(settings.slack_signing_secret, headers, body):
            logger.warning("Rejected request with invalid Slack signature")
            return _response(401, {'message': 'Invalid signature'})
    else:
        logger.warning("SLACK_SIGNING_SECRET not set, skipping request verification")

    try:
        payload = json.loads(body)
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        logger.warning("Request body is not a JSON object")
        return _response(400, {'message': 'Invalid JSON body'})

    if payload.get('type') == 'url_verification':
        return _response(200, {'challenge': payload.get('challenge', '')})

    if headers.get('x-slack-retry-reason') == 'http_timeout':
        # The first delivery is still being processed
        logger.info(
            "Skipping Slack retry after http_timeout",
            extra={'retry_num': headers.get('x-slack-retry-num')}
        )
        return _response(200, {'message': 'Retry ignored'})

    slack_event = payload.get('event') or {}
    if payload.get('type') != 'event_callback' or slack_event.get('type') != 'message':
        return _response(200, {'message': 'Event ignored'})

    try:
        engine = get_engine(settings)
        result = engine.handle_event(slack_event)
    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Event processing failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return _response(500, {
            'message': 'Event processing failed',
            'error': str(e),
            'error_type': type(e).__name__,
            'duration_seconds': round(duration, 2)
        })

    duration = time.time() - start_time
    logger.info(
        "Event processed",
        extra={
            'outcome': result.outcome.value,
            'page_id': result.page_id,
            'duration_seconds': round(duration, 2),
            'metrics': engine.metrics.as_dict()
        }
    )
    return _response(200, {
        'message': 'Event processed',
        'outcome': result.outcome.value,
        'page_id': result.page_id,
        'duration_seconds': round(duration, 2)
    })
