"""Per-message serialization of the locate-then-upsert step."""
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Dict, Iterator, List

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


class SyncLockTimeout(Exception):
    """The lock for a message could not be acquired in time."""


class KeyedLock:
    """
    In-process mutex per key.

    Only serializes threads within one process. Separate Lambda instances
    handling the same message need DynamoDBSyncLock.

    Entries are reference counted and dropped once no holder or waiter
    remains, so the table does not grow with every message seen.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1

        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]

    def active_keys(self) -> List[str]:
        with self._guard:
            return list(self._locks)


class DynamoDBSyncLock:
    """
    Lease-based lock stored in a DynamoDB table.

    Serializes concurrent Lambda instances handling the same message. The
    table needs a string partition key named 'lock_key'; 'expires_at' can
    be enabled as the table TTL attribute.
    """

    def __init__(
        self,
        table_name: str,
        lease_seconds: int = 30,
        wait_seconds: float = 15,
        poll_interval: float = 0.25
    ):
        """
        Initialize DynamoDB client and table reference.

        Args:
            table_name: Name of the DynamoDB lock table
            lease_seconds: Lease length before a crashed holder's lock expires
            wait_seconds: Maximum time to wait for a held lock
            poll_interval: Delay between acquisition attempts
        """
        self.table_name = table_name
        self.lease_seconds = lease_seconds
        self.wait_seconds = wait_seconds
        self.poll_interval = poll_interval
        self.dynamodb = boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBSyncLock for table: {table_name}")

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        owner = self.acquire(key)
        try:
            yield
        finally:
            self.release(key, owner)

    def acquire(self, key: str) -> str:
        """
        Acquire the lease for a key, waiting while another owner holds it.

        Args:
            key: Lock key, e.g. 'C123:1730744400.123456'

        Returns:
            Owner token required to release the lease

        Raises:
            SyncLockTimeout: If the lease stays held past wait_seconds
            ClientError: On DynamoDB errors other than a held lease
        """
        owner = uuid.uuid4().hex
        deadline = time.time() + self.wait_seconds

        while True:
            now = int(time.time())
            try:
                self.table.put_item(
                    Item={
                        'lock_key': key,
                        'owner': owner,
                        'expires_at': now + self.lease_seconds
                    },
                    ConditionExpression='attribute_not_exists(lock_key) OR expires_at < :now',
                    ExpressionAttributeValues={':now': now}
                )
                logger.debug(f"Acquired sync lock {key}")
                return owner
            except ClientError as e:
                if e.response['Error']['Code'] != 'ConditionalCheckFailedException':
                    logger.error(f"Error acquiring sync lock {key}: {e}")
                    raise

            if time.time() >= deadline:
                raise SyncLockTimeout(
                    f"Timed out after {self.wait_seconds}s waiting for lock {key}"
                )
            time.sleep(self.poll_interval)

    def release(self, key: str, owner: str) -> None:
        """Release a lease if it is still owned by the caller."""
        try:
            self.table.delete_item(
                Key={'lock_key': key},
                ConditionExpression='#owner = :owner',
                ExpressionAttributeNames={'#owner': 'owner'},
                ExpressionAttributeValues={':owner': owner}
            )
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                logger.warning(f"Sync lock {key} expired before release")
                return
            logger.error(f"Error releasing sync lock {key}: {e}")
            raise
