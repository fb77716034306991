"""Unit tests for the per-message sync locks."""
import threading
import time

import boto3
import pytest
from moto import mock_aws

from storage.sync_lock import DynamoDBSyncLock, KeyedLock, SyncLockTimeout


@pytest.fixture
def lock_table(monkeypatch):
    """Create a mock DynamoDB lock table for testing."""
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name='us-east-1')
        table = dynamodb.create_table(
            TableName='test-sync-locks',
            KeySchema=[{'AttributeName': 'lock_key', 'KeyType': 'HASH'}],
            AttributeDefinitions=[{'AttributeName': 'lock_key', 'AttributeType': 'S'}],
            BillingMode='PAY_PER_REQUEST'
        )
        yield table


@pytest.fixture
def dynamodb_lock(lock_table):
    """Create a lock with short waits."""
    return DynamoDBSyncLock('test-sync-locks', lease_seconds=30, wait_seconds=0.2, poll_interval=0.05)


def test_keyed_lock_serializes_same_key():
    """Test two holders of one key never overlap."""
    lock = KeyedLock()
    active = []
    overlaps = []

    def worker():
        with lock.hold('C1:1.1'):
            active.append(1)
            if len(active) > 1:
                overlaps.append(True)
            time.sleep(0.01)
            active.pop()

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert overlaps == []
    assert lock.active_keys() == []


def test_keyed_lock_independent_keys():
    """Test different keys can be held at the same time."""
    lock = KeyedLock()

    with lock.hold('C1:1.1'):
        acquired = threading.Event()

        def worker():
            with lock.hold('C1:2.2'):
                acquired.set()

        thread = threading.Thread(target=worker)
        thread.start()
        assert acquired.wait(timeout=1)
        thread.join()


def test_keyed_lock_released_on_error():
    """Test the lock is released when the body raises."""
    lock = KeyedLock()

    with pytest.raises(RuntimeError):
        with lock.hold('C1:1.1'):
            raise RuntimeError('boom')

    assert lock.active_keys() == []
    with lock.hold('C1:1.1'):
        assert lock.active_keys() == ['C1:1.1']


def test_dynamodb_lock_acquire_and_release(dynamodb_lock, lock_table):
    """Test a lease is written while held and deleted afterwards."""
    with dynamodb_lock.hold('C1:1.1'):
        item = lock_table.get_item(Key={'lock_key': 'C1:1.1'})['Item']
        assert item['owner']
        assert int(item['expires_at']) > int(time.time())

    assert 'Item' not in lock_table.get_item(Key={'lock_key': 'C1:1.1'})


def test_dynamodb_lock_times_out_while_held(dynamodb_lock):
    """Test a second acquirer gives up after wait_seconds."""
    owner = dynamodb_lock.acquire('C1:1.1')

    with pytest.raises(SyncLockTimeout):
        dynamodb_lock.acquire('C1:1.1')

    dynamodb_lock.release('C1:1.1', owner)
    assert dynamodb_lock.acquire('C1:1.1')


def test_dynamodb_lock_takes_over_expired_lease(dynamodb_lock, lock_table):
    """Test an expired lease from a crashed holder is taken over."""
    lock_table.put_item(Item={
        'lock_key': 'C1:1.1',
        'owner': 'crashed',
        'expires_at': int(time.time()) - 10
    })

    owner = dynamodb_lock.acquire('C1:1.1')

    item = lock_table.get_item(Key={'lock_key': 'C1:1.1'})['Item']
    assert item['owner'] == owner


def test_dynamodb_lock_release_by_other_owner_is_ignored(dynamodb_lock, lock_table):
    """Test releasing with a stale owner leaves the new lease alone."""
    owner = dynamodb_lock.acquire('C1:1.1')

    dynamodb_lock.release('C1:1.1', 'someone-else')

    item = lock_table.get_item(Key={'lock_key': 'C1:1.1'})['Item']
    assert item['owner'] == owner


def test_dynamodb_lock_independent_keys(dynamodb_lock):
    """Test different messages do not block each other."""
    with dynamodb_lock.hold('C1:1.1'):
        with dynamodb_lock.hold('C1:2.2'):
            pass
