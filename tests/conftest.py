import asyncio
from datetime import datetime

import pytest

from core.memory_store import InMemoryStore
from core.push import PushResult
from core.time_utils import UTC
from models.credential import TokenGrant


class YieldingStore(InMemoryStore):
    """Hands control back to the event loop before every call so concurrent jobs interleave."""

    async def find(self, collection, query=None):
        await asyncio.sleep(0)
        return await super().find(collection, query)

    async def insert(self, collection, record):
        await asyncio.sleep(0)
        return await super().insert(collection, record)

    async def insert_unique(self, collection, record, unique_keys):
        await asyncio.sleep(0)
        return await super().insert_unique(collection, record, unique_keys)

    async def conditional_update(self, collection, record_id, field, value):
        await asyncio.sleep(0)
        return await super().conditional_update(collection, record_id, field, value)

    async def upsert(self, collection, record, conflict_keys):
        await asyncio.sleep(0)
        return await super().upsert(collection, record, conflict_keys)


class FakeSender:
    """
    Records sends. Endpoints listed in `statuses` fail with that status code;
    endpoints listed in `errors` raise that exception.
    """

    def __init__(self, statuses=None, errors=None):
        self.statuses = statuses or {}
        self.errors = errors or {}
        self.sent = []

    async def send(self, subscription, payload):
        if subscription.endpoint in self.errors:
            raise self.errors[subscription.endpoint]
        status = self.statuses.get(subscription.endpoint)
        if status is not None:
            return PushResult(ok=False, status_code=status, error=f"HTTP {status}")
        self.sent.append((subscription.endpoint, payload))
        return PushResult(ok=True)


class FakeOAuthProvider:
    """Raises the queued errors first, then returns `grant`."""

    def __init__(self, grant=None, errors=None):
        self.grant = grant or TokenGrant(access_token="new-access")
        self.errors = list(errors or [])
        self.calls = 0

    async def refresh(self, refresh_token):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.grant


class FakeHandle:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeTimer:
    def __init__(self):
        self.handles = []

    def __call__(self, delay, callback):
        handle = FakeHandle(delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def pending(self):
        return [h for h in self.handles if not h.cancelled]


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def utc(*args):
    return datetime(*args, tzinfo=UTC)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def yielding_store():
    return YieldingStore()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def timer():
    return FakeTimer()
