# Environment must be in place before anything under nearhelp reads its config
import asyncio
import os

os.environ["POSITION_STORE_BACKEND"] = "memory"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOG_FILE"] = ""
os.environ["LOG_LEVEL"] = "INFO"
os.environ["AUTH_VERIFY_MODE"] = "hs256"
os.environ["SUPABASE_JWT_SECRET"] = "test-secret"
os.environ["GEOCODER_ENABLED"] = "false"

from datetime import datetime, timedelta, timezone

import pytest

from nearhelp.core.errors import StoreUnavailable
from nearhelp.services.position_store import InMemoryPositionStore, PositionStore

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock; pass it wherever a `clock` callable is accepted."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FlakyStore(PositionStore):
    """
    In-memory store that can be switched into an outage, or into a query that
    never answers. Records the name of every call so tests can count writes.
    """

    def __init__(self, inner: PositionStore = None):
        self.inner = inner or InMemoryPositionStore()
        self.failing = False
        self.hanging = False
        self.calls = []

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        if self.failing:
            raise StoreUnavailable("simulated outage")

    def count(self, name: str) -> int:
        return self.calls.count(name)

    async def upsert(self, *args, **kwargs):
        self._enter("upsert")
        return await self.inner.upsert(*args, **kwargs)

    async def set_status(self, *args, **kwargs):
        self._enter("set_status")
        return await self.inner.set_status(*args, **kwargs)

    async def query(self, *args, **kwargs):
        self._enter("query")
        if self.hanging:
            await asyncio.Event().wait()
        return await self.inner.query(*args, **kwargs)

    async def get_by_id(self, *args, **kwargs):
        self._enter("get_by_id")
        return await self.inner.get_by_id(*args, **kwargs)

    async def create_anchor(self, *args, **kwargs):
        self._enter("create_anchor")
        return await self.inner.create_anchor(*args, **kwargs)

    async def get_anchor(self, *args, **kwargs):
        self._enter("get_anchor")
        return await self.inner.get_anchor(*args, **kwargs)

    async def resolve_anchor(self, *args, **kwargs):
        self._enter("resolve_anchor")
        return await self.inner.resolve_anchor(*args, **kwargs)

    async def query_anchors(self, *args, **kwargs):
        self._enter("query_anchors")
        return await self.inner.query_anchors(*args, **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryPositionStore()


@pytest.fixture
def flaky_store():
    return FlakyStore()
