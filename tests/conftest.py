"""Shared fixtures: fake asyncpg connections, a recording queue and an optional live database."""

import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from appview_indexer.config import IndexerConfig
from appview_indexer.notifications import NotificationQueue
from appview_indexer.plugins import PluginRegistry
from appview_indexer.processor import RecordProcessor

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

ALICE = "did:plc:alice"
BOB = "did:plc:bob"
CAROL = "did:plc:carol"


class FakeTransaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeConnection:
    """Stands in for asyncpg.Connection; every query method is an AsyncMock"""

    def __init__(self):
        self.execute = AsyncMock(return_value="OK")
        self.executemany = AsyncMock(return_value=None)
        self.fetch = AsyncMock(return_value=[])
        self.fetchrow = AsyncMock(return_value=None)
        self.fetchval = AsyncMock(return_value=None)
        self.copy_records_to_table = AsyncMock(return_value="COPY")

    def transaction(self):
        return FakeTransaction()

    def sql(self, method: str = 'execute'):
        """SQL text of every call made through ``method``"""
        return [call.args[0] for call in getattr(self, method).call_args_list]


class FakePool:
    """DatabasePool lookalike handing out one shared FakeConnection"""

    def __init__(self, conn=None):
        self.conn = conn or FakeConnection()
        self.transactions = 0

    @asynccontextmanager
    async def acquire(self):
        yield self.conn

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        yield self.conn

    async def connect(self, verify_schema: bool = True):
        pass

    async def close(self):
        pass


class RecordingQueue(NotificationQueue):
    """Keeps every published change for assertions"""

    name = "recording"

    def __init__(self):
        self.published = []

    async def _publish(self, changes):
        self.published.append(changes)

    @property
    def notifications(self):
        return [n for changes in self.published for n in changes.notifications]

    @property
    def deleted(self):
        return [uri for changes in self.published for uri in changes.to_delete]


@pytest.fixture
def conn():
    return FakeConnection()


@pytest.fixture
def pool(conn):
    return FakePool(conn)


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def registry():
    return PluginRegistry()


@pytest.fixture
def processor(pool, registry, queue):
    return RecordProcessor(pool, registry, queue, bulk_batch_size=100)


@pytest.fixture
async def service():
    """
    IndexingService against a real PostgreSQL database.

    Set TEST_DATABASE_URL to a disposable database to run these tests;
    every table is truncated before each test.
    """
    database_url = os.getenv("TEST_DATABASE_URL")
    if not database_url:
        pytest.skip("TEST_DATABASE_URL not set")

    from appview_indexer import schema
    from appview_indexer.service import IndexingService

    config = IndexerConfig(database_url=database_url, db_pool_size=4, bulk_batch_size=50)
    recording = RecordingQueue()
    svc = IndexingService(config, queue=recording)
    await svc.start(verify_schema=False)
    async with svc.pool.acquire() as c:
        await schema.apply_schema(c)
        await schema.truncate_all(c)
    try:
        yield svc
    finally:
        await svc.close()
