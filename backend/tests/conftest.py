import asyncio
from datetime import datetime, timezone

import pytest

from gemstone_ledger.config import Settings
from gemstone_ledger.errors import ProfileStoreError
from gemstone_ledger.ledger import GemstoneLedger
from gemstone_ledger.store import InMemoryProfileStore


T0 = datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)


class FlakyProfileStore(InMemoryProfileStore):
    """
    In-memory store that can be told to fail or stall, and counts its calls.
    """

    def __init__(self, records=None):
        super().__init__(records)
        self.fail_fetch = False
        self.fail_upsert = False
        self.delay = 0.0
        self.fetch_calls = 0
        self.upsert_calls = 0

    async def fetch(self, user_id):
        self.fetch_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_fetch:
            raise ProfileStoreError("simulated fetch outage")
        return await super().fetch(user_id)

    async def upsert(self, user_id, record):
        self.upsert_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_upsert:
            raise ProfileStoreError("simulated write outage")
        await super().upsert(user_id, record)


@pytest.fixture
def settings() -> Settings:
    return Settings(store_backend="memory", store_timeout_seconds=1.0)


@pytest.fixture
def store() -> FlakyProfileStore:
    return FlakyProfileStore()


@pytest.fixture
def ledger(store: FlakyProfileStore, settings: Settings) -> GemstoneLedger:
    return GemstoneLedger(store, settings=settings, clock=lambda: T0)
