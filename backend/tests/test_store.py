from datetime import timedelta

import pytest
from sqlalchemy import inspect
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from gemstone_ledger import crud
from gemstone_ledger.config import Settings
from gemstone_ledger.database import build_engine, build_session_factory, create_db_tables
from gemstone_ledger.errors import ProfileStoreError, StoreUnavailable
from gemstone_ledger.ledger import GemstoneLedger
from gemstone_ledger.schemas import ProfileRecord, Source
from gemstone_ledger.store import InMemoryProfileStore, SqlProfileStore, build_profile_store

from conftest import T0


@pytest.fixture
def sql_store() -> SqlProfileStore:
    return SqlProfileStore(build_engine("sqlite://"))


# --- InMemoryProfileStore ---

@pytest.mark.asyncio
async def test_memory_store_fetch_missing_returns_none():
    store = InMemoryProfileStore()
    assert await store.fetch("nobody") is None


@pytest.mark.asyncio
async def test_memory_store_upsert_overwrites():
    store = InMemoryProfileStore({"u1": ProfileRecord(balance=1)})
    await store.upsert("u1", ProfileRecord(balance=7, last_grant_at=T0))
    assert await store.fetch("u1") == ProfileRecord(balance=7, last_grant_at=T0)


# --- SqlProfileStore ---

@pytest.mark.asyncio
async def test_sql_store_initialize_creates_table(sql_store: SqlProfileStore):
    await sql_store.initialize()
    assert "user_profiles" in inspect(sql_store._engine).get_table_names()


@pytest.mark.asyncio
async def test_sql_store_fetch_missing_returns_none(sql_store: SqlProfileStore):
    await sql_store.initialize()
    assert await sql_store.fetch("nobody") is None


@pytest.mark.asyncio
async def test_sql_store_upsert_then_fetch(sql_store: SqlProfileStore):
    await sql_store.initialize()

    await sql_store.upsert("u1", ProfileRecord(balance=3, last_grant_at=T0))
    await sql_store.upsert("u1", ProfileRecord(balance=9, last_grant_at=T0 + timedelta(hours=25)))

    record = await sql_store.fetch("u1")
    assert record.balance == 9
    assert record.last_grant_at == T0 + timedelta(hours=25)
    assert record.last_grant_at.tzinfo is not None


@pytest.mark.asyncio
async def test_sql_store_keeps_null_grant_time(sql_store: SqlProfileStore):
    await sql_store.initialize()
    await sql_store.upsert("u2", ProfileRecord(balance=0))
    assert await sql_store.fetch("u2") == ProfileRecord(balance=0, last_grant_at=None)


@pytest.mark.asyncio
async def test_sql_store_wraps_database_errors(sql_store: SqlProfileStore, mocker):
    await sql_store.initialize()
    mocker.patch.object(crud, "get_profile_record", side_effect=OperationalError("SELECT", {}, Exception("db down")))

    with pytest.raises(ProfileStoreError):
        await sql_store.fetch("u1")


@pytest.mark.asyncio
async def test_sql_store_upsert_error_rolls_back(sql_store: SqlProfileStore, mocker):
    await sql_store.initialize()
    mocker.patch.object(crud, "upsert_profile", side_effect=SQLAlchemyError("write refused"))

    with pytest.raises(ProfileStoreError):
        await sql_store.upsert("u1", ProfileRecord(balance=1))

    mocker.stopall()
    assert await sql_store.fetch("u1") is None


@pytest.mark.asyncio
async def test_ledger_over_sql_store(sql_store: SqlProfileStore):
    await sql_store.initialize()
    ledger = GemstoneLedger(sql_store, settings=Settings(), clock=lambda: T0)

    await ledger.load("u1")
    await ledger.earn(3, Source.AD_REWARD)
    await ledger.spend(1)

    reloaded = GemstoneLedger(sql_store, settings=Settings(), clock=lambda: T0 + timedelta(hours=1))
    account = await reloaded.load("u1")
    assert account.balance == 5
    assert account.last_grant_at == T0


@pytest.mark.asyncio
async def test_ledger_reports_missing_table_as_unavailable():
    store = SqlProfileStore(build_engine("sqlite://"))
    ledger = GemstoneLedger(store, settings=Settings(), clock=lambda: T0)

    with pytest.raises(StoreUnavailable):
        await ledger.load("u1")


# --- crud ---

def test_crud_upsert_creates_and_updates_row():
    engine = build_engine("sqlite://")
    create_db_tables(engine)
    db = build_session_factory(engine)()
    try:
        crud.upsert_profile(db, "u1", ProfileRecord(balance=3, last_grant_at=T0))
        row = crud.upsert_profile(db, "u1", ProfileRecord(balance=4, last_grant_at=T0))
        assert row.gemstones == 4
        assert db.query(crud.db_module.UserProfile).count() == 1
        assert crud.get_profile(db, "missing") is None
    finally:
        db.close()


# --- build_profile_store ---

def test_build_profile_store_memory():
    assert isinstance(build_profile_store(Settings(store_backend="memory")), InMemoryProfileStore)


def test_build_profile_store_sql():
    store = build_profile_store(Settings(store_backend="sql", database_url="sqlite://"))
    assert isinstance(store, SqlProfileStore)


def test_build_engine_rejects_empty_url():
    with pytest.raises(ValueError):
        build_engine("")


def test_crud_upsert_discards_older_revision():
    engine = build_engine("sqlite://")
    create_db_tables(engine)
    db = build_session_factory(engine)()
    try:
        crud.upsert_profile(db, "u1", ProfileRecord(balance=8, last_grant_at=T0), revision=2)
        row = crud.upsert_profile(db, "u1", ProfileRecord(balance=3, last_grant_at=T0), revision=1)

        assert row.gemstones == 8
        assert row.revision == 2
        row = crud.upsert_profile(db, "u1", ProfileRecord(balance=5, last_grant_at=T0), revision=3)
        assert row.gemstones == 5
    finally:
        db.close()


@pytest.mark.asyncio
async def test_sql_store_late_write_does_not_roll_back_balance(sql_store: SqlProfileStore):
    await sql_store.initialize()
    # Revision taken when the write was issued, before the one that follows
    stale_revision = sql_store._next_revision()

    await sql_store.upsert("u1", ProfileRecord(balance=6, last_grant_at=T0))
    sql_store._upsert_sync("u1", ProfileRecord(balance=3, last_grant_at=T0), revision=stale_revision)

    assert (await sql_store.fetch("u1")).balance == 6
