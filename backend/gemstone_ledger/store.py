import asyncio
import logging
import time
from typing import Dict, Optional, Protocol

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from . import crud, database, schemas
from .config import Settings
from .errors import ProfileStoreError

logger = logging.getLogger(__name__)


class ProfileStore(Protocol):
    """
    Durable keyed record per user. The ledger only ever needs these two calls.
    """

    async def fetch(self, user_id: str) -> Optional[schemas.ProfileRecord]:
        ...

    async def upsert(self, user_id: str, record: schemas.ProfileRecord) -> None:
        ...


class InMemoryProfileStore:
    """
    Dict-backed store for local development and tests.
    """

    def __init__(self, records: Optional[Dict[str, schemas.ProfileRecord]] = None):
        self._records: Dict[str, schemas.ProfileRecord] = dict(records or {})

    async def initialize(self) -> None:
        return None

    async def fetch(self, user_id: str) -> Optional[schemas.ProfileRecord]:
        return self._records.get(user_id)

    async def upsert(self, user_id: str, record: schemas.ProfileRecord) -> None:
        # ProfileRecord is frozen, so storing the instance cannot leak later mutations
        self._records[user_id] = record


class SqlProfileStore:
    """
    ProfileStore backed by the `user_profiles` table.
    Blocking SQLAlchemy calls run in a worker thread so the event loop is never blocked.

    A write abandoned by a timeout keeps running in its thread and may commit
    after a later write. Each upsert is stamped with an increasing revision on
    the event loop before it is handed off, and the row only accepts newer
    revisions, so the late write cannot roll the balance back.
    """

    def __init__(self, engine: Engine):
        self._engine = engine
        self._session_factory = database.build_session_factory(engine)
        self._last_revision = 0

    @classmethod
    def from_url(cls, database_url: str) -> "SqlProfileStore":
        return cls(database.build_engine(database_url))

    async def initialize(self) -> None:
        try:
            await asyncio.to_thread(database.create_db_tables, self._engine)
        except SQLAlchemyError as e:
            logger.error(f"Error creating database tables: {e}", exc_info=True)
            raise ProfileStoreError(f"Could not create tables: {e}") from e

    def _fetch_sync(self, user_id: str) -> Optional[schemas.ProfileRecord]:
        db = self._session_factory()
        try:
            return crud.get_profile_record(db, user_id=user_id)
        finally:
            db.close()

    def _next_revision(self) -> int:
        self._last_revision = max(time.time_ns(), self._last_revision + 1)
        return self._last_revision

    def _upsert_sync(self, user_id: str, record: schemas.ProfileRecord, revision: Optional[int] = None) -> None:
        db = self._session_factory()
        try:
            crud.upsert_profile(db, user_id=user_id, record=record, revision=revision)
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    async def fetch(self, user_id: str) -> Optional[schemas.ProfileRecord]:
        try:
            return await asyncio.to_thread(self._fetch_sync, user_id)
        except SQLAlchemyError as e:
            logger.warning(f"Database error while fetching profile for user {user_id}: {e}")
            raise ProfileStoreError(f"Fetch failed for user {user_id}") from e

    async def upsert(self, user_id: str, record: schemas.ProfileRecord) -> None:
        try:
            await asyncio.to_thread(self._upsert_sync, user_id, record, self._next_revision())
        except SQLAlchemyError as e:
            logger.warning(f"Database error while saving profile for user {user_id}: {e}")
            raise ProfileStoreError(f"Upsert failed for user {user_id}") from e


def build_profile_store(settings: Settings):
    """
    Builds the store named by settings.store_backend.
    """
    if settings.store_backend == "sql":
        logger.info(f"Using SQL profile store at {settings.database_url.split('@')[-1]}")
        return SqlProfileStore.from_url(settings.database_url)
    if settings.store_backend == "memory":
        logger.warning("Using in-memory profile store; balances will not survive a restart.")
        return InMemoryProfileStore()
    raise ValueError(f"Unknown store backend: {settings.store_backend!r}")
