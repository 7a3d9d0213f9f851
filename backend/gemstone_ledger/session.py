import asyncio
import logging
from typing import AsyncIterable, NamedTuple, Optional

from .errors import PersistFailed, StoreUnavailable
from .ledger import GemstoneLedger
from .schemas import DailyGrantResult, GemstoneAccount

logger = logging.getLogger(__name__)


class SessionResult(NamedTuple):
    account: GemstoneAccount
    daily_grant: DailyGrantResult


class SessionWatcher:
    """
    Bridges auth-state changes to the ledger.

    A new user id loads that user's account and evaluates the daily grant once;
    `None` signs the ledger out. `ready` is set after the first auth event has
    been handled, whatever its outcome, so startup code can await it instead of
    polling.
    """

    def __init__(self, ledger: GemstoneLedger):
        self._ledger = ledger
        self._ready = asyncio.Event()

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    async def wait_until_ready(self, timeout: Optional[float] = None) -> None:
        if timeout is None:
            await self._ready.wait()
        else:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)

    async def on_auth_state_change(self, user_id: Optional[str]) -> Optional[SessionResult]:
        try:
            if user_id is None:
                logger.info("Auth state changed: signed out.")
                await self._ledger.sign_out()
                return None

            if self._ledger.active_user_id == user_id:
                logger.debug(f"Auth state repeated for active user {user_id}; keeping loaded account.")
                return SessionResult(
                    account=self._ledger.snapshot(),
                    daily_grant=DailyGrantResult(granted=False, new_balance=None),
                )

            logger.info(f"Auth state changed: user {user_id} signed in.")
            await self._ledger.load(user_id)
            try:
                grant = await self._ledger.maybe_apply_daily_grant()
            except PersistFailed as e:
                # The account is loaded; only the grant was not saved.
                logger.warning(f"Daily grant for user {user_id} was not saved: {e}")
                grant = DailyGrantResult(granted=False, new_balance=None)
            return SessionResult(account=self._ledger.snapshot(), daily_grant=grant)
        finally:
            self._ready.set()

    async def watch(self, events: AsyncIterable[Optional[str]]) -> None:
        """
        Consumes a stream of auth events until it ends.
        A store outage while loading is logged and the next event is still handled.
        """
        async for user_id in events:
            try:
                await self.on_auth_state_change(user_id)
            except StoreUnavailable as e:
                logger.warning(f"Could not load gemstones for user {user_id}: {e}")
