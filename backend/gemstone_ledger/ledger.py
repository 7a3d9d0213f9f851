"""
Gemstone ledger for the signed-in user.

The ledger owns the only authoritative in-memory balance. Every
read-modify-write (load, earn, spend, daily grant, sign-out) runs under one
asyncio.Lock, and the lock is held across the store round-trip: the new
balance is computed, written to the ProfileStore, and only committed in
memory once the write is acknowledged. A failed or timed-out write therefore
leaves the in-memory account exactly as it was.

Reads (current_balance, pending_notification) take no lock and see the last
committed value.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Type

from .config import Settings
from .errors import (
    GemstoneError,
    InsufficientBalance,
    NoActiveSession,
    PersistFailed,
    PreconditionViolation,
    ProfileStoreError,
    StoreUnavailable,
)
from .schemas import (
    DailyGrantResult,
    GemstoneAccount,
    GemstoneNotification,
    ProfileRecord,
    Source,
    ensure_utc,
)
from .store import ProfileStore

logger = logging.getLogger(__name__)

BalanceListener = Callable[[str, int], None]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _check_amount(amount) -> None:
    # bool is an int subclass; True must not count as one gemstone
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        logger.error(f"Rejected gemstone amount {amount!r}: must be a positive integer.")
        raise PreconditionViolation(f"Amount must be a positive integer, got {amount!r}")


def _check_source(source) -> Source:
    try:
        return Source(source)
    except ValueError as e:
        logger.error(f"Rejected unknown gemstone source {source!r}.")
        raise PreconditionViolation(f"Unknown source: {source!r}") from e


class GemstoneLedger:
    """
    Balance, daily grant and pending notification for the active user.

    Construct one per process and pass it to the session watcher and the API
    layer; there is no module-level instance.
    """

    def __init__(
        self,
        store: ProfileStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._settings = settings or Settings()
        self._clock = clock
        self._account: Optional[GemstoneAccount] = None
        self._lock = asyncio.Lock()
        self._listeners: List[BalanceListener] = []

    # --- Read side ---

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def active_user_id(self) -> Optional[str]:
        account = self._account
        return account.user_id if account is not None else None

    @property
    def has_active_session(self) -> bool:
        return self._account is not None

    @property
    def pending_notification(self) -> Optional[GemstoneNotification]:
        account = self._account
        return account.pending_notification if account is not None else None

    def current_balance(self) -> int:
        return self._require_account().balance

    def snapshot(self) -> GemstoneAccount:
        """Returns a copy of the active account; changing it has no effect on the ledger."""
        return self._require_account().model_copy()

    def is_low_balance(self) -> bool:
        return self.current_balance() <= self._settings.low_balance_threshold

    def clear_pending_notification(self) -> None:
        account = self._account
        if account is not None:
            account.pending_notification = None

    def add_balance_listener(self, listener: BalanceListener) -> None:
        self._listeners.append(listener)

    def remove_balance_listener(self, listener: BalanceListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # --- Session ---

    async def load(self, user_id: str) -> GemstoneAccount:
        """
        Loads (or creates) the account for `user_id` and makes it the active one.

        A brand new user gets `initial_gemstones` and `last_grant_at = now`, and the
        record is written before the account becomes active. If the store cannot be
        reached no account is left active, including one loaded earlier.
        """
        if not isinstance(user_id, str) or not user_id.strip():
            logger.error(f"Rejected load for invalid user id {user_id!r}.")
            raise PreconditionViolation("user_id must be a non-empty string")

        async with self._lock:
            self._account = None
            record = await self._fetch(user_id)
            if record is None:
                record = ProfileRecord(
                    balance=self._settings.initial_gemstones,
                    last_grant_at=self._now(),
                )
                await self._persist(user_id, record, error_cls=StoreUnavailable)
                logger.info(f"Created gemstone account for user {user_id} with {record.balance} gemstones.")
            else:
                logger.info(f"Loaded gemstone account for user {user_id}: balance={record.balance}")

            account = GemstoneAccount(
                user_id=user_id,
                balance=record.balance,
                last_grant_at=record.last_grant_at,
            )
            self._account = account
            self._notify_listeners(user_id, account.balance)
            return account.model_copy()

    async def sign_out(self) -> None:
        """Waits for any in-flight change, then drops the active account."""
        async with self._lock:
            if self._account is not None:
                logger.info(f"Signing out user {self._account.user_id}; gemstone account released.")
            self._account = None

    # --- Mutations ---

    async def earn(self, amount: int, source: Source) -> int:
        _check_amount(amount)
        source = _check_source(source)

        async with self._lock:
            account = self._require_account()
            new_balance = account.balance + amount
            await self._persist(
                account.user_id,
                ProfileRecord(balance=new_balance, last_grant_at=account.last_grant_at),
            )
            account.balance = new_balance
            account.pending_notification = GemstoneNotification(
                amount=amount, new_balance=new_balance, source=source
            )
            logger.info(f"Credited {amount} gemstones ({source.value}) to user {account.user_id}. Balance: {new_balance}")
            self._notify_listeners(account.user_id, new_balance)
            return new_balance

    async def spend(self, amount: int, source: Source = Source.GENERATION_SPEND) -> int:
        _check_amount(amount)
        source = _check_source(source)

        async with self._lock:
            account = self._require_account()
            if amount > account.balance:
                logger.info(f"User {account.user_id} cannot spend {amount} gemstones; balance is {account.balance}.")
                raise InsufficientBalance(requested=amount, available=account.balance)

            new_balance = account.balance - amount
            await self._persist(
                account.user_id,
                ProfileRecord(balance=new_balance, last_grant_at=account.last_grant_at),
            )
            account.balance = new_balance
            logger.info(f"Debited {amount} gemstones ({source.value}) from user {account.user_id}. Balance: {new_balance}")
            if new_balance <= self._settings.low_balance_threshold:
                logger.info(f"User {account.user_id} is running low on gemstones: {new_balance} left.")
            self._notify_listeners(account.user_id, new_balance)
            return new_balance

    async def maybe_apply_daily_grant(
        self,
        now: Optional[datetime] = None,
        grant_amount: Optional[int] = None,
    ) -> DailyGrantResult:
        """
        Credits the daily grant if at least `daily_grant_interval_hours` have elapsed
        since the last one (or none was ever given).

        Eligibility is elapsed time, not calendar days. The balance and the new
        `last_grant_at` are written in one upsert, so a second call inside the same
        window returns `granted=False`.
        """
        if grant_amount is None:
            grant_amount = self._settings.daily_grant_amount
        _check_amount(grant_amount)
        now = ensure_utc(now) if now is not None else self._now()

        async with self._lock:
            account = self._require_account()
            if not self._grant_due(account.last_grant_at, now):
                logger.debug(f"User {account.user_id} is not eligible for the daily grant yet.")
                return DailyGrantResult(granted=False, new_balance=None)

            new_balance = account.balance + grant_amount
            await self._persist(
                account.user_id,
                ProfileRecord(balance=new_balance, last_grant_at=now),
            )
            account.balance = new_balance
            account.last_grant_at = now
            account.pending_notification = GemstoneNotification(
                amount=grant_amount, new_balance=new_balance, source=Source.DAILY_GRANT
            )
            logger.info(f"Granted {grant_amount} daily gemstones to user {account.user_id}. Balance: {new_balance}")
            self._notify_listeners(account.user_id, new_balance)
            return DailyGrantResult(granted=True, new_balance=new_balance)

    # --- Internals ---

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    def _grant_due(self, last_grant_at: Optional[datetime], now: datetime) -> bool:
        if last_grant_at is None:
            return True
        interval = timedelta(hours=self._settings.daily_grant_interval_hours)
        return now - last_grant_at >= interval

    def _require_account(self) -> GemstoneAccount:
        account = self._account
        if account is None:
            logger.error("Gemstone operation attempted without an active session.")
            raise NoActiveSession("No gemstone account is loaded for the current session.")
        return account

    async def _fetch(self, user_id: str) -> Optional[ProfileRecord]:
        try:
            return await asyncio.wait_for(
                self._store.fetch(user_id),
                timeout=self._settings.store_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"Timed out fetching gemstone record for user {user_id}.")
            raise StoreUnavailable(f"Timed out fetching record for user {user_id}") from e
        except (ProfileStoreError, OSError) as e:
            logger.warning(f"Could not fetch gemstone record for user {user_id}: {e}")
            raise StoreUnavailable(f"Could not fetch record for user {user_id}") from e

    async def _persist(
        self,
        user_id: str,
        record: ProfileRecord,
        error_cls: Type[GemstoneError] = PersistFailed,
    ) -> None:
        # A timed-out write may still land later; SqlProfileStore drops it once a newer one has.
        try:
            await asyncio.wait_for(
                self._store.upsert(user_id, record),
                timeout=self._settings.store_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"Timed out saving gemstone record for user {user_id}.")
            raise error_cls(f"Timed out saving record for user {user_id}") from e
        except (ProfileStoreError, OSError) as e:
            logger.warning(f"Could not save gemstone record for user {user_id}: {e}")
            raise error_cls(f"Could not save record for user {user_id}") from e

    def _notify_listeners(self, user_id: str, balance: int) -> None:
        for listener in list(self._listeners):
            try:
                listener(user_id, balance)
            except Exception as e:
                logger.error(f"Balance listener {listener!r} failed: {e}", exc_info=True)
