from fastapi import FastAPI, Depends, Request, status
from fastapi.responses import JSONResponse
from datetime import datetime
from typing import Callable, Optional
import logging


from . import rewards, schemas
from .config import Settings
from .errors import (
    InsufficientBalance,
    NoActiveSession,
    PersistFailed,
    PreconditionViolation,
    StoreUnavailable,
)
from .ledger import GemstoneLedger, utc_now
from .session import SessionWatcher
from .store import ProfileStore, build_profile_store

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# --- Dependencies ---
def get_ledger(request: Request) -> GemstoneLedger:
    return request.app.state.ledger


def get_session_watcher(request: Request) -> SessionWatcher:
    return request.app.state.session_watcher


def _balance_response(ledger: GemstoneLedger, balance: Optional[int] = None) -> schemas.BalanceResponse:
    if balance is None:
        return schemas.BalanceResponse(
            user_id=ledger.active_user_id,
            balance=ledger.current_balance(),
            low_balance=ledger.is_low_balance(),
        )
    return schemas.BalanceResponse(
        user_id=ledger.active_user_id,
        balance=balance,
        low_balance=balance <= ledger.settings.low_balance_threshold,
    )


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[ProfileStore] = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    """
    Builds the API with one ledger and one session watcher, both kept on app.state.
    The store is built from settings unless one is passed in.
    """
    settings = settings or Settings.from_env()
    logging.getLogger().setLevel(settings.log_level.upper())
    if store is None:
        store = build_profile_store(settings)

    ledger = GemstoneLedger(store, settings=settings, clock=clock)
    watcher = SessionWatcher(ledger)

    app = FastAPI(
        title="AssetCraft Gemstones Backend",
        description="Gemstone balance, rewards and daily grant for AssetCraft AI.",
        version="0.1.0"
    )
    app.state.settings = settings
    app.state.store = store
    app.state.ledger = ledger
    app.state.session_watcher = watcher

    # --- Application Lifecycle Events ---
    @app.on_event("startup")
    async def on_startup():
        """
        Prepares the profile store (creates tables for the SQL backend).
        """
        logger.info(f"Application startup: initializing '{settings.store_backend}' profile store.")
        initialize = getattr(store, "initialize", None)
        if initialize is not None:
            await initialize()

    # --- Error Mapping ---
    @app.exception_handler(NoActiveSession)
    async def no_active_session_handler(request: Request, exc: NoActiveSession):
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"detail": "No active session. Sign in first."})

    @app.exception_handler(InsufficientBalance)
    async def insufficient_balance_handler(request: Request, exc: InsufficientBalance):
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content={"detail": f"Not enough gemstones: {exc.requested} needed, {exc.available} available."}
        )

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": "Profile store unavailable. Try again."})

    @app.exception_handler(PersistFailed)
    async def persist_failed_handler(request: Request, exc: PersistFailed):
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": "Gemstones not saved. Try again."})

    @app.exception_handler(PreconditionViolation)
    async def precondition_violation_handler(request: Request, exc: PreconditionViolation):
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)})

    # --- API Endpoints ---

    @app.get("/", summary="Root Endpoint", description="A simple welcome message for the API.")
    async def root():
        return {"message": "Welcome to AssetCraft Gemstones Backend!"}

    @app.post(
        "/session",
        response_model=schemas.SessionResponse,
        summary="Sign In",
        description="Loads (or creates) the user's gemstone account and applies the daily grant if due."
    )
    async def sign_in(
        request: schemas.SessionRequest,
        session_watcher: SessionWatcher = Depends(get_session_watcher),
        ledger: GemstoneLedger = Depends(get_ledger),
    ):
        logger.info(f"POST /session - User: '{request.user_id}'")
        result = await session_watcher.on_auth_state_change(request.user_id)
        return schemas.SessionResponse(
            account=schemas.AccountResponse.model_validate(result.account),
            daily_grant_applied=result.daily_grant.granted,
            pending_notification=ledger.pending_notification,
        )

    @app.delete("/session", status_code=status.HTTP_204_NO_CONTENT, summary="Sign Out")
    async def sign_out(session_watcher: SessionWatcher = Depends(get_session_watcher)):
        logger.info("DELETE /session")
        await session_watcher.on_auth_state_change(None)
        return None

    @app.get("/gemstones", response_model=schemas.BalanceResponse, summary="Current Balance")
    async def read_balance(ledger: GemstoneLedger = Depends(get_ledger)):
        return _balance_response(ledger)

    @app.post("/gemstones/earn", response_model=schemas.BalanceResponse, summary="Credit Gemstones")
    async def earn_gemstones(request: schemas.EarnRequest, ledger: GemstoneLedger = Depends(get_ledger)):
        logger.info(f"POST /gemstones/earn - Amount: {request.amount}, Source: {request.source.value}")
        new_balance = await ledger.earn(request.amount, request.source)
        return _balance_response(ledger, new_balance)

    @app.post("/gemstones/spend", response_model=schemas.BalanceResponse, summary="Debit Gemstones")
    async def spend_gemstones(request: schemas.SpendRequest, ledger: GemstoneLedger = Depends(get_ledger)):
        logger.info(f"POST /gemstones/spend - Amount: {request.amount}, Source: {request.source.value}")
        new_balance = await ledger.spend(request.amount, request.source)
        return _balance_response(ledger, new_balance)

    @app.post("/gemstones/daily-grant", response_model=schemas.DailyGrantResponse, summary="Apply Daily Grant")
    async def apply_daily_grant(ledger: GemstoneLedger = Depends(get_ledger)):
        result = await ledger.maybe_apply_daily_grant()
        return schemas.DailyGrantResponse(granted=result.granted, new_balance=result.new_balance)

    @app.get(
        "/gemstones/notification",
        response_model=Optional[schemas.GemstoneNotification],
        summary="Pending Notification",
        description="The last confirmed credit the UI has not displayed yet, or null."
    )
    async def read_notification(ledger: GemstoneLedger = Depends(get_ledger)):
        return ledger.pending_notification

    @app.delete("/gemstones/notification", status_code=status.HTTP_204_NO_CONTENT, summary="Clear Notification")
    async def clear_notification(ledger: GemstoneLedger = Depends(get_ledger)):
        ledger.clear_pending_notification()
        return None

    @app.post("/rewards/ad", response_model=schemas.BalanceResponse, summary="Rewarded Ad Completed")
    async def ad_reward(ledger: GemstoneLedger = Depends(get_ledger)):
        new_balance = await rewards.reward_ad_watch(ledger)
        return _balance_response(ledger, new_balance)

    @app.post("/rewards/purchase", response_model=schemas.PurchaseResponse, summary="Purchase Completed")
    async def purchase_reward(request: schemas.PurchaseRequest, ledger: GemstoneLedger = Depends(get_ledger)):
        logger.info(f"POST /rewards/purchase - Package: '{request.package_identifier}'")
        received, new_balance = await rewards.complete_purchase(
            ledger, request.package_identifier, title=request.title, price=request.price
        )
        balance = _balance_response(ledger, new_balance)
        return schemas.PurchaseResponse(**balance.model_dump(), gemstones_received=received)

    @app.post("/generation/charge", response_model=schemas.BalanceResponse, summary="Charge For Generation")
    async def charge_generation(
        request: Optional[schemas.GenerationChargeRequest] = None,
        ledger: GemstoneLedger = Depends(get_ledger),
    ):
        cost = request.cost if request is not None else None
        new_balance = await rewards.charge_for_generation(ledger, cost=cost)
        return _balance_response(ledger, new_balance)

    return app


app = create_app()
