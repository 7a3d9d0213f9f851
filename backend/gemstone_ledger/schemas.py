from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, NamedTuple
from datetime import datetime, timezone
from enum import Enum


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are treated as UTC; aware ones are converted to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Source(str, Enum):
    """Origin of a balance change."""
    DAILY_GRANT = "daily_grant"
    AD_REWARD = "ad_reward"
    PURCHASE = "purchase"
    GENERATION_SPEND = "generation_spend"


# --- Ledger domain models ---

class ProfileRecord(BaseModel):
    """
    The durable per-user record kept by a ProfileStore.
    """
    balance: int = Field(..., ge=0, description="Gemstone balance.")
    last_grant_at: Optional[datetime] = Field(None, description="UTC instant of the last daily grant, None if never granted.")

    model_config = ConfigDict(frozen=True)

    @field_validator("last_grant_at")
    @classmethod
    def _normalize_last_grant_at(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class GemstoneNotification(BaseModel):
    """
    Transient notice of a confirmed credit, waiting for the UI to display it.
    """
    amount: int = Field(..., gt=0)
    new_balance: int = Field(..., ge=0)
    source: Source

    model_config = ConfigDict(frozen=True)


class GemstoneAccount(BaseModel):
    """
    In-memory account for the signed-in user.

    Assignments are validated, so a negative balance can never be stored.
    """
    user_id: str = Field(..., min_length=1, frozen=True)
    balance: int = Field(..., ge=0)
    last_grant_at: Optional[datetime] = None
    pending_notification: Optional[GemstoneNotification] = None

    model_config = ConfigDict(validate_assignment=True)

    @field_validator("last_grant_at")
    @classmethod
    def _normalize_last_grant_at(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    def to_record(self) -> ProfileRecord:
        return ProfileRecord(balance=self.balance, last_grant_at=self.last_grant_at)


class DailyGrantResult(NamedTuple):
    granted: bool
    new_balance: Optional[int]


# --- Schemas for API Requests ---

class SessionRequest(BaseModel):
    user_id: str = Field(..., min_length=1, description="Identifier of the user who signed in.")


class EarnRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Gemstones to credit.")
    source: Source = Field(..., description="Where the gemstones come from.")


class SpendRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Gemstones to debit.")
    source: Source = Field(Source.GENERATION_SPEND, description="What the gemstones are spent on.")


class PurchaseRequest(BaseModel):
    package_identifier: str = Field(..., min_length=1, description="Store product identifier, e.g. 'gems_50'.")
    title: str = Field("", description="Store product title, used when the identifier carries no amount.")
    price: Optional[float] = Field(None, ge=0, description="Store price, used as a last resort.")


class GenerationChargeRequest(BaseModel):
    cost: Optional[int] = Field(None, gt=0, description="Override for the configured generation cost.")


# --- Schemas for API Responses ---

class AccountResponse(BaseModel):
    user_id: str
    balance: int
    last_grant_at: Optional[datetime] = None

    model_config = ConfigDict(
        from_attributes=True,
        json_encoders={
            datetime: lambda dt: dt.isoformat()
        }
    )


class SessionResponse(BaseModel):
    account: AccountResponse
    daily_grant_applied: bool
    pending_notification: Optional[GemstoneNotification] = None


class BalanceResponse(BaseModel):
    user_id: Optional[str]
    balance: int
    low_balance: bool


class DailyGrantResponse(BaseModel):
    granted: bool
    new_balance: Optional[int] = None


class PurchaseResponse(BalanceResponse):
    gemstones_received: int
