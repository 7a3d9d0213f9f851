import os
import logging
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

# Environment variable name -> Settings field
_ENV_FIELDS = {
    "STORE_BACKEND": "store_backend",
    "DATABASE_URL": "database_url",
    "INITIAL_GEMSTONES": "initial_gemstones",
    "DAILY_GRANT_AMOUNT": "daily_grant_amount",
    "DAILY_GRANT_INTERVAL_HOURS": "daily_grant_interval_hours",
    "AD_REWARD_AMOUNT": "ad_reward_amount",
    "GENERATION_COST": "generation_cost",
    "LOW_BALANCE_THRESHOLD": "low_balance_threshold",
    "STORE_TIMEOUT_SECONDS": "store_timeout_seconds",
    "LOG_LEVEL": "log_level",
}


class Settings(BaseModel):
    """
    Runtime configuration for the gemstone ledger service.

    Built once at startup and handed to the store, ledger and session watcher
    explicitly. The backend choice is static: there is no runtime fallback
    from the SQL store to the in-memory one.
    """
    store_backend: Literal["sql", "memory"] = Field("sql", description="Which ProfileStore implementation to use.")
    database_url: str = Field("sqlite:///./gemstones.db", description="SQLAlchemy URL for the SQL profile store.")
    initial_gemstones: int = Field(3, ge=0, description="Balance given to a brand new account.")
    daily_grant_amount: int = Field(5, gt=0, description="Gemstones credited by the daily grant.")
    daily_grant_interval_hours: int = Field(24, gt=0, description="Elapsed hours required between two daily grants.")
    ad_reward_amount: int = Field(3, gt=0, description="Gemstones credited for a completed rewarded ad.")
    generation_cost: int = Field(1, gt=0, description="Gemstones charged per AI generation.")
    low_balance_threshold: int = Field(3, ge=0, description="Balance at or below which the account is considered low.")
    store_timeout_seconds: float = Field(10.0, gt=0, description="Timeout applied to every ProfileStore call.")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field("INFO", description="Root logging level.")

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value):
        return value.upper() if isinstance(value, str) else value

    @classmethod
    def from_env(cls, dotenv_path: str | None = None) -> "Settings":
        """
        Loads settings from a .env file (if present) and the process environment.
        Unset variables keep their defaults; invalid values raise a ValidationError.
        """
        if dotenv_path is None:
            dotenv_path = os.path.join(os.path.dirname(__file__), '..', '.env')
        if os.path.exists(dotenv_path):
            load_dotenv(dotenv_path=dotenv_path)
        else:
            load_dotenv() # Fallback

        values = {}
        for env_name, field_name in _ENV_FIELDS.items():
            raw = os.getenv(env_name)
            if raw is not None and raw != "":
                values[field_name] = raw
        settings = cls.model_validate(values)
        logger.debug(f"Settings loaded: backend='{settings.store_backend}', initial={settings.initial_gemstones}")
        return settings
