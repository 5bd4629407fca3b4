"""Environment configuration, read once at process start."""
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from typing import Mapping, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from commission_schedule import DEFAULT_SCHEDULE, build_schedule
from models import to_minor_units


@dataclass(frozen=True)
class CommissionConfig:
    """immutable knobs handed to the dispatcher at construction."""
    schedule: Mapping[int, int] = field(default_factory=lambda: DEFAULT_SCHEDULE)
    payout_threshold: int = 5000  # cents
    default_payout_provider: str = "stripe"


class Settings(BaseSettings):
    """settings loaded from AFFILIATE_* environment variables (or .env)."""

    # commission structure (8 levels), fixed major-unit amounts
    commission_level_1: Decimal = Field(default=Decimal("8.00"))
    commission_level_2: Decimal = Field(default=Decimal("4.00"))
    commission_level_3: Decimal = Field(default=Decimal("2.00"))
    commission_level_4: Decimal = Field(default=Decimal("1.00"))
    commission_level_5: Decimal = Field(default=Decimal("1.00"))
    commission_level_6: Decimal = Field(default=Decimal("1.00"))
    commission_level_7: Decimal = Field(default=Decimal("1.00"))
    commission_level_8: Decimal = Field(default=Decimal("1.00"))

    # payouts
    payout_threshold: Decimal = Field(default=Decimal("50.00"), description="Sweep threshold (major units)")
    default_payout_provider: str = Field(default="stripe", description="stripe or paypal")

    # webhooks
    webhook_secret: Optional[str] = Field(default=None, description="HMAC secret; verification is skipped when unset")

    # storage; in-memory ledger when unset
    database_dsn: Optional[str] = Field(default=None, description="Postgres DSN")

    app_name: str = Field(default="affiliate-commissions")
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="AFFILIATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator(
        "commission_level_1",
        "commission_level_2",
        "commission_level_3",
        "commission_level_4",
        "commission_level_5",
        "commission_level_6",
        "commission_level_7",
        "commission_level_8",
        "payout_threshold",
    )
    @classmethod
    def validate_non_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("amounts cannot be negative")
        return v

    @field_validator("default_payout_provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("stripe", "paypal"):
            raise ValueError(f"unsupported payout provider: {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"invalid log level: {v}")
        return v

    def commission_config(self) -> CommissionConfig:
        amounts = [
            to_minor_units(getattr(self, f"commission_level_{level}"))
            for level in range(1, 9)
        ]
        return CommissionConfig(
            schedule=build_schedule(amounts),
            payout_threshold=to_minor_units(self.payout_threshold),
            default_payout_provider=self.default_payout_provider,
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
