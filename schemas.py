import datetime as dt
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from models import ScheduleFrequency, SpendCategory, normalize_wallet_name

MAX_WALLETS_PER_PERIOD = 10
MAX_SPENDING_LIMIT_CENTS = 100_000_000


class WalletIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    spending_limit_cents: int = Field(..., gt=0, le=MAX_SPENDING_LIMIT_CENTS)
    is_default: bool = False

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Wallet name is required")
        return value


class PeriodIn(BaseModel):
    name: str = Field(default="", max_length=120)
    goals: str = ""
    target_spend_cents: int = Field(default=0, ge=0)
    target_savings_cents: int = Field(default=0, ge=0)
    start_date: dt.date
    end_date: dt.date
    wallets: list[WalletIn] = Field(
        ..., min_length=1, max_length=MAX_WALLETS_PER_PERIOD
    )

    @model_validator(mode="after")
    def check_period(self) -> "PeriodIn":
        if self.end_date < self.start_date:
            raise ValueError("End date must not be before start date")
        keys = [normalize_wallet_name(w.name) for w in self.wallets]
        duplicates = sorted({k for k in keys if keys.count(k) > 1})
        if duplicates:
            raise ValueError(f"Duplicate wallet names found: {', '.join(duplicates)}")
        defaults = sum(1 for w in self.wallets if w.is_default)
        if defaults != 1:
            raise ValueError("Exactly one wallet must be marked as default")
        return self


class SpendIn(BaseModel):
    period_id: int
    wallet_id: Optional[int] = None
    date: dt.date
    amount_cents: int = Field(..., gt=0)
    category: SpendCategory = SpendCategory.need
    description: str = Field(..., min_length=3, max_length=100)
    notes: str = Field(default="", max_length=500)
    tags: list[str] = Field(default_factory=list)
    recurring: bool = False


class RecurringSpendIn(BaseModel):
    wallet_id: Optional[int] = None
    description: str = Field(..., min_length=1, max_length=100)
    amount_cents: int = Field(..., gt=0)
    category: SpendCategory = SpendCategory.need
    tags: list[str] = Field(default_factory=list)
    start_date: dt.date
    frequency: ScheduleFrequency = ScheduleFrequency.monthly
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    active: bool = True

    @model_validator(mode="after")
    def check_anchor(self) -> "RecurringSpendIn":
        if self.frequency in (ScheduleFrequency.weekly, ScheduleFrequency.fortnightly):
            if self.day_of_week is None or self.day_of_month is not None:
                raise ValueError(f"{self.frequency.value} rules need only day_of_week")
        elif self.frequency == ScheduleFrequency.monthly:
            if self.day_of_month is None or self.day_of_week is not None:
                raise ValueError("monthly rules need only day_of_month")
        elif self.day_of_week is not None or self.day_of_month is not None:
            raise ValueError("daily rules take no anchor")
        return self
