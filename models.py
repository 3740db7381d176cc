import datetime as dt
import json
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class ScheduleFrequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    fortnightly = "fortnightly"
    monthly = "monthly"


class SpendCategory(str, Enum):
    need = "need"
    want = "want"
    culture = "culture"
    unexpected = "unexpected"


def normalize_wallet_name(name: str) -> str:
    return (name or "").strip().lower()


class TimestampMixin:
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=dt.datetime.utcnow, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow, nullable=False
    )


class Period(Base, TimestampMixin):
    __tablename__ = "periods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    goals: Mapped[str] = mapped_column(Text, nullable=False, default="")
    target_spend_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    target_savings_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    start_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    end_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    closed_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)
    reflection: Mapped[str] = mapped_column(Text, nullable=False, default="")

    wallets: Mapped[list["Wallet"]] = relationship(
        "Wallet", back_populates="period", order_by="Wallet.id"
    )

    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="ck_period_window"),
        CheckConstraint("target_spend_cents >= 0", name="ck_period_target_spend"),
        Index(
            "uq_period_one_open_per_account",
            "account_id",
            unique=True,
            sqlite_where=text("closed_at IS NULL"),
            postgresql_where=text("closed_at IS NULL"),
        ),
        Index("ix_periods_account_start", "account_id", "start_date"),
    )

    @property
    def is_closed(self) -> bool:
        return self.closed_at is not None


class Wallet(Base, TimestampMixin):
    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    period_id: Mapped[int] = mapped_column(ForeignKey("periods.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    name_key: Mapped[str] = mapped_column(String(50), nullable=False)
    spending_limit_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    period: Mapped["Period"] = relationship("Period", back_populates="wallets")

    __table_args__ = (
        UniqueConstraint("period_id", "name_key", name="uq_wallet_period_name"),
        Index(
            "uq_wallet_one_default_per_period",
            "period_id",
            unique=True,
            sqlite_where=text("is_default = 1"),
            postgresql_where=text("is_default"),
        ),
        CheckConstraint("spending_limit_cents >= 0", name="ck_wallet_limit_positive"),
    )

    @property
    def available_cents(self) -> int:
        return max(0, self.spending_limit_cents - self.current_balance_cents)

    @property
    def is_over_limit(self) -> bool:
        return self.current_balance_cents > self.spending_limit_cents

    @property
    def usage_percentage(self) -> float:
        if self.spending_limit_cents == 0:
            return 0.0
        return min(100.0, self.current_balance_cents / self.spending_limit_cents * 100)


class Tag(Base, TimestampMixin):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("account_id", "name", name="uq_tag_account_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(50), nullable=False)

    spends: Mapped[list["Spend"]] = relationship(
        "Spend", secondary="spend_tags", back_populates="tags"
    )


spend_tags = Table(
    "spend_tags",
    Base.metadata,
    Column("spend_id", Integer, ForeignKey("spends.id"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


class RecurringSpend(Base, TimestampMixin):
    __tablename__ = "recurring_spends"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # The wallet may belong to an older period; wallet_name is the snapshot
    # used to remap it by name.
    wallet_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("wallets.id", ondelete="SET NULL")
    )
    wallet_name: Mapped[Optional[str]] = mapped_column(String(50))
    description: Mapped[str] = mapped_column(String(100), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[SpendCategory] = mapped_column(
        SAEnum(SpendCategory), nullable=False, default=SpendCategory.need
    )
    tags_json: Mapped[Optional[str]] = mapped_column(Text)
    start_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    frequency: Mapped[ScheduleFrequency] = mapped_column(
        SAEnum(ScheduleFrequency), nullable=False
    )
    day_of_week: Mapped[Optional[int]] = mapped_column(Integer)
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    spends: Mapped[list["Spend"]] = relationship(
        "Spend", back_populates="origin_rule"
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_recurring_amount_positive"),
        Index("ix_recurring_account_active", "account_id", "active"),
    )

    @property
    def tags(self) -> list[str]:
        if not self.tags_json:
            return []
        return list(json.loads(self.tags_json))

    @tags.setter
    def tags(self, names: list[str]) -> None:
        self.tags_json = json.dumps(list(names)) if names else None


class Spend(Base, TimestampMixin):
    __tablename__ = "spends"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    period_id: Mapped[int] = mapped_column(ForeignKey("periods.id"), nullable=False)
    wallet_id: Mapped[Optional[int]] = mapped_column(ForeignKey("wallets.id"))
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[SpendCategory] = mapped_column(
        SAEnum(SpendCategory), nullable=False, default=SpendCategory.need
    )
    description: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    origin_rule_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_spends.id", ondelete="SET NULL")
    )
    occurrence_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    copied_from_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("spends.id", ondelete="SET NULL")
    )
    deleted_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)

    wallet: Mapped[Optional["Wallet"]] = relationship("Wallet")
    origin_rule: Mapped[Optional["RecurringSpend"]] = relationship(
        "RecurringSpend", back_populates="spends"
    )
    tags: Mapped[list["Tag"]] = relationship(
        "Tag", secondary="spend_tags", back_populates="spends"
    )

    __table_args__ = (
        UniqueConstraint(
            "period_id",
            "origin_rule_id",
            "occurrence_date",
            name="uq_spend_rule_occurrence",
        ),
        UniqueConstraint("period_id", "copied_from_id", name="uq_spend_copied_from"),
        Index("ix_spends_period_wallet", "period_id", "wallet_id"),
        Index("ix_spends_account_date", "account_id", "date"),
        CheckConstraint("amount_cents > 0", name="ck_spends_amount_positive"),
    )
