from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, joinedload, selectinload

from balances import BalanceAggregator
from config import get_settings
from errors import (
    BatchWriteFailed,
    PeriodNotFound,
    RuleNotFound,
    SpendNotFound,
    ValidationFailed,
    WalletNotFound,
)
from materializer import MaterializeResult, Materializer
from migration import MigrateResult, PeriodMigrator
from models import (
    Period,
    RecurringSpend,
    Spend,
    Tag,
    Wallet,
    normalize_wallet_name,
    spend_tags,
)
from recurrence import describe_schedule, expand
from schemas import PeriodIn, RecurringSpendIn, SpendIn, WalletIn


logger = logging.getLogger(__name__)

DEFAULT_WALLET_NAME = "General"


def get_current_account_id() -> int:
    return get_settings().default_account_id


def _get_period(session: Session, account_id: int, period_id: int) -> Period:
    period = session.get(Period, period_id)
    if not period or period.account_id != account_id:
        raise PeriodNotFound("Period not found")
    return period


def _ensure_open(session: Session, period_id: int) -> None:
    period = session.get(Period, period_id)
    if period is not None and period.is_closed:
        raise ValidationFailed("Closed periods cannot be changed")


def _default_wallet(session: Session, period_id: int) -> Optional[Wallet]:
    return session.scalar(
        select(Wallet).where(Wallet.period_id == period_id, Wallet.is_default.is_(True))
    )


class TagService:
    def __init__(self, session: Session, account_id: Optional[int] = None) -> None:
        self.session = session
        self.account_id = account_id or get_current_account_id()

    def list_all(self) -> list[Tag]:
        stmt = select(Tag).where(Tag.account_id == self.account_id).order_by(Tag.name)
        return self.session.scalars(stmt).all()

    def get_or_create(self, name: str) -> Tag:
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Tag name cannot be empty")

        stmt = select(Tag).where(
            Tag.account_id == self.account_id,
            func.lower(Tag.name) == clean_name.lower(),
        )
        existing = self.session.scalar(stmt)
        if existing:
            return existing

        tag = Tag(account_id=self.account_id, name=clean_name)
        self.session.add(tag)
        self.session.flush()
        return tag

    def get_or_create_many(self, names: list[str]) -> list[Tag]:
        tags: list[Tag] = []
        seen: set[int] = set()
        for name in names:
            if not name.strip():
                continue
            tag = self.get_or_create(name)
            if tag.id not in seen:
                tags.append(tag)
                seen.add(tag.id)
        return tags


class WalletService:
    def __init__(self, session: Session, account_id: Optional[int] = None) -> None:
        self.session = session
        self.account_id = account_id or get_current_account_id()

    def get(self, wallet_id: int) -> Wallet:
        wallet = self.session.get(Wallet, wallet_id)
        if not wallet or wallet.account_id != self.account_id:
            raise WalletNotFound("Wallet not found")
        return wallet

    def list_for_period(self, period_id: int) -> list[Wallet]:
        stmt = (
            select(Wallet)
            .where(Wallet.account_id == self.account_id, Wallet.period_id == period_id)
            .order_by(Wallet.is_default.desc(), Wallet.name)
        )
        return self.session.scalars(stmt).all()

    def _check_name_free(
        self, period_id: int, name: str, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Wallet.id).where(
            Wallet.period_id == period_id,
            Wallet.name_key == normalize_wallet_name(name),
        )
        if exclude_id is not None:
            stmt = stmt.where(Wallet.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ValidationFailed("Wallet names must be unique")

    def create(self, period_id: int, data: WalletIn) -> Wallet:
        period = _get_period(self.session, self.account_id, period_id)
        if period.is_closed:
            raise ValidationFailed("Cannot add wallets to a closed period")
        self._check_name_free(period_id, data.name)
        if data.is_default and _default_wallet(self.session, period_id):
            raise ValidationFailed("Only one wallet can be marked as default")
        wallet = Wallet(
            account_id=self.account_id,
            period_id=period_id,
            name=data.name,
            name_key=normalize_wallet_name(data.name),
            spending_limit_cents=data.spending_limit_cents,
            current_balance_cents=0,
            is_default=data.is_default,
        )
        self.session.add(wallet)
        self.session.commit()
        self.session.refresh(wallet)
        return wallet

    def update(self, wallet_id: int, data: WalletIn) -> Wallet:
        wallet = self.get(wallet_id)
        _ensure_open(self.session, wallet.period_id)
        self._check_name_free(wallet.period_id, data.name, exclude_id=wallet.id)
        if wallet.is_default and not data.is_default:
            raise ValidationFailed("Exactly one wallet must be marked as default")
        if data.is_default and not wallet.is_default:
            current = _default_wallet(self.session, wallet.period_id)
            if current is not None:
                current.is_default = False
                self.session.flush()
        if wallet.name != data.name:
            self.session.execute(
                update(RecurringSpend)
                .where(RecurringSpend.wallet_id == wallet.id)
                .values(wallet_name=data.name)
            )
        wallet.name = data.name
        wallet.name_key = normalize_wallet_name(data.name)
        wallet.spending_limit_cents = data.spending_limit_cents
        wallet.is_default = data.is_default
        self.session.commit()
        self.session.refresh(wallet)
        return wallet

    def delete(self, wallet_id: int) -> Optional[int]:
        """Delete a non-default wallet, moving its spends to the default wallet."""
        wallet = self.get(wallet_id)
        _ensure_open(self.session, wallet.period_id)
        if wallet.is_default:
            raise ValidationFailed("The default wallet cannot be deleted")
        default = _default_wallet(self.session, wallet.period_id)
        target_id = default.id if default else None
        self.session.execute(
            update(Spend)
            .where(Spend.wallet_id == wallet.id)
            .values(wallet_id=target_id)
        )
        self.session.execute(
            update(RecurringSpend)
            .where(RecurringSpend.wallet_id == wallet.id)
            .values(wallet_id=None)
        )
        period_id = wallet.period_id
        self.session.delete(wallet)
        self.session.flush()
        if target_id is not None:
            BalanceAggregator(self.session).recompute(target_id, period_id, commit=False)
        self.session.commit()
        return target_id

    def assign_orphaned_spends(
        self, period_id: int, spending_limit_cents: Optional[int] = None
    ) -> dict[str, object]:
        """Attach spends without a wallet to the period's default wallet.

        A "General" default wallet is created when the period has none yet.
        """
        period = _get_period(self.session, self.account_id, period_id)
        orphans = self.session.scalars(
            select(Spend).where(Spend.period_id == period_id, Spend.wallet_id.is_(None))
        ).all()
        if not orphans:
            return {"migrations_needed": 0, "wallet_created": False}

        default = _default_wallet(self.session, period_id)
        wallet_created = default is None
        if default is None:
            default = Wallet(
                account_id=self.account_id,
                period_id=period_id,
                name=DEFAULT_WALLET_NAME,
                name_key=normalize_wallet_name(DEFAULT_WALLET_NAME),
                spending_limit_cents=(
                    spending_limit_cents
                    if spending_limit_cents is not None
                    else period.target_spend_cents
                ),
                is_default=True,
            )
            self.session.add(default)
            self.session.flush()

        for spend in orphans:
            spend.wallet_id = default.id
        self.session.flush()
        BalanceAggregator(self.session).recompute(default.id, period_id, commit=False)
        self.session.commit()
        logger.info(
            f"assign_orphans: period_id={period_id} spends={len(orphans)} "
            f"wallet_id={default.id} wallet_created={wallet_created}"
        )
        return {
            "migrations_needed": len(orphans),
            "wallet_created": wallet_created,
            "default_wallet_id": default.id,
        }


class SpendService:
    def __init__(self, session: Session, account_id: Optional[int] = None) -> None:
        self.session = session
        self.account_id = account_id or get_current_account_id()
        self.balances = BalanceAggregator(session)

    def _resolve_wallet_id(self, period_id: int, wallet_id: Optional[int]) -> Optional[int]:
        if wallet_id is None:
            default = _default_wallet(self.session, period_id)
            return default.id if default else None
        wallet = self.session.get(Wallet, wallet_id)
        if not wallet or wallet.period_id != period_id:
            raise WalletNotFound("Wallet not found in this period")
        return wallet.id

    def _refresh(self, pairs: set[tuple[Optional[int], int]]) -> None:
        for wallet_id, period_id in sorted(pairs, key=lambda p: (p[1], p[0] or 0)):
            if wallet_id is not None:
                self.balances.recompute(wallet_id, period_id, commit=False)

    def get(self, spend_id: int, *, include_deleted: bool = False) -> Spend:
        stmt = (
            select(Spend)
            .options(selectinload(Spend.tags))
            .where(Spend.account_id == self.account_id, Spend.id == spend_id)
        )
        if not include_deleted:
            stmt = stmt.where(Spend.deleted_at.is_(None))
        spend = self.session.scalar(stmt)
        if not spend:
            raise SpendNotFound("Spend not found")
        return spend

    def create(self, data: SpendIn) -> Spend:
        period = _get_period(self.session, self.account_id, data.period_id)
        if period.is_closed:
            raise ValidationFailed("Cannot add spends to a closed period")
        spend = Spend(
            account_id=self.account_id,
            period_id=period.id,
            wallet_id=self._resolve_wallet_id(period.id, data.wallet_id),
            date=data.date,
            amount_cents=data.amount_cents,
            category=data.category,
            description=data.description,
            notes=data.notes,
            recurring=data.recurring,
        )
        spend.tags = TagService(self.session, self.account_id).get_or_create_many(
            data.tags
        )
        self.session.add(spend)
        self.session.flush()
        self._refresh({(spend.wallet_id, spend.period_id)})
        self.session.commit()
        self.session.refresh(spend)
        return spend

    def update(self, spend_id: int, data: SpendIn) -> Spend:
        spend = self.get(spend_id)
        _ensure_open(self.session, spend.period_id)
        period = _get_period(self.session, self.account_id, data.period_id)
        if period.is_closed:
            raise ValidationFailed("Cannot move spends into a closed period")
        touched = {(spend.wallet_id, spend.period_id)}

        spend.period_id = period.id
        spend.wallet_id = self._resolve_wallet_id(period.id, data.wallet_id)
        spend.date = data.date
        spend.amount_cents = data.amount_cents
        spend.category = data.category
        spend.description = data.description
        spend.notes = data.notes
        spend.recurring = data.recurring
        spend.tags = TagService(self.session, self.account_id).get_or_create_many(
            data.tags
        )
        self.session.flush()
        touched.add((spend.wallet_id, spend.period_id))
        self._refresh(touched)
        self.session.commit()
        self.session.refresh(spend)
        return spend

    def soft_delete(self, spend_id: int) -> None:
        spend = self.session.get(Spend, spend_id)
        if not spend or spend.account_id != self.account_id:
            raise SpendNotFound("Spend not found")
        _ensure_open(self.session, spend.period_id)
        if spend.deleted_at is not None:
            return
        spend.deleted_at = datetime.utcnow()
        self.session.flush()
        self._refresh({(spend.wallet_id, spend.period_id)})
        self.session.commit()

    def restore(self, spend_id: int) -> None:
        spend = self.session.get(Spend, spend_id)
        if not spend or spend.account_id != self.account_id:
            raise SpendNotFound("Spend not found")
        _ensure_open(self.session, spend.period_id)
        if spend.deleted_at is None:
            return
        spend.deleted_at = None
        self.session.flush()
        self._refresh({(spend.wallet_id, spend.period_id)})
        self.session.commit()

    def list_for_period(
        self, period_id: int, wallet_id: Optional[int] = None
    ) -> list[Spend]:
        stmt = (
            select(Spend)
            .options(joinedload(Spend.wallet), selectinload(Spend.tags))
            .where(
                Spend.account_id == self.account_id,
                Spend.period_id == period_id,
                Spend.deleted_at.is_(None),
            )
            .order_by(Spend.date.desc(), Spend.id.desc())
        )
        if wallet_id is not None:
            stmt = stmt.where(Spend.wallet_id == wallet_id)
        return self.session.scalars(stmt).all()

    def totals_for_period(self, period_id: int) -> dict[str, object]:
        rows = self.session.execute(
            select(Spend.category, func.sum(Spend.amount_cents))
            .where(
                Spend.account_id == self.account_id,
                Spend.period_id == period_id,
                Spend.deleted_at.is_(None),
            )
            .group_by(Spend.category)
        ).all()
        categories = {category.value: int(total or 0) for category, total in rows}
        return {"total": sum(categories.values()), "categories": categories}


class RecurringSpendService:
    def __init__(self, session: Session, account_id: Optional[int] = None) -> None:
        self.session = session
        self.account_id = account_id or get_current_account_id()

    def get(self, rule_id: int) -> RecurringSpend:
        rule = self.session.get(RecurringSpend, rule_id)
        if not rule or rule.account_id != self.account_id:
            raise RuleNotFound("Recurring spend not found")
        return rule

    def list(self, *, active_only: bool = False) -> list[RecurringSpend]:
        stmt = (
            select(RecurringSpend)
            .where(RecurringSpend.account_id == self.account_id)
            .order_by(RecurringSpend.description, RecurringSpend.id)
        )
        if active_only:
            stmt = stmt.where(RecurringSpend.active.is_(True))
        return self.session.scalars(stmt).all()

    def _wallet_snapshot(self, wallet_id: Optional[int]) -> Optional[str]:
        if wallet_id is None:
            return None
        wallet = self.session.get(Wallet, wallet_id)
        if not wallet or wallet.account_id != self.account_id:
            raise WalletNotFound("Wallet not found")
        return wallet.name

    def _apply(self, rule: RecurringSpend, data: RecurringSpendIn) -> None:
        rule.wallet_id = data.wallet_id
        rule.wallet_name = self._wallet_snapshot(data.wallet_id)
        rule.description = data.description
        rule.amount_cents = data.amount_cents
        rule.category = data.category
        rule.tags = [name.strip() for name in data.tags if name.strip()]
        rule.start_date = data.start_date
        rule.frequency = data.frequency
        rule.day_of_week = data.day_of_week
        rule.day_of_month = data.day_of_month
        rule.active = data.active

    def create(self, data: RecurringSpendIn) -> RecurringSpend:
        rule = RecurringSpend(account_id=self.account_id)
        self._apply(rule, data)
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def update(self, rule_id: int, data: RecurringSpendIn) -> RecurringSpend:
        rule = self.get(rule_id)
        self._apply(rule, data)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def set_active(self, rule_id: int, active: bool) -> None:
        rule = self.get(rule_id)
        rule.active = active
        self.session.commit()

    def delete(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        self.session.execute(
            update(Spend)
            .where(Spend.origin_rule_id == rule.id)
            .values(origin_rule_id=None)
        )
        self.session.delete(rule)
        self.session.commit()

    def preview(self, rule_id: int, start: date, end: date) -> dict[str, object]:
        rule = self.get(rule_id)
        return {
            "schedule": describe_schedule(rule),
            "occurrences": expand(rule, start, end),
        }

    def generate_for_period(self, period_id: int) -> MaterializeResult:
        period = _get_period(self.session, self.account_id, period_id)
        return Materializer(self.session).materialize(
            period, self.list(active_only=True)
        )


@dataclass
class PeriodStartResult:
    period: Period
    closed_period_id: Optional[int] = None
    generated_count: int = 0
    copied_count: int = 0
    materialization: Optional[MaterializeResult] = None
    migration: Optional[MigrateResult] = None
    errors: list[Exception] = field(default_factory=list)


class PeriodService:
    def __init__(self, session: Session, account_id: Optional[int] = None) -> None:
        self.session = session
        self.account_id = account_id or get_current_account_id()

    def get(self, period_id: int) -> Period:
        return _get_period(self.session, self.account_id, period_id)

    def current(self) -> Optional[Period]:
        return self.session.scalar(
            select(Period).where(
                Period.account_id == self.account_id, Period.closed_at.is_(None)
            )
        )

    def list_all(self) -> list[Period]:
        stmt = (
            select(Period)
            .where(Period.account_id == self.account_id)
            .order_by(Period.start_date.desc(), Period.id.desc())
        )
        return self.session.scalars(stmt).all()

    def close_period(self, period_id: int) -> Period:
        period = self.get(period_id)
        if period.closed_at is None:
            period.closed_at = datetime.utcnow()
            self.session.commit()
            logger.info(f"period_closed: period_id={period.id}")
        return period

    def update_reflection(self, period_id: int, reflection: str) -> Period:
        period = self.get(period_id)
        period.reflection = reflection
        self.session.commit()
        return period

    def start_period(self, data: PeriodIn) -> PeriodStartResult:
        """Close the open period, open a new one and fill it.

        Wallets are created before the engine runs. Failures while copying or
        materializing recurring spends do not undo the new period; they are
        returned in ``errors`` for the caller to surface and retry.
        """
        previous = self.current()
        if previous is not None:
            previous.closed_at = datetime.utcnow()
            self.session.flush()

        period = Period(
            account_id=self.account_id,
            name=data.name,
            goals=data.goals,
            target_spend_cents=data.target_spend_cents,
            target_savings_cents=data.target_savings_cents,
            start_date=data.start_date,
            end_date=data.end_date,
            reflection="",
        )
        self.session.add(period)
        self.session.flush()
        for wallet_data in data.wallets:
            self.session.add(
                Wallet(
                    account_id=self.account_id,
                    period_id=period.id,
                    name=wallet_data.name,
                    name_key=normalize_wallet_name(wallet_data.name),
                    spending_limit_cents=wallet_data.spending_limit_cents,
                    current_balance_cents=0,
                    is_default=wallet_data.is_default,
                )
            )
        self.session.commit()
        self.session.refresh(period)

        result = PeriodStartResult(
            period=period, closed_period_id=previous.id if previous else None
        )
        logger.info(
            f"period_started: period_id={period.id} "
            f"previous_period_id={result.closed_period_id} wallets={len(data.wallets)}"
        )

        if previous is not None:
            try:
                result.migration = PeriodMigrator(self.session).migrate(previous, period)
                result.copied_count = result.migration.copied_count
            except (BatchWriteFailed, ValidationFailed) as exc:
                logger.exception(
                    f"period_start_migrate_failed: period_id={period.id} "
                    f"source_period_id={previous.id}"
                )
                result.errors.append(exc)

        rules = RecurringSpendService(self.session, self.account_id).list(
            active_only=True
        )
        try:
            result.materialization = Materializer(self.session).materialize(
                period, rules
            )
            result.generated_count = result.materialization.generated_count
        except (BatchWriteFailed, ValidationFailed) as exc:
            logger.exception(f"period_start_materialize_failed: period_id={period.id}")
            result.errors.append(exc)

        return result

    def copy_recurring(self, from_period_id: int, to_period_id: int) -> MigrateResult:
        source = self.get(from_period_id)
        destination = self.get(to_period_id)
        return PeriodMigrator(self.session).migrate(source, destination)

    def delete_period(self, period_id: int) -> int:
        """Delete a closed period with its wallets and spends.

        Returns the number of spends removed.
        """
        period = self.get(period_id)
        if not period.is_closed:
            raise ValidationFailed("Only closed periods can be deleted")

        spend_ids = self.session.scalars(
            select(Spend.id).where(Spend.period_id == period.id)
        ).all()
        wallet_ids = self.session.scalars(
            select(Wallet.id).where(Wallet.period_id == period.id)
        ).all()
        if spend_ids:
            self.session.execute(
                update(Spend)
                .where(Spend.copied_from_id.in_(spend_ids))
                .values(copied_from_id=None)
            )
            self.session.execute(
                delete(spend_tags).where(spend_tags.c.spend_id.in_(spend_ids))
            )
            self.session.execute(delete(Spend).where(Spend.id.in_(spend_ids)))
        if wallet_ids:
            # Rules keep their wallet_name snapshot and remap by name later.
            self.session.execute(
                update(RecurringSpend)
                .where(RecurringSpend.wallet_id.in_(wallet_ids))
                .values(wallet_id=None)
            )
            self.session.execute(delete(Wallet).where(Wallet.id.in_(wallet_ids)))
        self.session.execute(delete(Period).where(Period.id == period.id))
        self.session.commit()
        logger.info(
            f"period_deleted: period_id={period_id} spends={len(spend_ids)} "
            f"wallets={len(wallet_ids)}"
        )
        return len(spend_ids)
