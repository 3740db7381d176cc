from datetime import date

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import BatchWriteFailed, PeriodNotFound, ValidationFailed
from models import ScheduleFrequency, Spend, SpendCategory, Wallet
from schemas import PeriodIn, RecurringSpendIn, SpendIn, WalletIn
import services
from services import (
    PeriodService,
    RecurringSpendService,
    SpendService,
    TagService,
    WalletService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _period_in(start: date, end: date, **overrides) -> PeriodIn:
    values = dict(
        name="January",
        target_spend_cents=150_000,
        start_date=start,
        end_date=end,
        wallets=[
            WalletIn(name="General", spending_limit_cents=100_000, is_default=True),
            WalletIn(name="Fun", spending_limit_cents=50_000),
        ],
    )
    values.update(overrides)
    return PeriodIn(**values)


def _wallet_id(session, period_id: int, name: str) -> int:
    return session.scalar(
        select(Wallet.id).where(Wallet.period_id == period_id, Wallet.name == name)
    )


def _spend_in(period_id: int, **overrides) -> SpendIn:
    values = dict(
        period_id=period_id,
        date=date(2025, 1, 10),
        amount_cents=2500,
        category=SpendCategory.want,
        description="Concert",
    )
    values.update(overrides)
    return SpendIn(**values)


def test_start_period_materializes_rules_into_new_period():
    session = make_session()
    RecurringSpendService(session).create(
        RecurringSpendIn(
            description="Gym",
            amount_cents=4500,
            start_date=date(2025, 1, 1),
            frequency=ScheduleFrequency.monthly,
            day_of_month=5,
            tags=["Health"],
        )
    )

    result = PeriodService(session).start_period(
        _period_in(date(2025, 1, 1), date(2025, 1, 31))
    )

    assert result.errors == []
    assert result.closed_period_id is None
    assert result.generated_count == 1
    assert result.copied_count == 0
    general_id = _wallet_id(session, result.period.id, "General")
    assert session.get(Wallet, general_id).current_balance_cents == 4500


def test_start_period_closes_previous_and_copies_recurring_spends():
    session = make_session()
    periods = PeriodService(session)
    first = periods.start_period(_period_in(date(2025, 1, 1), date(2025, 1, 31))).period
    fun_id = _wallet_id(session, first.id, "Fun")
    SpendService(session).create(
        _spend_in(first.id, wallet_id=fun_id, date=date(2025, 1, 4), recurring=True)
    )

    result = periods.start_period(
        _period_in(date(2025, 2, 1), date(2025, 2, 28), name="February")
    )

    assert result.closed_period_id == first.id
    assert periods.get(first.id).is_closed
    assert periods.current().id == result.period.id
    assert result.copied_count == 1
    copy = session.scalar(select(Spend).where(Spend.period_id == result.period.id))
    assert copy.date == date(2025, 2, 4)
    assert copy.wallet_id == _wallet_id(session, result.period.id, "Fun")


def test_period_input_requires_exactly_one_default_wallet():
    with pytest.raises(ValidationError):
        _period_in(
            date(2025, 1, 1),
            date(2025, 1, 31),
            wallets=[WalletIn(name="General", spending_limit_cents=1000)],
        )
    with pytest.raises(ValidationError):
        _period_in(
            date(2025, 1, 1),
            date(2025, 1, 31),
            wallets=[
                WalletIn(name="General", spending_limit_cents=1000, is_default=True),
                WalletIn(name=" general ", spending_limit_cents=1000),
            ],
        )


def test_delete_and_restore_recompute_wallet_balance():
    session = make_session()
    period = PeriodService(session).start_period(
        _period_in(date(2025, 1, 1), date(2025, 1, 31))
    ).period
    spends = SpendService(session)
    kept = spends.create(_spend_in(period.id, amount_cents=1000))
    removed = spends.create(_spend_in(period.id, amount_cents=3000))
    general = session.get(Wallet, _wallet_id(session, period.id, "General"))
    assert kept.wallet_id == general.id
    assert general.current_balance_cents == 4000

    spends.soft_delete(removed.id)
    assert general.current_balance_cents == 1000

    spends.restore(removed.id)
    assert general.current_balance_cents == 4000


def test_update_moves_balance_between_wallets():
    session = make_session()
    period = PeriodService(session).start_period(
        _period_in(date(2025, 1, 1), date(2025, 1, 31))
    ).period
    spends = SpendService(session)
    spend = spends.create(_spend_in(period.id, amount_cents=1800))
    fun_id = _wallet_id(session, period.id, "Fun")

    spends.update(spend.id, _spend_in(period.id, amount_cents=1800, wallet_id=fun_id))

    assert session.get(Wallet, fun_id).current_balance_cents == 1800
    general_id = _wallet_id(session, period.id, "General")
    assert session.get(Wallet, general_id).current_balance_cents == 0


def test_totals_for_period_group_by_category():
    session = make_session()
    period = PeriodService(session).start_period(
        _period_in(date(2025, 1, 1), date(2025, 1, 31))
    ).period
    spends = SpendService(session)
    spends.create(_spend_in(period.id, amount_cents=1000))
    spends.create(_spend_in(period.id, amount_cents=500, category=SpendCategory.need))
    deleted = spends.create(_spend_in(period.id, amount_cents=9999))
    spends.soft_delete(deleted.id)

    totals = spends.totals_for_period(period.id)

    assert totals == {"total": 1500, "categories": {"want": 1000, "need": 500}}
    assert len(spends.list_for_period(period.id)) == 2


def test_orphaned_spends_get_a_general_wallet():
    session = make_session()
    period = PeriodService(session).start_period(
        _period_in(
            date(2025, 1, 1),
            date(2025, 1, 31),
            wallets=[WalletIn(name="Main", spending_limit_cents=1000, is_default=True)],
        )
    ).period
    main_id = _wallet_id(session, period.id, "Main")
    session.add(
        Spend(
            period_id=period.id,
            date=date(2025, 1, 2),
            amount_cents=700,
            description="Legacy",
        )
    )
    session.commit()

    summary = WalletService(session).assign_orphaned_spends(period.id)

    assert summary == {
        "migrations_needed": 1,
        "wallet_created": False,
        "default_wallet_id": main_id,
    }
    assert session.get(Wallet, main_id).current_balance_cents == 700
    assert WalletService(session).assign_orphaned_spends(period.id) == {
        "migrations_needed": 0,
        "wallet_created": False,
    }


def test_wallet_service_rejects_duplicate_names_and_second_default():
    session = make_session()
    period = PeriodService(session).start_period(
        _period_in(date(2025, 1, 1), date(2025, 1, 31))
    ).period
    wallets = WalletService(session)

    with pytest.raises(ValidationFailed):
        wallets.create(period.id, WalletIn(name="FUN", spending_limit_cents=100))
    with pytest.raises(ValidationFailed):
        wallets.create(
            period.id, WalletIn(name="Other", spending_limit_cents=100, is_default=True)
        )


def test_deleting_wallet_moves_spends_to_default():
    session = make_session()
    period = PeriodService(session).start_period(
        _period_in(date(2025, 1, 1), date(2025, 1, 31))
    ).period
    fun_id = _wallet_id(session, period.id, "Fun")
    SpendService(session).create(_spend_in(period.id, wallet_id=fun_id, amount_cents=600))

    general_id = WalletService(session).delete(fun_id)

    assert session.get(Wallet, general_id).current_balance_cents == 600


def test_delete_period_requires_closed_and_removes_entries():
    session = make_session()
    periods = PeriodService(session)
    first = periods.start_period(_period_in(date(2025, 1, 1), date(2025, 1, 31))).period
    SpendService(session).create(_spend_in(first.id, tags=["Night out"]))

    with pytest.raises(ValidationFailed):
        periods.delete_period(first.id)

    periods.close_period(first.id)
    assert periods.delete_period(first.id) == 1
    assert session.scalar(select(func.count(Spend.id))) == 0
    assert [tag.name for tag in TagService(session).list_all()] == ["Night out"]
    with pytest.raises(PeriodNotFound):
        periods.get(first.id)


def test_recurring_preview_describes_schedule():
    session = make_session()
    rules = RecurringSpendService(session)
    rule = rules.create(
        RecurringSpendIn(
            description="Cleaner",
            amount_cents=3000,
            start_date=date(2026, 1, 1),
            frequency=ScheduleFrequency.fortnightly,
            day_of_week=1,
        )
    )

    preview = rules.preview(rule.id, date(2026, 1, 1), date(2026, 1, 31))

    assert preview["schedule"] == "Every 2 weeks on Monday"
    assert preview["occurrences"] == [date(2026, 1, 5), date(2026, 1, 19)]

    rules.set_active(rule.id, False)
    assert rules.list(active_only=True) == []


def test_recurring_input_checks_anchor():
    with pytest.raises(ValidationError):
        RecurringSpendIn(
            description="Rent",
            amount_cents=1000,
            start_date=date(2025, 1, 1),
            frequency=ScheduleFrequency.monthly,
            day_of_week=1,
        )


def test_closed_period_spends_are_read_only():
    session = make_session()
    periods = PeriodService(session)
    period = periods.start_period(_period_in(date(2025, 1, 1), date(2025, 1, 31))).period
    spend = SpendService(session).create(_spend_in(period.id))
    periods.close_period(period.id)

    with pytest.raises(ValidationFailed):
        SpendService(session).soft_delete(spend.id)
    with pytest.raises(ValidationFailed):
        SpendService(session).create(_spend_in(period.id))

    periods.update_reflection(period.id, "Too many concerts")
    assert periods.get(period.id).reflection == "Too many concerts"


def test_renamed_wallet_is_still_matched_in_next_period():
    session = make_session()
    periods = PeriodService(session)
    first = periods.start_period(_period_in(date(2025, 1, 1), date(2025, 1, 31))).period
    fun_id = _wallet_id(session, first.id, "Fun")
    rule = RecurringSpendService(session).create(
        RecurringSpendIn(
            wallet_id=fun_id,
            description="Streaming",
            amount_cents=1299,
            start_date=date(2025, 2, 1),
            frequency=ScheduleFrequency.monthly,
            day_of_month=5,
        )
    )
    WalletService(session).update(
        fun_id, WalletIn(name="Entertainment", spending_limit_cents=50_000)
    )
    assert RecurringSpendService(session).get(rule.id).wallet_name == "Entertainment"

    result = periods.start_period(
        _period_in(
            date(2025, 2, 1),
            date(2025, 2, 28),
            wallets=[
                WalletIn(name="General", spending_limit_cents=100_000, is_default=True),
                WalletIn(name="Entertainment", spending_limit_cents=50_000),
            ],
        )
    )

    assert result.generated_count == 1
    spend = session.scalar(select(Spend).where(Spend.period_id == result.period.id))
    assert spend.wallet_id == _wallet_id(session, result.period.id, "Entertainment")


def test_engine_failures_do_not_undo_new_period(monkeypatch):
    session = make_session()
    periods = PeriodService(session)
    first = periods.start_period(_period_in(date(2025, 1, 1), date(2025, 1, 31))).period

    def fail(*_args, **_kwargs):
        raise BatchWriteFailed("storage unavailable")

    monkeypatch.setattr(services.PeriodMigrator, "migrate", fail)
    monkeypatch.setattr(services.Materializer, "materialize", fail)

    result = periods.start_period(_period_in(date(2025, 2, 1), date(2025, 2, 28)))

    assert [type(error) for error in result.errors] == [BatchWriteFailed, BatchWriteFailed]
    assert result.generated_count == 0
    assert result.copied_count == 0
    assert periods.current().id == result.period.id
    assert periods.get(first.id).is_closed
    assert len(WalletService(session).list_for_period(result.period.id)) == 2
