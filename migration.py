import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from errors import ValidationFailed, WalletResolutionFailed
from ledger import SkippedEntry, refresh_balances, write_batch
from models import Period, Spend, Wallet
from periods import translate_date, window_of
from wallets import WalletReference, load_directory, resolve


logger = logging.getLogger(__name__)


@dataclass
class MigrateResult:
    source_period_id: int
    destination_period_id: int
    copied_count: int = 0
    skipped: list[SkippedEntry] = field(default_factory=list)
    balances: dict[int, int] = field(default_factory=dict)
    stale_wallet_ids: list[int] = field(default_factory=list)


class PeriodMigrator:
    """Copies recurring-flagged spends from one period into the next.

    A copy keeps its day offset from the period start rather than its
    calendar date, and lands in the destination wallet with the same name as
    its source wallet (or the destination's default wallet).
    """

    def __init__(
        self,
        session: Session,
        *,
        attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session
        self.attempts = attempts
        self.base_delay = base_delay
        self.sleep = sleep

    def migrate(self, source: Period, destination: Period) -> MigrateResult:
        if source.id == destination.id:
            raise ValidationFailed("Source and destination periods must differ")
        if source.account_id != destination.account_id:
            raise ValidationFailed("Periods belong to different accounts")
        if destination.is_closed:
            raise ValidationFailed("Cannot migrate into a closed period")
        source_window = window_of(source)
        destination_window = window_of(destination)

        result = MigrateResult(
            source_period_id=source.id, destination_period_id=destination.id
        )
        entries = self.session.scalars(
            select(Spend)
            .options(selectinload(Spend.tags))
            .where(
                Spend.period_id == source.id,
                Spend.recurring.is_(True),
                Spend.deleted_at.is_(None),
            )
            .order_by(Spend.date, Spend.id)
        ).all()
        if not entries:
            logger.info(
                f"migrate: source_period_id={source.id} "
                f"destination_period_id={destination.id} copied=0"
            )
            return result

        source_names = {
            wallet.id: wallet.name
            for wallet in self.session.scalars(
                select(Wallet).where(Wallet.period_id == source.id)
            ).all()
        }
        directory = load_directory(
            self.session,
            destination.id,
            attempts=self.attempts,
            base_delay=self.base_delay,
            sleep=self.sleep,
        )
        already_copied = set(
            self.session.scalars(
                select(Spend.copied_from_id).where(
                    Spend.period_id == destination.id,
                    Spend.copied_from_id.isnot(None),
                )
            ).all()
        )

        materialized = {
            (row[0], row[1])
            for row in self.session.execute(
                select(Spend.origin_rule_id, Spend.occurrence_date).where(
                    Spend.period_id == destination.id,
                    Spend.origin_rule_id.isnot(None),
                )
            ).all()
        }

        copies: list[Spend] = []
        for entry in entries:
            if entry.id in already_copied:
                continue
            new_date = translate_date(entry.date, source_window, destination_window)
            rule_key = (entry.origin_rule_id, new_date)
            if entry.origin_rule_id is not None and rule_key in materialized:
                continue
            if not destination_window.contains(new_date):
                result.skipped.append(
                    SkippedEntry(
                        "ValidationFailed",
                        f"spend:{entry.id}",
                        f"{new_date.isoformat()} falls outside the destination period",
                    )
                )
                continue

            reference = WalletReference(
                wallet_id=entry.wallet_id, name=source_names.get(entry.wallet_id)
            )
            try:
                wallet_id = resolve(reference, directory)
            except WalletResolutionFailed as exc:
                result.skipped.append(
                    SkippedEntry("WalletResolutionFailed", f"spend:{entry.id}", str(exc))
                )
                logger.warning(
                    f"migrate_unresolved_wallet: spend_id={entry.id} "
                    f"destination_period_id={destination.id}"
                )
                continue

            copies.append(
                Spend(
                    account_id=entry.account_id,
                    period_id=destination.id,
                    wallet_id=wallet_id,
                    date=new_date,
                    amount_cents=entry.amount_cents,
                    category=entry.category,
                    description=entry.description,
                    notes=entry.notes,
                    recurring=entry.recurring,
                    origin_rule_id=entry.origin_rule_id,
                    occurrence_date=new_date if entry.origin_rule_id else None,
                    copied_from_id=entry.id,
                    tags=list(entry.tags),
                )
            )
            if entry.origin_rule_id is not None:
                materialized.add(rule_key)

        touched = {copy.wallet_id for copy in copies}
        if copies:
            write_batch(self.session, copies, label="migrate")
        result.copied_count = len(copies)
        result.balances, result.stale_wallet_ids = refresh_balances(
            self.session, touched, destination.id
        )
        logger.info(
            f"migrate: source_period_id={source.id} "
            f"destination_period_id={destination.id} "
            f"copied={result.copied_count} skipped={len(result.skipped)}"
        )
        return result
