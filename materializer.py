import logging
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import BatchWriteFailed, ValidationFailed, WalletResolutionFailed
from ledger import SkippedEntry, refresh_balances, write_batch
from models import Period, RecurringSpend, Spend
from periods import window_of
from recurrence import expand, validate_rule
from wallets import load_directory, reference_for, resolve


logger = logging.getLogger(__name__)


@dataclass
class MaterializeResult:
    period_id: int
    generated_count: int = 0
    skipped: list[SkippedEntry] = field(default_factory=list)
    balances: dict[int, int] = field(default_factory=dict)
    stale_wallet_ids: list[int] = field(default_factory=list)


class Materializer:
    """Turns recurrence rules into dated spends inside one period.

    Every ``(rule, period, occurrence_date)`` is written at most once, so
    running it again for the same period only fills in what is missing.
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

    def materialize(
        self, period: Period, active_rules: Iterable[RecurringSpend]
    ) -> MaterializeResult:
        window = window_of(period)
        if period.is_closed:
            raise ValidationFailed("Cannot materialize into a closed period")

        result = MaterializeResult(period_id=period.id)
        rules = [
            rule
            for rule in active_rules
            if rule.active and rule.account_id == period.account_id
        ]
        if not rules:
            logger.info(f"materialize: period_id={period.id} rules=0 generated=0")
            return result

        directory = load_directory(
            self.session,
            period.id,
            attempts=self.attempts,
            base_delay=self.base_delay,
            sleep=self.sleep,
        )
        existing = self._existing_keys(period.id)

        from services import TagService

        tags = TagService(self.session, period.account_id)
        spends: list[Spend] = []
        for rule in rules:
            try:
                validate_rule(rule)
            except ValidationFailed as exc:
                result.skipped.append(
                    SkippedEntry("ValidationFailed", f"rule:{rule.id}", str(exc))
                )
                logger.warning(f"materialize_invalid_rule: rule_id={rule.id} {exc}")
                continue

            occurrences = [
                day
                for day in expand(rule, window.start, window.end)
                if (rule.id, day) not in existing
            ]
            if not occurrences:
                continue

            reference = reference_for(self.session, rule.wallet_id, rule.wallet_name)
            try:
                wallet_id = resolve(reference, directory)
            except WalletResolutionFailed as exc:
                for day in occurrences:
                    result.skipped.append(
                        SkippedEntry(
                            "WalletResolutionFailed",
                            f"rule:{rule.id}@{day.isoformat()}",
                            str(exc),
                        )
                    )
                logger.warning(
                    f"materialize_unresolved_wallet: rule_id={rule.id} "
                    f"period_id={period.id} occurrences={len(occurrences)}"
                )
                continue

            try:
                rule_tags = tags.get_or_create_many(rule.tags)
            except SQLAlchemyError as exc:
                self.session.rollback()
                logger.error(
                    f"materialize: tag_resolution_failed rule_id={rule.id} error={exc}"
                )
                raise BatchWriteFailed(
                    f"materialize: could not resolve tags for rule {rule.id}"
                ) from exc

            for day in occurrences:
                spends.append(
                    Spend(
                        account_id=period.account_id,
                        period_id=period.id,
                        wallet_id=wallet_id,
                        date=day,
                        amount_cents=rule.amount_cents,
                        category=rule.category,
                        description=rule.description,
                        notes="",
                        # The instance is an ordinary spend; the rule is the template.
                        recurring=False,
                        origin_rule_id=rule.id,
                        occurrence_date=day,
                        tags=list(rule_tags),
                    )
                )
                existing.add((rule.id, day))

        touched = {spend.wallet_id for spend in spends}
        if spends:
            write_batch(self.session, spends, label="materialize")
        result.generated_count = len(spends)
        result.balances, result.stale_wallet_ids = refresh_balances(
            self.session, touched, period.id
        )
        logger.info(
            f"materialize: period_id={period.id} rules={len(rules)} "
            f"generated={result.generated_count} skipped={len(result.skipped)}"
        )
        return result

    def _existing_keys(self, period_id: int) -> set[tuple[int, date]]:
        rows = self.session.execute(
            select(Spend.origin_rule_id, Spend.occurrence_date).where(
                Spend.period_id == period_id,
                Spend.origin_rule_id.isnot(None),
            )
        ).all()
        return {(row[0], row[1]) for row in rows}
