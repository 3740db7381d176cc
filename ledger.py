import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from balances import BalanceAggregator
from errors import BatchWriteFailed
from models import Spend


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SkippedEntry:
    kind: str
    ref: str
    reason: str


def write_batch(session: Session, entries: list[Spend], *, label: str) -> None:
    """Commit ``entries`` together, or roll all of them back."""
    try:
        session.add_all(entries)
        session.flush()
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"{label}: batch_write_failed entries={len(entries)} error={exc}")
        raise BatchWriteFailed(
            f"{label}: could not write {len(entries)} ledger entries"
        ) from exc


def refresh_balances(
    session: Session, wallet_ids: Iterable[Optional[int]], period_id: int
) -> tuple[dict[int, int], list[int]]:
    """Recompute cached balances after a batch.

    Returns ``(balances, stale_wallet_ids)``. A failure here leaves the cached
    values stale but the ledger intact, so it is reported instead of raised.
    """
    ids = sorted({w for w in wallet_ids if w is not None})
    if not ids:
        return {}, []
    try:
        return BalanceAggregator(session).recompute_many(ids, period_id), []
    except SQLAlchemyError:
        session.rollback()
        logger.exception(
            f"balance_refresh_failed: period_id={period_id} wallet_ids={ids}"
        )
        return {}, ids
