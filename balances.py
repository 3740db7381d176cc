import logging
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from errors import WalletNotFound
from models import Spend, Wallet


logger = logging.getLogger(__name__)


def ledger_balance(session: Session, wallet_id: int, period_id: int) -> int:
    return int(
        session.execute(
            select(func.coalesce(func.sum(Spend.amount_cents), 0)).where(
                Spend.wallet_id == wallet_id,
                Spend.period_id == period_id,
                Spend.deleted_at.is_(None),
            )
        ).scalar_one()
        or 0
    )


class BalanceAggregator:
    """Keeps ``Wallet.current_balance_cents`` in step with the ledger.

    The cached balance is a convenience for reads; the spends table is the
    source of truth and every method here rebuilds from it.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def recompute(self, wallet_id: int, period_id: int, *, commit: bool = True) -> int:
        wallet = self.session.get(Wallet, wallet_id)
        if not wallet or wallet.period_id != period_id:
            raise WalletNotFound("Wallet not found")
        self.session.flush()
        balance = ledger_balance(self.session, wallet_id, period_id)
        if wallet.current_balance_cents != balance:
            logger.info(
                f"balance_recompute: wallet_id={wallet_id} period_id={period_id} "
                f"old={wallet.current_balance_cents} new={balance}"
            )
        wallet.current_balance_cents = balance
        if commit:
            self.session.commit()
        return balance

    def recompute_many(
        self, wallet_ids: Iterable[Optional[int]], period_id: int
    ) -> dict[int, int]:
        balances: dict[int, int] = {}
        for wallet_id in sorted({w for w in wallet_ids if w is not None}):
            balances[wallet_id] = self.recompute(wallet_id, period_id, commit=False)
        self.session.commit()
        return balances

    def reconcile_period(self, period_id: int) -> dict[int, int]:
        wallet_ids = self.session.scalars(
            select(Wallet.id).where(Wallet.period_id == period_id)
        ).all()
        return self.recompute_many(wallet_ids, period_id)

    def find_stale(self, account_id: Optional[int] = None) -> list[Wallet]:
        ledger = (
            select(
                Spend.wallet_id.label("wallet_id"),
                Spend.period_id.label("period_id"),
                func.sum(Spend.amount_cents).label("total"),
            )
            .where(Spend.deleted_at.is_(None), Spend.wallet_id.isnot(None))
            .group_by(Spend.wallet_id, Spend.period_id)
            .subquery()
        )
        stmt = (
            select(Wallet)
            .outerjoin(
                ledger,
                (ledger.c.wallet_id == Wallet.id)
                & (ledger.c.period_id == Wallet.period_id),
            )
            .where(
                Wallet.current_balance_cents != func.coalesce(ledger.c.total, 0)
            )
            .order_by(Wallet.id)
        )
        if account_id is not None:
            stmt = stmt.where(Wallet.account_id == account_id)
        return list(self.session.scalars(stmt).all())

    def repair_stale(self, account_id: Optional[int] = None) -> int:
        stale = self.find_stale(account_id)
        for wallet in stale:
            self.recompute(wallet.id, wallet.period_id, commit=False)
        self.session.commit()
        return len(stale)

