import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from errors import WalletResolutionFailed
from models import Wallet, normalize_wallet_name


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WalletReference:
    wallet_id: Optional[int] = None
    name: Optional[str] = None


@dataclass
class WalletDirectory:
    """Name-to-id lookup table for the wallets of a single period."""

    period_id: Optional[int]
    ids: set[int] = field(default_factory=set)
    by_name: dict[str, int] = field(default_factory=dict)
    default_id: Optional[int] = None

    @classmethod
    def from_wallets(
        cls, wallets: Iterable[Wallet], period_id: Optional[int] = None
    ) -> "WalletDirectory":
        directory = cls(period_id=period_id)
        for wallet in wallets:
            directory.ids.add(wallet.id)
            directory.by_name[normalize_wallet_name(wallet.name)] = wallet.id
            if wallet.is_default:
                directory.default_id = wallet.id
        return directory

    @property
    def has_default(self) -> bool:
        return self.default_id is not None


def resolve(reference: WalletReference, directory: WalletDirectory) -> int:
    if reference.wallet_id is not None and reference.wallet_id in directory.ids:
        return reference.wallet_id
    if reference.name:
        match = directory.by_name.get(normalize_wallet_name(reference.name))
        if match is not None:
            return match
    if directory.default_id is not None:
        return directory.default_id
    raise WalletResolutionFailed(reference, directory.period_id)


def reference_for(
    session: Session, wallet_id: Optional[int], name: Optional[str] = None
) -> WalletReference:
    """Build a reference named after the wallet as it is now.

    ``name`` is a saved snapshot and only used once the wallet is gone.
    """
    if wallet_id is not None:
        wallet = session.get(Wallet, wallet_id)
        if wallet is not None:
            name = wallet.name
    return WalletReference(wallet_id=wallet_id, name=name)


def load_directory(
    session: Session,
    period_id: int,
    *,
    attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> WalletDirectory:
    """Load a period's wallets, backing off while the default wallet is missing.

    Wallet creation can lag period creation, so an empty read is retried a
    bounded number of times. The last read is returned either way; callers
    raise ``WalletResolutionFailed`` per entry when nothing resolves.
    """
    settings = get_settings()
    attempts = max(1, attempts or settings.wallet_resolution_attempts)
    if base_delay is None:
        base_delay = settings.wallet_resolution_delay_secs

    directory = WalletDirectory(period_id=period_id)
    for attempt in range(attempts):
        wallets = session.scalars(
            select(Wallet)
            .where(Wallet.period_id == period_id)
            .order_by(Wallet.id)
            .execution_options(populate_existing=True)
        ).all()
        directory = WalletDirectory.from_wallets(wallets, period_id)
        if directory.has_default:
            return directory
        if attempt + 1 < attempts:
            delay = base_delay * (2**attempt)
            logger.info(
                f"wallet_directory_retry: period_id={period_id} "
                f"attempt={attempt + 1} wallets={len(directory.ids)} delay={delay}"
            )
            sleep(delay)
    logger.warning(
        f"wallet_directory_no_default: period_id={period_id} "
        f"wallets={len(directory.ids)} attempts={attempts}"
    )
    return directory
