from typing import Optional


class PeriodNotFound(ValueError):
    pass


class WalletNotFound(ValueError):
    pass


class SpendNotFound(ValueError):
    pass


class RuleNotFound(ValueError):
    pass


class ValidationFailed(ValueError):
    pass


class WalletResolutionFailed(ValueError):
    """No wallet matched the reference and the period has no default wallet."""

    def __init__(self, reference: object, period_id: Optional[int]) -> None:
        self.reference = reference
        self.period_id = period_id
        super().__init__(
            f"Could not resolve wallet {reference!r} in period {period_id}"
        )


class BatchWriteFailed(RuntimeError):
    """The storage layer rejected a batch; nothing from it was committed."""
