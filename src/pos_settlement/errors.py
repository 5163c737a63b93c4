"""Exception taxonomy for the settlement engine."""

from __future__ import annotations

from typing import Optional


class SettlementError(Exception):
    """Base class for every error raised by the settlement engine."""


class ValidationError(SettlementError):
    """Raised before any write when a checkout request breaks a domain rule."""


class MissingReferenceError(ValidationError):
    """Raised when a referenced product or loyalty card is unknown."""


class CheckoutStateError(SettlementError):
    """Raised when a checkout session is driven through an illegal transition."""


class PersistenceError(SettlementError):
    """Raised when a store reports that a write did not happen."""


class SalePersistenceError(PersistenceError):
    """The Sale write failed; the checkout attempt is aborted and retryable."""


class MovementWriteError(PersistenceError):
    """A stock movement could not be written after the Sale was committed."""

    def __init__(self, product_ref: str, message: str) -> None:
        super().__init__(message)
        self.product_ref = product_ref


class StaleStockError(PersistenceError):
    """The optimistic stock precondition did not hold; retry with fresh stock."""

    def __init__(self, product_ref: str, expected: int, actual: Optional[int]) -> None:
        super().__init__(
            f"Stock for '{product_ref}' changed: expected {expected}, found {actual}"
        )
        self.product_ref = product_ref
        self.expected = expected
        self.actual = actual


__all__ = [
    "SettlementError",
    "ValidationError",
    "MissingReferenceError",
    "CheckoutStateError",
    "PersistenceError",
    "SalePersistenceError",
    "MovementWriteError",
    "StaleStockError",
]
