"""Exception taxonomy for the ledger, lot tracker and tax services."""

from typing import Any, Optional


class TradeLedgerError(Exception):
    """Base class for all ledger errors.

    Errors raised while resolving one leg of a trade carry that leg and its
    position in the trade so the caller can correct it and retry.
    """

    def __init__(self, message: str, leg: Any = None, leg_index: Optional[int] = None):
        self.leg = leg
        self.leg_index = leg_index
        super().__init__(message)

    def with_leg(self, leg: Any, leg_index: int) -> "TradeLedgerError":
        """Attach leg context if none is set yet."""
        if self.leg is None:
            self.leg = leg
            self.leg_index = leg_index
        return self


class UnbalancedEntryError(TradeLedgerError):
    """Debits and credits of a journal do not match."""

    def __init__(self, debits: int, credits: int, message: Optional[str] = None, **kwargs):
        self.debits = debits
        self.credits = credits
        super().__init__(
            message or f"Unbalanced entry: debits={debits} credits={credits}",
            **kwargs,
        )


class UnknownAccountError(TradeLedgerError):
    """One or more account codes are not in the chart of accounts."""

    def __init__(self, codes: list[str], **kwargs):
        self.codes = list(codes)
        super().__init__(f"Account codes not found: {', '.join(self.codes)}", **kwargs)


class OrphanLegError(TradeLedgerError):
    """A closing leg has no compatible open lot.

    Surfaced for manual reconciliation rather than auto-corrected.
    """


class NegativeQuantityError(TradeLedgerError):
    """A disposition would drive a lot's remaining quantity below zero."""

    def __init__(self, lot_id: Any, remaining: float, requested: float, **kwargs):
        self.lot_id = lot_id
        self.remaining = remaining
        self.requested = requested
        super().__init__(
            f"Lot {lot_id}: cannot dispose {requested} with only {remaining} remaining",
            **kwargs,
        )


class PostingImmutabilityError(TradeLedgerError):
    """Attempt to change a posted journal or ledger entry."""


class LegParseError(TradeLedgerError):
    """An imported row cannot be turned into a trade leg."""


class TradeConflictError(TradeLedgerError):
    """Some, but not all, legs of a trade were already committed."""


class WashSaleAdjustmentError(TradeLedgerError):
    """A single wash-sale violation could not be applied."""
