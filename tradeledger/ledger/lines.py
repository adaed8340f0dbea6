"""Journal line value objects and balancing helpers."""

from dataclasses import dataclass
from typing import Iterable

from tradeledger.database.models import EntrySide
from tradeledger.errors import UnbalancedEntryError


@dataclass(frozen=True)
class JournalLine:
    """One line of a journal: account code, side and amount in cents."""
    account_code: str
    side: EntrySide
    amount: int

    def __post_init__(self):
        if not isinstance(self.side, EntrySide):
            object.__setattr__(self, "side", EntrySide(self.side))

    def inverted(self) -> "JournalLine":
        return JournalLine(self.account_code, self.side.opposite, self.amount)

    def to_dict(self) -> dict:
        return {
            "account_code": self.account_code,
            "side": self.side.value,
            "amount": self.amount,
        }


def debit(account_code: str, amount: int) -> JournalLine:
    return JournalLine(account_code, EntrySide.DEBIT, amount)


def credit(account_code: str, amount: int) -> JournalLine:
    return JournalLine(account_code, EntrySide.CREDIT, amount)


def totals(lines: Iterable[JournalLine]) -> tuple[int, int]:
    """Sum of debits and sum of credits."""
    debits = credits = 0
    for line in lines:
        if line.side == EntrySide.DEBIT:
            debits += line.amount
        else:
            credits += line.amount
    return debits, credits


def check_balanced(lines: list[JournalLine]) -> int:
    """
    Validate a line set before posting.

    Returns:
        The journal total (sum of debits)

    Raises:
        UnbalancedEntryError: If the set is empty, has a non-positive or
            non-integer amount, or debits differ from credits
    """
    if not lines:
        raise UnbalancedEntryError(0, 0, "Journal has no lines")

    for line in lines:
        if isinstance(line.amount, bool) or not isinstance(line.amount, int) or line.amount <= 0:
            raise UnbalancedEntryError(
                *totals(lines),
                message=f"Line amounts must be positive integer cents, got {line.amount!r} "
                        f"on {line.account_code}",
            )

    debits, credits = totals(lines)
    if debits != credits:
        raise UnbalancedEntryError(debits, credits)
    return debits


class LineBuilder:
    """
    Accumulates journal lines for one posting.

    Amounts are signed: a negative amount is booked on the opposite side and
    zero amounts are dropped, so callers can post computed plugs directly.
    Lines for the same account and side are merged in first-seen order.
    """

    def __init__(self):
        self._amounts: dict[tuple[str, EntrySide], int] = {}

    def add(self, account_code: str, side: EntrySide, amount: int) -> "LineBuilder":
        if amount == 0:
            return self
        if amount < 0:
            side, amount = side.opposite, -amount
        key = (account_code, side)
        self._amounts[key] = self._amounts.get(key, 0) + amount
        return self

    def debit(self, account_code: str, amount: int) -> "LineBuilder":
        return self.add(account_code, EntrySide.DEBIT, amount)

    def credit(self, account_code: str, amount: int) -> "LineBuilder":
        return self.add(account_code, EntrySide.CREDIT, amount)

    def extend(self, lines: Iterable[JournalLine]) -> "LineBuilder":
        for line in lines:
            self.add(line.account_code, line.side, line.amount)
        return self

    def build(self) -> list[JournalLine]:
        return [
            JournalLine(code, side, amount)
            for (code, side), amount in self._amounts.items()
            if amount
        ]
