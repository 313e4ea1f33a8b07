"""
Account Model Module

Accounts, the transactions posted against them, and the point-in-time
statement view. Amounts are integers in the smallest currency unit; the
sign of a transaction is carried by its kind, never by the amount.
"""

from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field, replace
from typing import Dict, List
from enum import Enum


MAX_DESCRIPTION_LENGTH = 10

# Amounts and balances are stored as signed 64-bit integers
MAX_AMOUNT = 2 ** 63 - 1
MIN_BALANCE = -(2 ** 63)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MILLISECOND = timedelta(milliseconds=1)


def to_epoch_ms(moment: datetime) -> int:
    return (moment - EPOCH) // _MILLISECOND


def from_epoch_ms(value: int) -> datetime:
    return EPOCH + timedelta(milliseconds=value)


class TransactionKind(Enum):
    """Transaction kinds, valued by their wire codes"""
    CREDIT = "c"   # Adds to balance
    DEBIT = "d"    # Subtracts from balance

    def signed(self, amount: int) -> int:
        """Signed effect of ``amount`` on a balance"""
        return amount if self is TransactionKind.CREDIT else -amount


@dataclass(frozen=True)
class Transaction:
    """
    Immutable record of an accepted credit or debit
    """
    amount: int
    kind: TransactionKind
    description: str
    occurred_at: datetime

    def __post_init__(self):
        if self.amount < 0:
            raise ValueError("Transaction amount must be non-negative")

        if not 1 <= len(self.description) <= MAX_DESCRIPTION_LENGTH:
            raise ValueError(
                f"Transaction description must be 1 to {MAX_DESCRIPTION_LENGTH} characters"
            )

    @property
    def signed_amount(self) -> int:
        return self.kind.signed(self.amount)

    @property
    def occurred_at_ms(self) -> int:
        """Occurrence time as epoch milliseconds (the persisted form)"""
        return to_epoch_ms(self.occurred_at)

    def stamped(self, occurred_at: datetime) -> 'Transaction':
        """Copy of this transaction re-stamped at the moment of acceptance"""
        return replace(self, occurred_at=occurred_at)

    @classmethod
    def create(cls, amount: int, kind: TransactionKind, description: str) -> 'Transaction':
        """Create a transaction stamped with the current UTC time"""
        return cls(
            amount=amount,
            kind=kind,
            description=description,
            occurred_at=datetime.now(timezone.utc)
        )

    @classmethod
    def from_row(cls, amount: int, kind: str, description: str, occurred_at_ms: int) -> 'Transaction':
        """Rebuild a transaction from its persisted columns"""
        return cls(
            amount=amount,
            kind=TransactionKind(kind),
            description=description,
            occurred_at=from_epoch_ms(occurred_at_ms)
        )


@dataclass
class Account:
    """
    Pre-provisioned account. ``limit`` is fixed at provisioning; ``balance``
    only moves through the store's apply protocol.
    """
    id: int
    limit: int
    balance: int = 0

    def __post_init__(self):
        if self.limit < 0:
            raise ValueError("Account limit must be non-negative")

    def snapshot(self) -> 'Account':
        """Detached copy safe to hand outside the store"""
        return replace(self)


@dataclass(frozen=True)
class AccountStatement:
    """Point-in-time balance and limit with the most recent transactions"""
    balance: int
    limit: int
    transactions: List[Transaction] = field(default_factory=list)


def build_seed_accounts(limits: Dict[int, int]) -> List[Account]:
    """Accounts for a ``{id: limit}`` seed mapping, all starting at zero balance"""
    return [Account(id=int(account_id), limit=int(limit)) for account_id, limit in sorted(limits.items())]
