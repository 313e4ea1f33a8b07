"""
Ledger Engine Module

Posts credits and debits against the account store and builds account
statements. Business outcomes (accepted, unknown account, insufficient
funds, balance out of range) come back as tagged result objects rather than exceptions; storage
faults propagate unchanged.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import List, Optional, Union

from .accounts import Account, Transaction, TransactionKind
from .config import LedgerConfig, get_config
from .storage import (
    AccountStore, AccountNotFoundError, BalanceOutOfRangeError, TransactionRejectedError
)
from .logging_config import get_logger, log_action


@dataclass(frozen=True)
class TransactionAccepted:
    """Transaction applied; carries the static limit and the new balance"""
    limit: int
    balance: int


@dataclass(frozen=True)
class AccountNotFound:
    """No provisioned account with this id"""
    account_id: int


@dataclass(frozen=True)
class InsufficientFunds:
    """Debit refused because it would cross the balance floor"""
    account_id: int
    amount: int


@dataclass(frozen=True)
class BalanceOutOfRange:
    """Amount or resulting balance exceeds what an account can hold"""
    account_id: int
    amount: int


@dataclass(frozen=True)
class Statement:
    """Balance snapshot with the most recent transactions, oldest first"""
    balance: int
    limit: int
    statement_date: datetime
    last_transactions: List[Transaction] = field(default_factory=list)


PostingResult = Union[TransactionAccepted, AccountNotFound, InsufficientFunds, BalanceOutOfRange]
StatementResult = Union[Statement, AccountNotFound]


class LedgerEngine:
    """
    Applies transactions through the account store and enforces the
    balance floor for debits
    """

    def __init__(self, store: AccountStore, config: Optional[LedgerConfig] = None):
        config = config or get_config()
        self.store = store
        self.statement_size = config.statement_size
        self.enforce_credit_limit = config.enforce_credit_limit
        self.logger = get_logger("account_ledger.ledger")

    def balance_floor(self, account: Account) -> int:
        """Lowest balance a debit may leave behind"""
        if self.enforce_credit_limit:
            return -account.limit
        return 0

    def _acceptance_predicate(self, kind: TransactionKind):
        if kind is TransactionKind.CREDIT:
            return lambda candidate, account: True
        return lambda candidate, account: candidate >= self.balance_floor(account)

    def post_transaction(
        self,
        account_id: int,
        amount: int,
        kind: Union[TransactionKind, str],
        description: str
    ) -> PostingResult:
        """
        Post a credit or debit against an account

        Args:
            account_id: Target account
            amount: Non-negative amount; the sign comes from ``kind``
            kind: TransactionKind or its wire code ("c" or "d")
            description: 1 to 10 characters

        Returns:
            TransactionAccepted, AccountNotFound, InsufficientFunds or
            BalanceOutOfRange
        """
        kind = TransactionKind(kind)
        transaction = Transaction.create(amount, kind, description)

        try:
            account = self.store.apply(
                account_id,
                kind.signed(amount),
                transaction,
                self._acceptance_predicate(kind)
            )
        except AccountNotFoundError:
            log_action(
                self.logger, "warning", f"Transaction for unknown account {account_id}",
                action="post_transaction", resource=f"account:{account_id}"
            )
            return AccountNotFound(account_id)
        except BalanceOutOfRangeError as e:
            log_action(
                self.logger, "warning", "Transaction rejected: balance out of range",
                action="post_transaction", resource=f"account:{account_id}",
                extra={"amount": amount, "kind": kind.value, "candidate_balance": e.candidate_balance}
            )
            return BalanceOutOfRange(account_id, amount)
        except TransactionRejectedError as e:
            log_action(
                self.logger, "warning", "Transaction rejected: insufficient funds",
                action="post_transaction", resource=f"account:{account_id}",
                extra={
                    "amount": amount,
                    "kind": kind.value,
                    "candidate_balance": e.candidate_balance
                }
            )
            return InsufficientFunds(account_id, amount)

        log_action(
            self.logger, "info", f"Transaction accepted: {kind.name.lower()}",
            action="post_transaction", resource=f"account:{account_id}",
            extra={
                "amount": amount,
                "kind": kind.value,
                "description": description,
                "balance": account.balance
            }
        )
        return TransactionAccepted(limit=account.limit, balance=account.balance)

    def get_statement(self, account_id: int) -> StatementResult:
        """Current balance, limit and last transactions, dated at read time"""
        try:
            snapshot = self.store.statement(account_id, self.statement_size)
        except AccountNotFoundError:
            return AccountNotFound(account_id)

        return Statement(
            balance=snapshot.balance,
            limit=snapshot.limit,
            statement_date=datetime.now(timezone.utc),
            last_transactions=snapshot.transactions
        )

    def close(self) -> None:
        self.store.close()
