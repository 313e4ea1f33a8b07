"""
Account Store Module

Owns account state and is the only path through which balances and
transaction histories change. Provides an abstract store interface with
in-memory, SQLite and PostgreSQL implementations. Every implementation
applies a transaction as one atomic unit per account: the acceptance
predicate, the balance update and the history append either all happen
or none do.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, List, Optional, Union
from datetime import datetime, timezone
from pathlib import Path
from contextlib import contextmanager
import sqlite3
import threading

from .accounts import (
    Account, AccountStatement, Transaction, MAX_AMOUNT, MIN_BALANCE, build_seed_accounts, from_epoch_ms
)
from .config import LedgerConfig, get_config
from .logging_config import get_logger, log_action


DEFAULT_STATEMENT_SIZE = 10

# Called with (candidate_balance, account) while the account is held exclusively
AcceptPredicate = Callable[[int, Account], bool]


class LedgerError(Exception):
    """Base class for ledger business-rule failures"""


class AccountNotFoundError(LedgerError, LookupError):
    """Account id does not resolve to a provisioned account"""

    def __init__(self, account_id: int):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class TransactionRejectedError(LedgerError, ValueError):
    """Acceptance predicate refused the candidate balance"""

    def __init__(self, account_id: int, candidate_balance: int):
        self.account_id = account_id
        self.candidate_balance = candidate_balance
        super().__init__(
            f"Transaction rejected for account {account_id}: "
            f"resulting balance {candidate_balance} not accepted"
        )


class BalanceOutOfRangeError(TransactionRejectedError):
    """Amount or resulting balance does not fit a signed 64-bit column"""


def _check_range(account_id: int, candidate: int, transaction: Transaction) -> None:
    if transaction.amount > MAX_AMOUNT or not MIN_BALANCE <= candidate <= MAX_AMOUNT:
        raise BalanceOutOfRangeError(account_id, candidate)


def _acceptance_time(last: Optional[datetime] = None) -> datetime:
    """Current UTC time, never earlier than the account's last transaction"""
    now = datetime.now(timezone.utc)
    if last is not None and last > now:
        return last
    return now


class AccountStore(ABC):
    """Abstract interface for account stores"""

    @abstractmethod
    def find(self, account_id: int) -> Account:
        """Snapshot of an account; raises AccountNotFoundError"""
        pass

    @abstractmethod
    def apply(
        self,
        account_id: int,
        delta: int,
        transaction: Transaction,
        accept: AcceptPredicate
    ) -> Account:
        """
        Atomically apply ``delta`` to an account's balance and append
        ``transaction`` to its history.

        Args:
            account_id: Target account
            delta: Signed change to the balance
            transaction: Record to append; re-stamped at acceptance time
            accept: Predicate over (candidate balance, account)

        Returns:
            Snapshot of the account after the update

        Raises:
            AccountNotFoundError: If the account does not exist
            BalanceOutOfRangeError: If the amount or candidate balance overflows 64 bits
            TransactionRejectedError: If ``accept`` refuses the candidate balance
        """
        pass

    @abstractmethod
    def statement(self, account_id: int, last: int = DEFAULT_STATEMENT_SIZE) -> AccountStatement:
        """Balance, limit and the last ``last`` transactions, oldest first"""
        pass

    @abstractmethod
    def history(self, account_id: int) -> List[Transaction]:
        """Full transaction history of an account, oldest first"""
        pass

    @abstractmethod
    def seed(self, accounts: Iterable[Account]) -> int:
        """Provision accounts, skipping ids that already exist. Returns how many were added."""
        pass

    def close(self) -> None:
        """Release resources (default no-op)"""
        pass

    def _log_seeded(self, added: int) -> None:
        log_action(
            self.logger, "info", f"Seeded {added} account(s)",
            action="seed_accounts", resource=f"store:{type(self).__name__}",
            extra={"added": added}
        )


class _AccountSlot:
    """One account's state together with the lock that guards it"""

    __slots__ = ("account", "history", "lock")

    def __init__(self, account: Account):
        self.account = account
        self.history: List[Transaction] = []
        self.lock = threading.Lock()


class InMemoryAccountStore(AccountStore):
    """
    In-memory store with one lock per account. The slot map is replaced
    wholesale on seeding and never mutated in place, so lookups need no
    global lock and writers on different accounts never contend.
    """

    def __init__(self, accounts: Iterable[Account] = ()):
        self._slots: Dict[int, _AccountSlot] = {}
        self._seed_lock = threading.Lock()
        self.logger = get_logger("account_ledger.storage")
        self.seed(accounts)

    def _slot(self, account_id: int) -> _AccountSlot:
        slot = self._slots.get(account_id)
        if slot is None:
            raise AccountNotFoundError(account_id)
        return slot

    def seed(self, accounts: Iterable[Account]) -> int:
        with self._seed_lock:
            slots = dict(self._slots)
            added = 0
            for account in accounts:
                if account.id not in slots:
                    slots[account.id] = _AccountSlot(account.snapshot())
                    added += 1
            self._slots = slots

        if added:
            self._log_seeded(added)
        return added

    def find(self, account_id: int) -> Account:
        slot = self._slot(account_id)
        with slot.lock:
            return slot.account.snapshot()

    def apply(
        self,
        account_id: int,
        delta: int,
        transaction: Transaction,
        accept: AcceptPredicate
    ) -> Account:
        slot = self._slot(account_id)
        with slot.lock:
            account = slot.account
            candidate = account.balance + delta
            _check_range(account_id, candidate, transaction)
            if not accept(candidate, account.snapshot()):
                raise TransactionRejectedError(account_id, candidate)

            last = slot.history[-1].occurred_at if slot.history else None
            slot.history.append(transaction.stamped(_acceptance_time(last)))
            account.balance = candidate
            return account.snapshot()

    def statement(self, account_id: int, last: int = DEFAULT_STATEMENT_SIZE) -> AccountStatement:
        slot = self._slot(account_id)
        with slot.lock:
            recent = slot.history[-last:] if last > 0 else []
            return AccountStatement(
                balance=slot.account.balance,
                limit=slot.account.limit,
                transactions=list(recent)
            )

    def history(self, account_id: int) -> List[Transaction]:
        slot = self._slot(account_id)
        with slot.lock:
            return list(slot.history)


class SQLiteAccountStore(AccountStore):
    """
    SQLite store. SQLite locks the whole database on write, so a single
    connection guarded by one lock serializes all units of work; each
    apply runs inside BEGIN IMMEDIATE.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", accounts: Iterable[Account] = ()):
        self.db_path = str(db_path)
        # Autocommit mode; transactions are opened explicitly in _atomic
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self.logger = get_logger("account_ledger.storage")

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

        self._ensure_schema()
        self.seed(accounts)

    def _ensure_schema(self) -> None:
        """Create tables and indexes if missing"""
        with self._lock:
            self._connection.execute("PRAGMA foreign_keys = ON")
            self._connection.executescript("""
                CREATE TABLE IF NOT EXISTS accounts (
                    id INTEGER PRIMARY KEY,
                    account_limit INTEGER NOT NULL,
                    balance INTEGER NOT NULL DEFAULT 0
                );
                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id INTEGER NOT NULL REFERENCES accounts(id),
                    amount INTEGER NOT NULL,
                    kind TEXT NOT NULL CHECK (kind IN ('c', 'd')),
                    description TEXT NOT NULL,
                    occurred_at INTEGER NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_transactions_account_occurred
                ON transactions(account_id, occurred_at, id);
            """)

    @contextmanager
    def _atomic(self, immediate: bool = True):
        """Run a block as one SQLite transaction under the connection lock"""
        with self._lock:
            self._connection.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield self._connection
                self._connection.execute("COMMIT")
            except Exception:
                # A failed COMMIT can leave the transaction open
                if self._connection.in_transaction:
                    self._connection.execute("ROLLBACK")
                raise

    @staticmethod
    def _account_from_row(row) -> Account:
        return Account(id=row['id'], limit=row['account_limit'], balance=row['balance'])

    def _load_account(self, conn, account_id: int) -> Account:
        row = conn.execute(
            "SELECT id, account_limit, balance FROM accounts WHERE id = ?", (account_id,)
        ).fetchone()
        if row is None:
            raise AccountNotFoundError(account_id)
        return self._account_from_row(row)

    def seed(self, accounts: Iterable[Account]) -> int:
        rows = [(account.id, account.limit, account.balance) for account in accounts]
        with self._atomic() as conn:
            before = conn.total_changes
            conn.executemany(
                "INSERT OR IGNORE INTO accounts (id, account_limit, balance) VALUES (?, ?, ?)",
                rows
            )
            added = conn.total_changes - before

        if added:
            self._log_seeded(added)
        return added

    def find(self, account_id: int) -> Account:
        with self._lock:
            return self._load_account(self._connection, account_id)

    def apply(
        self,
        account_id: int,
        delta: int,
        transaction: Transaction,
        accept: AcceptPredicate
    ) -> Account:
        with self._atomic() as conn:
            account = self._load_account(conn, account_id)
            candidate = account.balance + delta
            _check_range(account_id, candidate, transaction)
            if not accept(candidate, account.snapshot()):
                raise TransactionRejectedError(account_id, candidate)

            last_ms = conn.execute(
                "SELECT MAX(occurred_at) FROM transactions WHERE account_id = ?", (account_id,)
            ).fetchone()[0]
            last = from_epoch_ms(last_ms) if last_ms is not None else None
            accepted = transaction.stamped(_acceptance_time(last))

            conn.execute(
                "UPDATE accounts SET balance = ? WHERE id = ?", (candidate, account_id)
            )
            conn.execute(
                """
                INSERT INTO transactions (account_id, amount, kind, description, occurred_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (account_id, accepted.amount, accepted.kind.value,
                 accepted.description, accepted.occurred_at_ms)
            )

        account.balance = candidate
        return account

    def statement(self, account_id: int, last: int = DEFAULT_STATEMENT_SIZE) -> AccountStatement:
        with self._atomic(immediate=False) as conn:
            account = self._load_account(conn, account_id)
            rows = conn.execute(
                """
                SELECT amount, kind, description, occurred_at FROM transactions
                WHERE account_id = ?
                ORDER BY occurred_at DESC, id DESC
                LIMIT ?
                """,
                (account_id, max(last, 0))
            ).fetchall()

        return AccountStatement(
            balance=account.balance,
            limit=account.limit,
            transactions=[self._transaction_from_row(row) for row in reversed(rows)]
        )

    def history(self, account_id: int) -> List[Transaction]:
        with self._atomic(immediate=False) as conn:
            self._load_account(conn, account_id)
            rows = conn.execute(
                """
                SELECT amount, kind, description, occurred_at FROM transactions
                WHERE account_id = ?
                ORDER BY occurred_at, id
                """,
                (account_id,)
            ).fetchall()
        return [self._transaction_from_row(row) for row in rows]

    @staticmethod
    def _transaction_from_row(row) -> Transaction:
        return Transaction.from_row(row['amount'], row['kind'], row['description'], row['occurred_at'])

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLAccountStore(AccountStore):
    """
    PostgreSQL store backed by a thread-safe connection pool. Each apply
    runs in its own transaction and locks only the target account row
    (SELECT ... FOR UPDATE), so writers on different accounts proceed in
    parallel.
    """

    def __init__(
        self,
        connection_string: str,
        accounts: Iterable[Account] = (),
        min_connections: int = 1,
        max_connections: int = 20
    ):
        try:
            import psycopg2
            import psycopg2.extras
            import psycopg2.pool
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            min_connections, max_connections, connection_string
        )
        # The pool raises instead of waiting when exhausted
        self._slots = threading.BoundedSemaphore(max_connections)
        self.logger = get_logger("account_ledger.storage")

        self._ensure_schema()
        self.seed(accounts)

    @contextmanager
    def _atomic(self, isolation: Optional[str] = None):
        """Borrow a pooled connection and run a block as one transaction"""
        with self._slots:
            conn = self._pool.getconn()
            try:
                with conn.cursor(cursor_factory=self.extras.RealDictCursor) as cursor:
                    if isolation:
                        cursor.execute(f"SET TRANSACTION ISOLATION LEVEL {isolation}")
                    yield cursor
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                self._pool.putconn(conn)

    def _ensure_schema(self) -> None:
        """Create tables and indexes if missing"""
        with self._atomic() as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    id INTEGER PRIMARY KEY,
                    account_limit BIGINT NOT NULL,
                    balance BIGINT NOT NULL DEFAULT 0
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id BIGSERIAL PRIMARY KEY,
                    account_id INTEGER NOT NULL REFERENCES accounts(id),
                    amount BIGINT NOT NULL,
                    kind CHAR(1) NOT NULL CHECK (kind IN ('c', 'd')),
                    description VARCHAR(10) NOT NULL,
                    occurred_at BIGINT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_transactions_account_occurred
                ON transactions(account_id, occurred_at, id)
            """)

    @staticmethod
    def _account_from_row(row) -> Account:
        return Account(id=row['id'], limit=row['account_limit'], balance=row['balance'])

    def _load_account(self, cursor, account_id: int, for_update: bool = False) -> Account:
        query = "SELECT id, account_limit, balance FROM accounts WHERE id = %s"
        if for_update:
            query += " FOR UPDATE"
        cursor.execute(query, (account_id,))
        row = cursor.fetchone()
        if row is None:
            raise AccountNotFoundError(account_id)
        return self._account_from_row(row)

    def seed(self, accounts: Iterable[Account]) -> int:
        added = 0
        with self._atomic() as cursor:
            for account in accounts:
                cursor.execute(
                    """
                    INSERT INTO accounts (id, account_limit, balance) VALUES (%s, %s, %s)
                    ON CONFLICT (id) DO NOTHING
                    """,
                    (account.id, account.limit, account.balance)
                )
                added += cursor.rowcount

        if added:
            self._log_seeded(added)
        return added

    def find(self, account_id: int) -> Account:
        with self._atomic() as cursor:
            return self._load_account(cursor, account_id)

    def apply(
        self,
        account_id: int,
        delta: int,
        transaction: Transaction,
        accept: AcceptPredicate
    ) -> Account:
        with self._atomic() as cursor:
            account = self._load_account(cursor, account_id, for_update=True)
            candidate = account.balance + delta
            _check_range(account_id, candidate, transaction)
            if not accept(candidate, account.snapshot()):
                raise TransactionRejectedError(account_id, candidate)

            cursor.execute(
                "SELECT MAX(occurred_at) AS last FROM transactions WHERE account_id = %s",
                (account_id,)
            )
            last_ms = cursor.fetchone()['last']
            last = from_epoch_ms(last_ms) if last_ms is not None else None
            accepted = transaction.stamped(_acceptance_time(last))

            cursor.execute(
                "UPDATE accounts SET balance = %s WHERE id = %s", (candidate, account_id)
            )
            cursor.execute(
                """
                INSERT INTO transactions (account_id, amount, kind, description, occurred_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (account_id, accepted.amount, accepted.kind.value,
                 accepted.description, accepted.occurred_at_ms)
            )

        account.balance = candidate
        return account

    def statement(self, account_id: int, last: int = DEFAULT_STATEMENT_SIZE) -> AccountStatement:
        with self._atomic(isolation="REPEATABLE READ") as cursor:
            account = self._load_account(cursor, account_id)
            cursor.execute(
                """
                SELECT amount, kind, description, occurred_at FROM transactions
                WHERE account_id = %s
                ORDER BY occurred_at DESC, id DESC
                LIMIT %s
                """,
                (account_id, max(last, 0))
            )
            rows = cursor.fetchall()

        return AccountStatement(
            balance=account.balance,
            limit=account.limit,
            transactions=[self._transaction_from_row(row) for row in reversed(rows)]
        )

    def history(self, account_id: int) -> List[Transaction]:
        with self._atomic(isolation="REPEATABLE READ") as cursor:
            self._load_account(cursor, account_id)
            cursor.execute(
                """
                SELECT amount, kind, description, occurred_at FROM transactions
                WHERE account_id = %s
                ORDER BY occurred_at, id
                """,
                (account_id,)
            )
            rows = cursor.fetchall()
        return [self._transaction_from_row(row) for row in rows]

    @staticmethod
    def _transaction_from_row(row) -> Transaction:
        return Transaction.from_row(
            row['amount'], row['kind'].strip(), row['description'], row['occurred_at']
        )

    def close(self) -> None:
        """Close all pooled connections"""
        if self._pool:
            self._pool.closeall()
            self._pool = None


def create_store(config: Optional[LedgerConfig] = None) -> AccountStore:
    """
    Build the configured account store and provision the seed accounts.

    Args:
        config: Ledger configuration (global configuration if omitted)

    Returns:
        Seeded AccountStore instance
    """
    config = config or get_config()
    accounts = build_seed_accounts(config.seed_accounts)
    backend = config.storage_backend.lower()

    if backend == "memory":
        return InMemoryAccountStore(accounts)
    if backend == "sqlite":
        return SQLiteAccountStore(config.database_url, accounts)
    if backend in ("postgresql", "postgres"):
        return PostgreSQLAccountStore(
            config.database_url,
            accounts,
            min_connections=config.database_pool_min,
            max_connections=config.database_pool_size
        )

    raise ValueError(f"Unknown storage backend: {config.storage_backend}")
