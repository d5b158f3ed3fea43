import sqlite3
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path

from deobf_service.errors import StorageError

DEFAULT_BALANCE = 3
MAX_GRANT = 1_000_000


@dataclass
class UserAccount:
    user_id: str
    balance: int
    last_claim_at: int
    updated_at: int


class LedgerStorage(ABC):
    """Per-user token balances.

    Every mutating method must be atomic with respect to other calls for the
    same user id. Timestamps are epoch milliseconds supplied by the caller.
    A ``last_claim_at`` of 0 marks an account that never claimed.
    """

    def __init__(self, default_balance: int = DEFAULT_BALANCE) -> None:
        self.default_balance = default_balance

    @abstractmethod
    def get_or_create(self, user_id: str, now_ms: int) -> UserAccount: ...

    @abstractmethod
    def add(self, user_id: str, amount: int, now_ms: int) -> int: ...

    @abstractmethod
    def try_debit(self, user_id: str, now_ms: int) -> bool: ...

    @abstractmethod
    def claim_daily(self, user_id: str, now_ms: int, interval_ms: int, amount: int) -> bool: ...


def _check_grant(amount: int) -> None:
    if not 0 < amount <= MAX_GRANT:
        raise ValueError(f"amount must be between 1 and {MAX_GRANT}")


def _claimable(last_claim_at: int, now_ms: int, interval_ms: int) -> bool:
    return last_claim_at == 0 or now_ms - last_claim_at >= interval_ms


class MemoryStorage(LedgerStorage):
    def __init__(self, default_balance: int = DEFAULT_BALANCE) -> None:
        super().__init__(default_balance)
        self._accounts: dict[str, UserAccount] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.Lock()
            return lock

    def _ensure(self, user_id: str, now_ms: int) -> UserAccount:
        # caller holds the user lock
        account = self._accounts.get(user_id)
        if account is None:
            account = UserAccount(user_id, self.default_balance, now_ms, now_ms)
            self._accounts[user_id] = account
        return account

    def get_or_create(self, user_id: str, now_ms: int) -> UserAccount:
        with self._lock_for(user_id):
            return replace(self._ensure(user_id, now_ms))

    def add(self, user_id: str, amount: int, now_ms: int) -> int:
        _check_grant(amount)
        with self._lock_for(user_id):
            account = self._ensure(user_id, now_ms)
            account.balance += amount
            account.updated_at = now_ms
            return account.balance

    def try_debit(self, user_id: str, now_ms: int) -> bool:
        with self._lock_for(user_id):
            account = self._ensure(user_id, now_ms)
            if account.balance < 1:
                return False
            account.balance -= 1
            account.updated_at = now_ms
            return True

    def claim_daily(self, user_id: str, now_ms: int, interval_ms: int, amount: int) -> bool:
        with self._lock_for(user_id):
            account = self._ensure(user_id, now_ms)
            if not _claimable(account.last_claim_at, now_ms, interval_ms):
                return False
            account.balance += amount
            account.last_claim_at = now_ms
            account.updated_at = now_ms
            return True


class SqliteStorage(LedgerStorage):
    """Durable balances in a single ``user_tokens`` table.

    Each operation runs in its own ``BEGIN IMMEDIATE`` transaction, so the
    write lock is taken up front and the conditional updates below are the
    serialization point for concurrent callers.
    """

    def __init__(self, database_path: str, default_balance: int = DEFAULT_BALANCE, busy_timeout_sec: float = 30.0) -> None:
        super().__init__(default_balance)
        self.database_path = database_path
        self.busy_timeout_sec = busy_timeout_sec
        self._schema_ready = False

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        try:
            Path(self.database_path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.database_path, timeout=self.busy_timeout_sec, isolation_level=None)
        except (OSError, sqlite3.Error) as exc:
            raise StorageError(f"cannot open ledger database: {exc}") from exc

        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            if not self._schema_ready:
                self._init_schema(conn)
            yield conn
            conn.execute("COMMIT")
        except (sqlite3.Error, OverflowError) as exc:
            if conn.in_transaction:
                conn.rollback()
            raise StorageError(str(exc)) from exc
        except BaseException:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS user_tokens (
              user_id TEXT PRIMARY KEY,
              balance INTEGER NOT NULL DEFAULT {int(self.default_balance)} CHECK (balance >= 0),
              last_claim_at INTEGER NOT NULL DEFAULT 0,
              updated_at INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        self._schema_ready = True

    def _ensure(self, conn: sqlite3.Connection, user_id: str, now_ms: int) -> None:
        conn.execute(
            """
            INSERT INTO user_tokens (user_id, balance, last_claim_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO NOTHING
            """,
            (user_id, self.default_balance, now_ms, now_ms),
        )

    def _balance(self, conn: sqlite3.Connection, user_id: str) -> int:
        row = conn.execute("SELECT balance FROM user_tokens WHERE user_id=?", (user_id,)).fetchone()
        return int(row["balance"])

    def get_or_create(self, user_id: str, now_ms: int) -> UserAccount:
        with self._tx() as conn:
            self._ensure(conn, user_id, now_ms)
            row = conn.execute("SELECT * FROM user_tokens WHERE user_id=?", (user_id,)).fetchone()
        return UserAccount(
            user_id=row["user_id"],
            balance=int(row["balance"]),
            last_claim_at=int(row["last_claim_at"]),
            updated_at=int(row["updated_at"]),
        )

    def add(self, user_id: str, amount: int, now_ms: int) -> int:
        _check_grant(amount)
        with self._tx() as conn:
            self._ensure(conn, user_id, now_ms)
            conn.execute(
                "UPDATE user_tokens SET balance = balance + ?, updated_at = ? WHERE user_id = ?",
                (amount, now_ms, user_id),
            )
            return self._balance(conn, user_id)

    def try_debit(self, user_id: str, now_ms: int) -> bool:
        with self._tx() as conn:
            self._ensure(conn, user_id, now_ms)
            cur = conn.execute(
                "UPDATE user_tokens SET balance = balance - 1, updated_at = ? WHERE user_id = ? AND balance >= 1",
                (now_ms, user_id),
            )
            return cur.rowcount == 1

    def claim_daily(self, user_id: str, now_ms: int, interval_ms: int, amount: int) -> bool:
        with self._tx() as conn:
            self._ensure(conn, user_id, now_ms)
            cur = conn.execute(
                """
                UPDATE user_tokens
                SET balance = balance + ?, last_claim_at = ?, updated_at = ?
                WHERE user_id = ? AND (last_claim_at = 0 OR ? - last_claim_at >= ?)
                """,
                (amount, now_ms, now_ms, user_id, now_ms, interval_ms),
            )
            return cur.rowcount == 1
