import logging
import time
from collections.abc import Callable

from deobf_service.config import Settings
from deobf_service.errors import StorageError
from deobf_service.storage import MAX_GRANT, LedgerStorage, MemoryStorage, SqliteStorage

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


class TokenLedger:
    """Spendable tokens per user with a rolling daily top-up.

    Store failures on the read and spend paths are logged and treated as
    "no tokens" (a zero balance, a refused debit, no claim). Grants are
    administrative and raise instead.
    """

    def __init__(
        self,
        storage: LedgerStorage,
        clock: Callable[[], int] = _now_ms,
        daily_amount: int = 2,
        claim_interval_ms: int = DAY_MS,
    ) -> None:
        self.storage = storage
        self.clock = clock
        self.daily_amount = daily_amount
        self.claim_interval_ms = claim_interval_ms

    def get_balance(self, user_id: str) -> int:
        try:
            return self.storage.get_or_create(user_id, self.clock()).balance
        except StorageError:
            logger.exception("Ledger read failed for user %s, reporting zero balance", user_id)
            return 0

    def grant(self, user_id: str, amount: int) -> int:
        if not 0 < amount <= MAX_GRANT:
            raise ValueError(f"amount must be between 1 and {MAX_GRANT}")
        balance = self.storage.add(user_id, amount, self.clock())
        logger.info("Granted %d tokens to user %s (balance %d)", amount, user_id, balance)
        return balance

    def claim_daily(self, user_id: str) -> bool:
        try:
            claimed = self.storage.claim_daily(user_id, self.clock(), self.claim_interval_ms, self.daily_amount)
        except StorageError:
            logger.exception("Daily claim failed for user %s", user_id)
            return False
        if claimed:
            logger.info("User %s claimed %d daily tokens", user_id, self.daily_amount)
        return claimed

    def try_debit(self, user_id: str) -> bool:
        try:
            return self.storage.try_debit(user_id, self.clock())
        except StorageError:
            logger.exception("Debit failed for user %s", user_id)
            return False


def build_storage(cfg: Settings) -> LedgerStorage:
    backend = cfg.ledger_backend.lower().strip()
    if backend == "sqlite":
        return SqliteStorage(cfg.database_path, default_balance=cfg.starting_balance)
    if backend == "memory":
        logger.warning("Using in-memory ledger, balances are lost on restart")
        return MemoryStorage(default_balance=cfg.starting_balance)
    raise ValueError(f"Unsupported LEDGER_BACKEND: {backend}")


def build_ledger(cfg: Settings) -> TokenLedger:
    return TokenLedger(
        build_storage(cfg),
        daily_amount=cfg.daily_claim_amount,
        claim_interval_ms=cfg.daily_claim_interval_hours * 60 * 60 * 1000,
    )
