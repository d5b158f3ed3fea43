import sqlite3
from concurrent.futures import ThreadPoolExecutor

import pytest

from deobf_service.errors import StorageError
from deobf_service.storage import MAX_GRANT, MemoryStorage, SqliteStorage

NOW = 1_700_000_000_000
DAY = 24 * 60 * 60 * 1000


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        return MemoryStorage()
    return SqliteStorage(str(tmp_path / "ledger.db"))


def test_account_created_lazily_with_defaults(storage) -> None:
    acct = storage.get_or_create("u1", NOW)
    assert acct.balance == 3
    assert acct.last_claim_at == NOW
    assert storage.get_or_create("u1", NOW + 5).balance == 3


def test_add_returns_new_balance(storage) -> None:
    assert storage.add("u1", 7, NOW) == 10
    assert storage.get_or_create("u1", NOW).balance == 10


@pytest.mark.parametrize("amount", [0, MAX_GRANT + 1, 2**63])
def test_add_rejects_out_of_range_amounts(storage, amount) -> None:
    with pytest.raises(ValueError):
        storage.add("u1", amount, NOW)
    assert storage.get_or_create("u1", NOW).balance == 3


def test_add_accepts_the_largest_grant(storage) -> None:
    assert storage.add("u1", MAX_GRANT, NOW) == MAX_GRANT + 3


def test_debit_stops_at_zero(storage) -> None:
    results = [storage.try_debit("u1", NOW) for _ in range(5)]
    assert results == [True, True, True, False, False]
    assert storage.get_or_create("u1", NOW).balance == 0


def test_claim_respects_interval(storage) -> None:
    storage.get_or_create("u1", NOW)
    assert storage.claim_daily("u1", NOW + DAY - 1, DAY, 2) is False
    assert storage.claim_daily("u1", NOW + DAY, DAY, 2) is True
    assert storage.claim_daily("u1", NOW + DAY + 1, DAY, 2) is False
    acct = storage.get_or_create("u1", NOW)
    assert acct.balance == 5
    assert acct.last_claim_at == NOW + DAY


@pytest.mark.parametrize("start,calls", [(0, 5), (3, 20), (10, 4)])
def test_concurrent_debits_never_overspend(storage, start, calls) -> None:
    storage.default_balance = start
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: storage.try_debit("u1", NOW), range(calls)))

    assert sum(results) == min(calls, start)
    assert storage.get_or_create("u1", NOW).balance == max(0, start - calls)


def test_concurrent_claims_apply_once(storage) -> None:
    storage.get_or_create("u1", NOW)
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: storage.claim_daily("u1", NOW + DAY, DAY, 2), range(12)))

    assert sum(results) == 1
    assert storage.get_or_create("u1", NOW).balance == 5


def test_sqlite_state_is_durable(tmp_path) -> None:
    path = str(tmp_path / "ledger.db")
    SqliteStorage(path).add("u1", 4, NOW)
    assert SqliteStorage(path).get_or_create("u1", NOW).balance == 7


def test_sqlite_row_without_claim_is_claimable(tmp_path) -> None:
    path = str(tmp_path / "ledger.db")
    storage = SqliteStorage(path)
    storage.get_or_create("someone-else", NOW)
    with sqlite3.connect(path) as conn:
        conn.execute("INSERT INTO user_tokens (user_id) VALUES ('legacy')")

    assert storage.claim_daily("legacy", NOW, DAY, 2) is True
    assert storage.get_or_create("legacy", NOW).balance == 5


def test_sqlite_open_failure_is_storage_error(tmp_path) -> None:
    storage = SqliteStorage(str(tmp_path))
    with pytest.raises(StorageError):
        storage.get_or_create("u1", NOW)
