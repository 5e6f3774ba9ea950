import threading

import pytest

from fakes import PROJECT_ROOT  # noqa: F401

from wallet import MemoryWallet, PgWallet  # noqa: E402


def test_concurrent_credits_are_not_lost():
    wallet = MemoryWallet({"u1": 5})

    def worker():
        for _ in range(50):
            wallet.credit_coins("u1", 1, "For completing exam: X")

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert wallet.balance("u1") == 405
    assert len(wallet.transactions("u1")) == 400


def test_zero_credit_is_a_noop():
    wallet = MemoryWallet({"u1": 3})
    assert wallet.credit_coins("u1", 0, "nothing") == 3
    assert wallet.transactions("u1") == []


def test_credit_for_the_same_attempt_applies_once():
    wallet = MemoryWallet({"u1": 0})
    assert wallet.credit_coins("u1", 15, "For completing exam: X", attempt_id="a1") == 15
    assert wallet.credit_coins("u1", 15, "For completing exam: X", attempt_id="a1") == 15
    assert wallet.credit_coins("u1", 10, "For completing exam: Y", attempt_id="a2") == 25
    assert [t["attempt_id"] for t in wallet.transactions("u1")] == ["a1", "a2"]


def test_user_locks_are_released_after_use():
    wallet = MemoryWallet()
    for n in range(20):
        wallet.credit_coins(f"u{n}", 1, "x")
    assert len(wallet._locks) == 0


class FakeDB:
    def __init__(self, coins=None):
        self.coins = dict(coins or {})
        self.ledger = set()
        self.statements = []

    def fetch_one(self, sql, params=()):
        if params[0] in self.coins:
            return {"coins": self.coins[params[0]]}
        return None

    def execute_returning(self, sql, params=()):
        self.statements.append((sql, params))
        user_id, amount, _reason, attempt_id = params[0], params[1], params[2], params[3]
        if user_id not in self.coins:
            return []
        if attempt_id is not None and attempt_id in self.ledger:
            return [{"balance": None, "applied": False}]
        if attempt_id is not None:
            self.ledger.add(attempt_id)
        self.coins[user_id] += amount
        return [{"balance": self.coins[user_id], "applied": True}]


def test_pg_wallet_updates_balance_and_ledger_in_one_statement():
    db = FakeDB({"7": 10})
    wallet = PgWallet({"fetch_one": db.fetch_one, "execute_returning": db.execute_returning})
    assert wallet.credit_coins(7, 15, "For completing exam: Physics Chapter 1 Quiz", attempt_id="a1") == 25

    [(sql, params)] = db.statements
    assert "UPDATE public.users" in sql and "INSERT INTO public.coin_transactions" in sql
    assert "ON CONFLICT (attempt_id) DO NOTHING" in sql
    assert params == ("7", 15, "For completing exam: Physics Chapter 1 Quiz", "a1", 15)


def test_pg_wallet_repeat_attempt_credit_keeps_balance():
    db = FakeDB({"7": 10})
    wallet = PgWallet({"fetch_one": db.fetch_one, "execute_returning": db.execute_returning})
    wallet.credit_coins(7, 15, "For completing exam: Physics Chapter 1 Quiz", attempt_id="a1")
    assert wallet.credit_coins(7, 15, "For completing exam: Physics Chapter 1 Quiz", attempt_id="a1") == 25
    assert db.coins["7"] == 25


def test_pg_wallet_unknown_user():
    db = FakeDB()
    wallet = PgWallet({"fetch_one": db.fetch_one, "execute_returning": db.execute_returning})
    with pytest.raises(LookupError):
        wallet.credit_coins("ghost", 5, "x")
    assert wallet.credit_coins("ghost", 0, "x") == 0
