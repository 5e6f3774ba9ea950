# wallet.py
# -----------------------------------------------------------------------------
# Coin wallet collaborator. credit_coins() is a read-modify-write on a user's
# balance, so it is serialized per user:
# - MemoryWallet: one lock per user
# - PgWallet: one statement (row lock on users + transaction insert)
# Zero/negative credits are no-ops and leave no transaction row.
# A credit tagged with an attempt_id is applied at most once per attempt.
# -----------------------------------------------------------------------------

import threading
import weakref
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set


class MemoryWallet:
    def __init__(self, balances: Optional[Dict[str, int]] = None):
        self._balances: Dict[str, int] = {str(k): int(v) for k, v in (balances or {}).items()}
        self._transactions: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self._credited: Set[str] = set()
        # entries drop out once no caller holds the lock
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[user_id] = lock
            return lock

    def credit_coins(self, user_id: Any, amount: int, reason: str,
                     attempt_id: Optional[str] = None) -> int:
        uid = str(user_id)
        amount = int(amount)
        with self._lock_for(uid):
            balance = self._balances.get(uid, 0)
            if amount <= 0:
                return balance
            if attempt_id is not None:
                if attempt_id in self._credited:
                    return balance
                self._credited.add(attempt_id)
            balance += amount
            self._balances[uid] = balance
            self._transactions[uid].append({
                "kind": "earned",
                "amount": amount,
                "description": reason,
                "attempt_id": attempt_id,
                "created_at": datetime.now(timezone.utc),
            })
            return balance

    def balance(self, user_id: Any) -> int:
        return self._balances.get(str(user_id), 0)

    def transactions(self, user_id: Any) -> List[Dict[str, Any]]:
        return list(self._transactions.get(str(user_id), []))


class PgWallet:
    """
    Balance in public.users.coins, ledger in public.coin_transactions.
    coin_transactions.attempt_id is UNIQUE, so a repeated credit for the same
    attempt inserts nothing and leaves the balance alone.
    Required deps: fetch_one, execute_returning
    """

    def __init__(self, deps: Dict[str, Callable]):
        self.fetch_one: Callable = deps["fetch_one"]
        self.execute_returning: Callable = deps["execute_returning"]

    def credit_coins(self, user_id: Any, amount: int, reason: str,
                     attempt_id: Optional[str] = None) -> int:
        amount = int(amount)
        if amount <= 0:
            return self.balance(user_id)
        rows = self.execute_returning("""
            WITH usr AS (
                SELECT id FROM public.users WHERE id::text = %s FOR UPDATE
            ), tx AS (
                INSERT INTO public.coin_transactions (user_id, kind, amount, description, attempt_id, created_at)
                SELECT id::text, 'earned', %s, %s, %s, now() FROM usr
                ON CONFLICT (attempt_id) DO NOTHING
                RETURNING user_id
            ), upd AS (
                UPDATE public.users
                   SET coins = COALESCE(coins, 0) + %s
                 WHERE id::text IN (SELECT user_id FROM tx)
             RETURNING coins
            )
            SELECT (SELECT coins FROM upd) AS balance,
                   EXISTS (SELECT 1 FROM tx) AS applied
              FROM usr;
        """, (str(user_id), amount, reason, attempt_id, amount))
        if not rows:
            raise LookupError(f"wallet: user {user_id} not found")
        if not rows[0]["applied"]:
            print(f"[wallet] attempt {attempt_id} already credited to user {user_id}")
            return self.balance(user_id)
        print(f"[wallet] credited {amount} coins to user {user_id}: {reason}")
        return int(rows[0]["balance"])

    def balance(self, user_id: Any) -> int:
        row = self.fetch_one("SELECT coins FROM public.users WHERE id::text = %s;", (str(user_id),))
        return int((row or {}).get("coins") or 0)
