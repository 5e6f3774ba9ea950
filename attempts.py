# attempts.py
# Append-only attempt history. Records are never updated after insert.

import threading
from typing import Any, Callable, Dict, List, Optional

from exam_models import AttemptRecord, attempt_from_row


class MemoryAttemptStore:
    def __init__(self, records: Optional[List[AttemptRecord]] = None):
        self._records: List[AttemptRecord] = list(records or [])
        self._lock = threading.Lock()

    def append(self, record: AttemptRecord) -> AttemptRecord:
        with self._lock:
            prior = self.by_submission(record.submission_id) if record.submission_id else None
            if prior is not None:
                return prior
            self._records.append(record)
        return record

    def for_exam(self, exam_id: str) -> List[AttemptRecord]:
        return [r for r in self._records if r.exam_id == str(exam_id)]

    def for_user(self, user_id: str) -> List[AttemptRecord]:
        rows = [(r.submitted_at, i, r) for i, r in enumerate(self._records) if r.user_id == str(user_id)]
        return [r for _, _, r in sorted(rows, key=lambda t: (t[0], t[1]), reverse=True)]

    def count_for(self, user_id: str, exam_id: str) -> int:
        return sum(1 for r in self._records if r.user_id == str(user_id) and r.exam_id == str(exam_id))

    def by_submission(self, submission_id: str) -> Optional[AttemptRecord]:
        if not submission_id:
            return None
        for r in self._records:
            if r.submission_id == submission_id:
                return r
        return None


_ATTEMPT_COLUMNS = """
    id, exam_id, user_id, username, score, total_marks,
    time_taken, coins_earned, submitted_at, submission_id
"""


class PgAttemptStore:
    """
    Attempts in public.exam_attempts (id is the service-issued uid; seq gives insertion order).
    Required deps: fetch_one, fetch_all, execute_returning
    """

    def __init__(self, deps: Dict[str, Callable]):
        self.fetch_one: Callable = deps["fetch_one"]
        self.fetch_all: Callable = deps["fetch_all"]
        self.execute_returning: Callable = deps["execute_returning"]

    def append(self, record: AttemptRecord) -> AttemptRecord:
        # submission_id is UNIQUE; a concurrent duplicate returns the row already stored
        rows = self.execute_returning(f"""
            WITH ins AS (
                INSERT INTO public.exam_attempts
                    (id, exam_id, user_id, username, score, total_marks,
                     time_taken, coins_earned, submitted_at, submission_id)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (submission_id) DO NOTHING
                RETURNING {_ATTEMPT_COLUMNS}
            )
            SELECT {_ATTEMPT_COLUMNS} FROM ins
            UNION ALL
            SELECT {_ATTEMPT_COLUMNS} FROM public.exam_attempts
             WHERE submission_id = %s AND NOT EXISTS (SELECT 1 FROM ins)
            LIMIT 1;
        """, (record.id, record.exam_id, record.user_id, record.username, record.score, record.total_marks,
              record.time_taken, record.coins_earned, record.submitted_at, record.submission_id,
              record.submission_id))
        return attempt_from_row(rows[0]) if rows else record

    def for_exam(self, exam_id: str) -> List[AttemptRecord]:
        rows = self.fetch_all(f"""
            SELECT {_ATTEMPT_COLUMNS}
              FROM public.exam_attempts
             WHERE exam_id = %s
             ORDER BY seq ASC;
        """, (str(exam_id),))
        return [attempt_from_row(r) for r in rows or []]

    def for_user(self, user_id: str) -> List[AttemptRecord]:
        rows = self.fetch_all(f"""
            SELECT {_ATTEMPT_COLUMNS}
              FROM public.exam_attempts
             WHERE user_id = %s
             ORDER BY submitted_at DESC, seq DESC;
        """, (str(user_id),))
        return [attempt_from_row(r) for r in rows or []]

    def count_for(self, user_id: str, exam_id: str) -> int:
        row = self.fetch_one("""
            SELECT COUNT(*) AS n
              FROM public.exam_attempts
             WHERE user_id = %s AND exam_id = %s;
        """, (str(user_id), str(exam_id)))
        return int((row or {}).get("n") or 0)

    def by_submission(self, submission_id: str) -> Optional[AttemptRecord]:
        if not submission_id:
            return None
        row = self.fetch_one(f"""
            SELECT {_ATTEMPT_COLUMNS}
              FROM public.exam_attempts
             WHERE submission_id = %s
             LIMIT 1;
        """, (submission_id,))
        return attempt_from_row(row) if row else None


def attempt_payload(record: AttemptRecord, rank: Optional[int] = None) -> Dict[str, Any]:
    d = record.to_dict()
    if rank is not None:
        d["rank"] = rank
    return d
