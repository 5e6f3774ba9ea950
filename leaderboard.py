# leaderboard.py
# Best attempt per user, ranked by score desc then time taken asc; top N.
# Rank is positional and recomputed on every query.

import os
from typing import Any, Dict, Iterable, List, Tuple

from exam_models import AttemptRecord

LEADERBOARD_SIZE = int(os.getenv("EXAM_LEADERBOARD_SIZE") or 20)


def _rank_key(a: AttemptRecord) -> Tuple[int, int]:
    return (-int(a.score), int(a.time_taken))


def is_better(a: AttemptRecord, b: AttemptRecord) -> bool:
    """True when a strictly beats b: higher score, or same score in less time."""
    return _rank_key(a) < _rank_key(b)


def best_attempts(attempts: Iterable[AttemptRecord], exam_id: str) -> List[AttemptRecord]:
    best: Dict[str, AttemptRecord] = {}
    for a in attempts:
        if a.exam_id != str(exam_id):
            continue
        cur = best.get(a.user_id)
        if cur is None or is_better(a, cur):
            best[a.user_id] = a
    # dict keeps the order users first appeared in the history
    return list(best.values())


def rank(attempts: Iterable[AttemptRecord], exam_id: str, limit: int = LEADERBOARD_SIZE) -> List[AttemptRecord]:
    ranked = sorted(best_attempts(attempts, exam_id), key=_rank_key)
    return ranked[:max(0, int(limit))]


def leaderboard_rows(attempts: Iterable[AttemptRecord], exam_id: str,
                     limit: int = LEADERBOARD_SIZE) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for i, a in enumerate(rank(attempts, exam_id, limit), start=1):
        rows.append({
            "rank": i,
            "attempt_id": a.id,
            "user_id": a.user_id,
            "username": a.username,
            "score": a.score,
            "total_marks": a.total_marks,
            "time_taken": a.time_taken,
            "coins_earned": a.coins_earned,
            "submitted_at": a.submitted_at.isoformat(),
        })
    return rows


def get_leaderboard(attempt_store, exam_id: str, limit: int = LEADERBOARD_SIZE) -> List[Dict[str, Any]]:
    return leaderboard_rows(attempt_store.for_exam(exam_id), exam_id, limit)
