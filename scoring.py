# scoring.py
# -----------------------------------------------------------------------------
# Grading + reward + the submit entry point.
# - Exact, case-sensitive match per question; full marks or nothing
# - Two reward tiers: pass -> coin_reward; pass with full marks -> + full_marks_bonus
# - submit_exam() appends one AttemptRecord and credits the wallet once,
#   idempotent on submission_id; a retry re-applies a credit that failed
# -----------------------------------------------------------------------------

import os
import threading
import uuid
import weakref
from typing import Any, Callable, Dict, Optional, Tuple

from exam_models import AttemptRecord, ExamDefinition, ExamNotFound, ScoreResult

ENFORCE_ATTEMPT_LIMIT = (os.getenv("EXAM_ENFORCE_ATTEMPT_LIMIT", "1").lower() in ("1", "true", "yes"))


class AttemptLimitReached(Exception):
    def __init__(self, exam_id: str, limit: int):
        super().__init__(f"attempt limit reached ({limit}) for exam {exam_id}")
        self.exam_id = exam_id
        self.limit = limit


def answer_matches(submitted: Optional[str], correct: str) -> bool:
    return submitted is not None and submitted == correct


def score_answers(exam: ExamDefinition, answers: Dict[str, str]) -> Tuple[int, int]:
    answers = answers or {}
    score = 0
    for q in exam.questions:
        if answer_matches(answers.get(q.id), q.correct_answer):
            score += int(q.marks)
    return score, int(exam.total_marks)


def compute_reward(score: int, total_marks: int, pass_marks: int,
                   coin_reward: int, full_marks_bonus: int) -> int:
    if score < pass_marks:
        return 0
    coins = int(coin_reward)
    if score == total_marks:
        coins += int(full_marks_bonus)
    return coins


def reward_reason(exam: ExamDefinition) -> str:
    return f"For completing exam: {exam.title}"


class ScoringService:
    """
    Scores a finished attempt and records it.
    Required deps: catalog (get_exam), attempts (append/count_for/by_submission),
                   wallet (credit_coins)
    Optional deps: on_submitted(record, exam) -> None (activity log)
    """

    def __init__(self, deps: Dict[str, Any], enforce_attempt_limit: Optional[bool] = None):
        self.catalog = deps["catalog"]
        self.attempts = deps["attempts"]
        self.wallet = deps["wallet"]
        self.on_submitted: Optional[Callable] = deps.get("on_submitted")
        self.enforce_attempt_limit = ENFORCE_ATTEMPT_LIMIT if enforce_attempt_limit is None else enforce_attempt_limit
        self._user_locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._user_locks[user_id] = lock
            return lock

    def _get_exam(self, exam_id: str) -> ExamDefinition:
        exam = self.catalog.get_exam(str(exam_id))
        if exam is None:
            raise ExamNotFound(f"exam {exam_id} not found")
        return exam

    @staticmethod
    def _result_of(record: AttemptRecord, exam: ExamDefinition) -> ScoreResult:
        return ScoreResult(
            score=record.score,
            total_marks=record.total_marks,
            coins_earned=record.coins_earned,
            passed=record.score >= exam.pass_marks,
            attempt_id=record.id,
        )

    def _credit(self, record: AttemptRecord, exam: ExamDefinition) -> None:
        # keyed on the attempt id: a no-op when this attempt was already paid
        if record.coins_earned <= 0:
            return
        try:
            self.wallet.credit_coins(record.user_id, record.coins_earned, reward_reason(exam),
                                     attempt_id=record.id)
        except Exception as e:
            print(f"[exam] wallet credit failed for attempt {record.id} ({record.coins_earned} coins): {e}")
            raise

    def attempts_used(self, user_id: str, exam_id: str) -> int:
        return self.attempts.count_for(str(user_id), str(exam_id))

    def can_start(self, user_id: str, exam: ExamDefinition) -> bool:
        if not self.enforce_attempt_limit or exam.attempt_limit <= 0:
            return True
        return self.attempts_used(user_id, exam.id) < exam.attempt_limit

    def submit_exam(self, exam_id: str, user_id: str, username: str,
                    answers: Dict[str, str], time_taken: int,
                    submission_id: Optional[str] = None) -> ScoreResult:
        exam = self._get_exam(exam_id)
        user_id = str(user_id)
        time_taken = int(time_taken)
        if time_taken < 0:
            raise ValueError("time_taken must not be negative")

        with self._lock_for(user_id):
            # Idempotency: a retried submission returns the stored outcome
            prior = self.attempts.by_submission(submission_id) if submission_id else None
            if prior is not None:
                print(f"[exam] duplicate submission {submission_id} for exam {exam.id}; returning stored attempt")
                self._credit(prior, exam)
                return self._result_of(prior, exam)

            if not self.can_start(user_id, exam):
                raise AttemptLimitReached(exam.id, exam.attempt_limit)

            score, total = score_answers(exam, answers)
            coins = compute_reward(score, total, exam.pass_marks, exam.coin_reward, exam.full_marks_bonus)
            record = AttemptRecord(
                id=uuid.uuid4().hex,
                exam_id=exam.id,
                user_id=user_id,
                username=str(username or ""),
                score=score,
                total_marks=total,
                time_taken=time_taken,
                coins_earned=coins,
                submission_id=submission_id or None,
            )
            stored = self.attempts.append(record)
            if stored.id != record.id:
                # another worker stored this submission first
                self._credit(stored, exam)
                return self._result_of(stored, exam)

            self._credit(stored, exam)

        if self.on_submitted:
            try:
                self.on_submitted(stored, exam)
            except Exception as e:
                print(f"[exam] on_submitted hook failed: {e}")

        return self._result_of(stored, exam)
