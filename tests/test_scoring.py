import pytest

from fakes import physics_exam

from attempts import MemoryAttemptStore  # noqa: E402
from exam_content_loader import MemoryExamCatalog  # noqa: E402
from exam_models import ExamNotFound  # noqa: E402
from scoring import (  # noqa: E402
    AttemptLimitReached, ScoringService, answer_matches, compute_reward, score_answers,
)
from wallet import MemoryWallet  # noqa: E402

FULL = {"q1-1": "Newton", "q1-2": "True"}


def _service(exam=None, wallet=None, **extra):
    deps = {
        "catalog": MemoryExamCatalog([exam or physics_exam()]),
        "attempts": MemoryAttemptStore(),
        "wallet": wallet or MemoryWallet(),
    }
    deps.update(extra)
    return ScoringService(deps, enforce_attempt_limit=True), deps


def test_answer_matching_is_exact():
    assert answer_matches("Newton", "Newton")
    assert not answer_matches("newton", "Newton")
    assert not answer_matches(None, "Newton")


def test_scoring_ignores_presentation_order_and_unanswered():
    exam = physics_exam()
    assert score_answers(exam, FULL) == (10, 10)
    assert score_answers(exam, dict(reversed(list(FULL.items())))) == (10, 10)
    assert score_answers(exam, {"q1-1": "Newton"}) == (5, 10)
    assert score_answers(exam, {}) == (0, 10)


@pytest.mark.parametrize("score,coins", [(4, 0), (5, 10), (9, 10), (10, 15)])
def test_reward_tiers(score, coins):
    assert compute_reward(score, 10, 5, 10, 5) == coins


def test_submit_records_attempt_and_credits_wallet():
    svc, deps = _service()
    result = svc.submit_exam("q1", "u1", "alice", FULL, 95, submission_id="s-1")

    assert (result.score, result.total_marks, result.coins_earned, result.passed) == (10, 10, 15, True)
    [rec] = deps["attempts"].for_exam("q1")
    assert rec.id == result.attempt_id
    assert rec.time_taken == 95
    assert deps["wallet"].balance("u1") == 15
    [tx] = deps["wallet"].transactions("u1")
    assert tx["description"] == "For completing exam: Physics Chapter 1 Quiz"


def test_failed_attempt_writes_no_coin_transaction():
    svc, deps = _service()
    result = svc.submit_exam("q1", "u1", "alice", {"q1-1": "Watt"}, 30)
    assert (result.score, result.coins_earned, result.passed) == (0, 0, False)
    assert deps["wallet"].transactions("u1") == []


def test_resubmitting_same_submission_is_idempotent():
    svc, deps = _service()
    first = svc.submit_exam("q1", "u1", "alice", FULL, 60, submission_id="s-1")
    second = svc.submit_exam("q1", "u1", "alice", FULL, 60, submission_id="s-1")

    assert first == second
    assert len(deps["attempts"].for_exam("q1")) == 1
    assert deps["wallet"].balance("u1") == 15


def test_attempt_limit_enforced():
    svc, _ = _service()
    svc.submit_exam("q1", "u1", "alice", FULL, 60, submission_id="s-1")
    with pytest.raises(AttemptLimitReached):
        svc.submit_exam("q1", "u1", "alice", FULL, 60, submission_id="s-2")
    # other users are unaffected
    assert svc.submit_exam("q1", "u2", "bob", FULL, 60).score == 10


def test_zero_attempt_limit_is_unlimited():
    svc, deps = _service(physics_exam(attempt_limit=0))
    for i in range(3):
        svc.submit_exam("q1", "u1", "alice", FULL, 60, submission_id=f"s-{i}")
    assert deps["attempts"].count_for("u1", "q1") == 3


def test_unknown_exam_and_negative_time():
    svc, _ = _service()
    with pytest.raises(ExamNotFound):
        svc.submit_exam("nope", "u1", "alice", FULL, 10)
    with pytest.raises(ValueError):
        svc.submit_exam("q1", "u1", "alice", FULL, -1)


def test_wallet_failure_propagates():
    class BrokenWallet:
        def credit_coins(self, user_id, amount, reason, attempt_id=None):
            raise RuntimeError("wallet down")

    svc, _ = _service(wallet=BrokenWallet())
    with pytest.raises(RuntimeError, match="wallet down"):
        svc.submit_exam("q1", "u1", "alice", FULL, 60)


class FlakyWallet(MemoryWallet):
    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    def credit_coins(self, user_id, amount, reason, attempt_id=None):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("wallet down")
        return super().credit_coins(user_id, amount, reason, attempt_id=attempt_id)


def test_retry_after_wallet_failure_credits_once():
    wallet = FlakyWallet()
    svc, deps = _service(wallet=wallet)
    with pytest.raises(RuntimeError):
        svc.submit_exam("q1", "u1", "alice", FULL, 60, submission_id="s-1")
    assert wallet.balance("u1") == 0

    retried = svc.submit_exam("q1", "u1", "alice", FULL, 60, submission_id="s-1")
    again = svc.submit_exam("q1", "u1", "alice", FULL, 60, submission_id="s-1")

    assert retried == again
    assert retried.coins_earned == 15
    assert wallet.balance("u1") == 15
    assert len(wallet.transactions("u1")) == 1
    assert len(deps["attempts"].for_exam("q1")) == 1


def test_user_locks_do_not_accumulate():
    svc, _ = _service(physics_exam(attempt_limit=0))
    for n in range(10):
        svc.submit_exam("q1", f"u{n}", "someone", FULL, 60)
    assert len(svc._user_locks) == 0


def test_on_submitted_hook_errors_are_logged_not_raised(capsys):
    seen = []

    def hook(record, exam):
        seen.append(record.id)
        raise RuntimeError("activity table missing")

    svc, _ = _service(on_submitted=hook)
    result = svc.submit_exam("q1", "u1", "alice", FULL, 60)
    assert seen == [result.attempt_id]
    assert "on_submitted hook failed" in capsys.readouterr().out
