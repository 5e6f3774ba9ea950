from datetime import datetime, timedelta, timezone

from fakes import PROJECT_ROOT  # noqa: F401

from exam_models import AttemptRecord  # noqa: E402
from leaderboard import best_attempts, leaderboard_rows, rank  # noqa: E402

T0 = datetime(2024, 5, 1, tzinfo=timezone.utc)
_seq = iter(range(10_000))


def _att(user, score, time_taken, exam_id="q1"):
    n = next(_seq)
    return AttemptRecord(
        id=f"a{n}", exam_id=exam_id, user_id=user, username=user.upper(),
        score=score, total_marks=10, time_taken=time_taken, coins_earned=0,
        submitted_at=T0 + timedelta(minutes=n),
    )


def test_equal_scores_rank_faster_first():
    ranked = rank([_att("slow", 8, 120), _att("fast", 8, 90)], "q1")
    assert [a.user_id for a in ranked] == ["fast", "slow"]


def test_best_attempt_per_user_is_highest_score():
    history = [_att("u", 6, 50), _att("u", 9, 80), _att("u", 7, 10)]
    [best] = best_attempts(history, "q1")
    assert best.score == 9


def test_full_tie_keeps_the_earlier_attempt():
    first, second = _att("u", 7, 60), _att("u", 7, 60)
    assert best_attempts([first, second], "q1") == [first]


def test_full_tie_between_users_keeps_history_order():
    history = [_att("b", 5, 30), _att("a", 5, 30), _att("b", 5, 30)]
    assert [a.user_id for a in rank(history, "q1")] == ["b", "a"]


def test_other_exams_are_ignored():
    assert rank([_att("u", 10, 1, exam_id="q2")], "q1") == []


def test_truncates_to_limit_and_numbers_rows():
    history = [_att(f"u{i:02d}", i % 11, 100 - i) for i in range(25)]
    rows = leaderboard_rows(history, "q1", limit=20)
    assert len(rows) == 20
    assert [r["rank"] for r in rows] == list(range(1, 21))
    scores = [(r["score"], -r["time_taken"]) for r in rows]
    assert scores == sorted(scores, reverse=True)
