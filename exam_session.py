# exam_session.py
# -----------------------------------------------------------------------------
# Live exam session: one state machine value per attempt.
#
#   NOT_STARTED -> IN_PROGRESS -> SUBMITTING -> FINISHED
#                       \              \
#                        +-> ABANDONED <+   (host teardown; draft is kept)
#
# - Every event goes through dispatch(); nothing else mutates SessionState
# - Ticks come from an injected scheduler: call_later(delay, cb) -> handle.cancel()
#   (an asyncio loop satisfies this); the handle is cancelled on every exit
# - Draft saved on each answer edit, cleared only after scoring succeeds
# - Visibility / navigate-away hooks only warn; they never pause the timer
# -----------------------------------------------------------------------------

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from drafts import ABSENT
from exam_models import ExamContentError, ExamDefinition, Question, ScoreResult
from randomizer import OrderFn, randomize_exam

TICK_SECONDS = 1.0


class SessionStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUBMITTING = "submitting"
    FINISHED = "finished"
    ABANDONED = "abandoned"


class InvalidAnswer(ValueError):
    pass


class SessionClosed(RuntimeError):
    pass


# ---- Events -----------------------------------------------------------------
@dataclass(frozen=True)
class Start:
    pass


@dataclass(frozen=True)
class Tick:
    pass


@dataclass(frozen=True)
class AnswerChanged:
    question_id: str
    answer: str


@dataclass(frozen=True)
class VisibilityChanged:
    hidden: bool


@dataclass(frozen=True)
class NavigateAway:
    pass


@dataclass(frozen=True)
class SubmitRequested:
    pass


@dataclass(frozen=True)
class Abandon:
    pass


# ---- State ------------------------------------------------------------------
@dataclass(frozen=True)
class Notice:
    level: str  # info | warning | error | success
    message: str
    retryable: bool = False


@dataclass
class SessionState:
    exam_id: str
    status: SessionStatus = SessionStatus.NOT_STARTED
    questions: List[Question] = field(default_factory=list)
    answers: Dict[str, str] = field(default_factory=dict)
    remaining_seconds: int = 0
    started_at: Optional[float] = None
    finished: bool = False
    draft_restored: bool = False
    timed_out: bool = False
    submission_id: Optional[str] = None
    time_taken: Optional[int] = None
    result: Optional[ScoreResult] = None
    last_error: Optional[str] = None


def format_time(seconds: int) -> str:
    seconds = max(0, int(seconds))
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


class ExamSession:
    """
    Drives one attempt of one exam for one user.

    Required deps:
      draft_store  save/load/clear(user_id, exam_id, ...)
      submit       (exam_id, user_id, username, answers, time_taken, submission_id=...) -> ScoreResult
      scheduler    call_later(delay, callback) -> handle with cancel()
    Optional deps:
      clock        wall-clock seconds (default time.time)
      order        permutation function for the randomizer
      notify       callable(Notice) for user-visible messages
    """

    def __init__(self, exam: ExamDefinition, user_id: Any, username: str, deps: Dict[str, Any]):
        self.exam = exam
        self.user_id = str(user_id)
        self.username = username or ""
        self.draft_store = deps["draft_store"]
        self.submit: Callable[..., ScoreResult] = deps["submit"]
        self.scheduler = deps["scheduler"]
        self.clock: Callable[[], float] = deps.get("clock") or time.time
        self.order: Optional[OrderFn] = deps.get("order")
        self._notify: Optional[Callable[[Notice], None]] = deps.get("notify")

        self._state = SessionState(exam_id=exam.id)
        self._timer = None
        self._submit_in_flight = False
        self.notices: List[Notice] = []

    # ---- read-only views ----------------------------------------------------
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def status(self) -> SessionStatus:
        return self._state.status

    @property
    def remaining_display(self) -> str:
        return format_time(self._state.remaining_seconds)

    @property
    def answered_count(self) -> int:
        return len(self._state.answers)

    # ---- transition function ------------------------------------------------
    def dispatch(self, event: Any) -> Any:
        st = self._state

        if isinstance(event, Start):
            if st.status is not SessionStatus.NOT_STARTED:
                return self._ignored(event)
            return self._start()

        if isinstance(event, Tick):
            if st.status is not SessionStatus.IN_PROGRESS:
                return self._ignored(event)
            return self._tick()

        if isinstance(event, AnswerChanged):
            if st.status is not SessionStatus.IN_PROGRESS:
                raise SessionClosed(f"answers are not accepted while {st.status.value}")
            return self._edit(event.question_id, event.answer)

        if isinstance(event, VisibilityChanged):
            if st.status is SessionStatus.IN_PROGRESS and event.hidden:
                self._emit(Notice("warning", "Switching away from the exam is not allowed. The timer keeps running."))
            return None

        if isinstance(event, NavigateAway):
            if st.status is not SessionStatus.IN_PROGRESS:
                return False
            self._emit(Notice("warning", "Are you sure you want to leave? Your answers are saved, but the timer will continue."))
            return True

        if isinstance(event, SubmitRequested):
            if st.finished or st.status not in (SessionStatus.IN_PROGRESS, SessionStatus.SUBMITTING):
                return self._ignored(event)
            return self._submit(timed_out=False)

        if isinstance(event, Abandon):
            if st.status in (SessionStatus.FINISHED, SessionStatus.ABANDONED):
                return self._ignored(event)
            return self._abandon()

        raise TypeError(f"unknown session event: {event!r}")

    # ---- handlers -----------------------------------------------------------
    def _start(self) -> SessionState:
        if not self.exam.questions:
            raise ExamContentError(f"exam {self.exam.id} has no questions")
        st = self._state
        st.questions = randomize_exam(self.exam, self.order)
        st.remaining_seconds = self.exam.duration_seconds

        known = {q.id for q in st.questions}
        draft = self._load_draft()
        if draft is not ABSENT:
            st.answers = {qid: ans for qid, ans in draft.items() if qid in known}
            st.draft_restored = True
            self._emit(Notice("info", "Unfinished exam draft restored."))

        st.started_at = self.clock()
        st.status = SessionStatus.IN_PROGRESS
        print(f"[exam] session started exam={self.exam.id} user={self.user_id} restored={st.draft_restored}")

        if st.remaining_seconds <= 0:
            self._submit(timed_out=True)
        else:
            self._schedule_tick()
        return st

    def _tick(self) -> int:
        st = self._state
        self._timer = None
        elapsed = max(0.0, self.clock() - (st.started_at or 0.0))
        by_wall_clock = self.exam.duration_seconds - int(elapsed)
        st.remaining_seconds = max(0, min(st.remaining_seconds - 1, by_wall_clock))
        if st.remaining_seconds == 0:
            print(f"[exam] time is up exam={self.exam.id} user={self.user_id}; auto-submitting")
            self._submit(timed_out=True)
        else:
            self._schedule_tick()
        return st.remaining_seconds

    def _edit(self, question_id: str, answer: str) -> Dict[str, str]:
        st = self._state
        qid = str(question_id)
        q = next((x for x in st.questions if x.id == qid), None)
        if q is None:
            raise InvalidAnswer(f"question {qid} is not part of this exam")
        answer = str(answer)
        if q.choices and answer not in q.choices:
            raise InvalidAnswer(f"{answer!r} is not a choice for question {qid}")
        st.answers = {**st.answers, qid: answer}
        self._save_draft(st.answers)
        return st.answers

    def _submit(self, timed_out: bool) -> Optional[ScoreResult]:
        st = self._state
        if self._submit_in_flight:
            return None

        if st.status is SessionStatus.IN_PROGRESS:
            self._cancel_timer()
            st.status = SessionStatus.SUBMITTING
            st.timed_out = timed_out
            st.submission_id = uuid.uuid4().hex
            if timed_out:
                st.remaining_seconds = 0
                st.time_taken = self.exam.duration_seconds
            else:
                elapsed = int(self.clock() - (st.started_at or self.clock()))
                st.time_taken = min(max(0, elapsed), self.exam.duration_seconds)

        self._submit_in_flight = True
        try:
            result = self.submit(
                self.exam.id, self.user_id, self.username,
                dict(st.answers), int(st.time_taken or 0),
                submission_id=st.submission_id,
            )
        except Exception as e:
            st.last_error = str(e) or e.__class__.__name__
            print(f"[exam] submission failed exam={self.exam.id} user={self.user_id}: {st.last_error}")
            self._emit(Notice("error", f"Failed to submit exam: {st.last_error}. Your answers are kept; please retry.",
                              retryable=True))
            return None
        finally:
            self._submit_in_flight = False

        st.result = result
        st.last_error = None
        st.finished = True
        st.status = SessionStatus.FINISHED
        self._clear_draft()
        verdict = "Passed" if result.passed else "Not passed"
        self._emit(Notice("success", f"Exam submitted! Score {result.score}/{result.total_marks} ({verdict}). "
                                     f"You earned {result.coins_earned} coins."))
        return result

    def _abandon(self) -> SessionState:
        st = self._state
        self._cancel_timer()
        st.status = SessionStatus.ABANDONED
        st.questions = []
        st.answers = {}
        print(f"[exam] session abandoned exam={self.exam.id} user={self.user_id}; draft kept")
        return st

    def _ignored(self, event: Any) -> None:
        print(f"[exam] ignored {type(event).__name__} while {self._state.status.value}")
        return None

    # ---- timer --------------------------------------------------------------
    def _schedule_tick(self) -> None:
        self._timer = self.scheduler.call_later(TICK_SECONDS, self._on_timer)

    def _on_timer(self) -> None:
        self.dispatch(Tick())

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    # ---- drafts (best-effort) -------------------------------------------------
    def _load_draft(self):
        try:
            return self.draft_store.load(self.user_id, self.exam.id)
        except Exception as e:
            print(f"[exam] draft load failed: {e}")
            return ABSENT

    def _save_draft(self, answers: Dict[str, str]) -> None:
        try:
            self.draft_store.save(self.user_id, self.exam.id, dict(answers))
        except Exception as e:
            print(f"[exam] draft save failed: {e}")

    def _clear_draft(self) -> None:
        try:
            self.draft_store.clear(self.user_id, self.exam.id)
        except Exception as e:
            print(f"[exam] draft clear failed (stale draft may resurface): {e}")

    def _emit(self, notice: Notice) -> None:
        self.notices.append(notice)
        if self._notify:
            self._notify(notice)
