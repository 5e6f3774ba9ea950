# exam_models.py
# -----------------------------------------------------------------------------
# Exam content + attempt records.
# - ExamDefinition / Question are read-only for a session (shared across students)
# - AttemptRecord is append-only; built once by the scoring service
# - Row/dict converters accept both snake_case (DB rows) and camelCase (JSON)
# -----------------------------------------------------------------------------

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

class ExamContentError(ValueError):
    """Exam authored in a way the engine cannot run (no questions, bad answer key)."""

class ExamNotFound(LookupError):
    pass

class QuestionType(str, Enum):
    MULTIPLE_CHOICE = "MultipleChoice"
    TRUE_FALSE = "TrueFalse"

    @classmethod
    def parse(cls, raw: Any) -> "QuestionType":
        s = str(raw or "").replace(" ", "").replace("/", "").replace("_", "").lower()
        if s in ("multiplechoice", "mcq"):
            return cls.MULTIPLE_CHOICE
        if s in ("truefalse", "tf"):
            return cls.TRUE_FALSE
        raise ExamContentError(f"unknown question type: {raw!r}")

TRUE_FALSE_CHOICES: Tuple[str, str] = ("True", "False")

EXAM_STATUSES = ("Draft", "Published", "Archived")

@dataclass(frozen=True)
class Question:
    id: str
    text: str
    type: QuestionType
    correct_answer: str
    marks: int
    options: Tuple[str, ...] = ()

    @property
    def choices(self) -> Tuple[str, ...]:
        """What the student can pick from; True/False questions carry no authored options."""
        if self.type is QuestionType.TRUE_FALSE and not self.options:
            return TRUE_FALSE_CHOICES
        return self.options

    def validate(self) -> None:
        if not self.id:
            raise ExamContentError("question without id")
        if int(self.marks) <= 0:
            raise ExamContentError(f"question {self.id}: marks must be positive")
        if self.options and self.correct_answer not in self.options:
            raise ExamContentError(f"question {self.id}: correct answer is not one of its options")
        if self.type is QuestionType.TRUE_FALSE and self.correct_answer not in TRUE_FALSE_CHOICES:
            raise ExamContentError(f"question {self.id}: true/false answer must be 'True' or 'False'")

@dataclass(frozen=True)
class ExamDefinition:
    id: str
    title: str
    duration_minutes: int
    total_marks: int
    pass_marks: int
    questions: Tuple[Question, ...]
    coin_reward: int = 0
    full_marks_bonus: int = 0
    attempt_limit: int = 0  # 0 = unlimited
    description: str = ""
    course_id: Optional[str] = None
    status: str = "Published"

    @property
    def duration_seconds(self) -> int:
        return int(self.duration_minutes) * 60

    @property
    def is_published(self) -> bool:
        return self.status == "Published"

    def question(self, question_id: str) -> Optional[Question]:
        for q in self.questions:
            if q.id == question_id:
                return q
        return None

    def validate(self) -> "ExamDefinition":
        if not self.questions:
            raise ExamContentError(f"exam {self.id} has no questions")
        seen = set()
        for q in self.questions:
            q.validate()
            if q.id in seen:
                raise ExamContentError(f"exam {self.id}: duplicate question id {q.id}")
            seen.add(q.id)
        if self.duration_minutes <= 0:
            raise ExamContentError(f"exam {self.id}: duration must be positive")
        return self

@dataclass(frozen=True)
class ScoreResult:
    score: int
    total_marks: int
    coins_earned: int
    passed: bool
    attempt_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "total_marks": self.total_marks,
            "coins_earned": self.coins_earned,
            "passed": self.passed,
            "attempt_id": self.attempt_id,
        }

@dataclass(frozen=True)
class AttemptRecord:
    id: str
    exam_id: str
    user_id: str
    username: str
    score: int
    total_marks: int
    time_taken: int
    coins_earned: int
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    submission_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["submitted_at"] = self.submitted_at.isoformat()
        return d

# -----------------------------------------------------------------------------
# Converters
# -----------------------------------------------------------------------------
def _pick(d: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for k in keys:
        if k in d and d[k] is not None:
            return d[k]
    return default

def question_from_dict(d: Dict[str, Any]) -> Question:
    options = _pick(d, "options", default=[]) or []
    if not isinstance(options, (list, tuple)):
        raise ExamContentError(f"question {d.get('id')}: options must be a list")
    return Question(
        id=str(_pick(d, "id", default="")),
        text=str(_pick(d, "text", "question_text", "questionText", default="")),
        type=QuestionType.parse(_pick(d, "type", "question_type", "questionType")),
        correct_answer=str(_pick(d, "correct_answer", "correctAnswer", default="")),
        marks=int(_pick(d, "marks", "points", default=0)),
        options=tuple(str(o) for o in options),
    )

def exam_from_dict(d: Dict[str, Any]) -> ExamDefinition:
    """Build (and validate) an exam from a JSON document or a DB row's definition."""
    if isinstance(d, str):
        d = json.loads(d)
    questions = tuple(question_from_dict(q) for q in (_pick(d, "questions", default=[]) or []))
    total = _pick(d, "total_marks", "totalMarks")
    exam = ExamDefinition(
        id=str(_pick(d, "id", default="")),
        title=str(_pick(d, "title", default="")),
        duration_minutes=int(_pick(d, "duration_minutes", "duration", default=0)),
        total_marks=int(total) if total is not None else sum(q.marks for q in questions),
        pass_marks=int(_pick(d, "pass_marks", "passMarks", default=0)),
        questions=questions,
        coin_reward=int(_pick(d, "coin_reward", "coinReward", default=0)),
        full_marks_bonus=int(_pick(d, "full_marks_bonus", "fullMarksBonus", default=0)),
        attempt_limit=int(_pick(d, "attempt_limit", "attemptLimit", default=0)),
        description=str(_pick(d, "description", default="")),
        course_id=_pick(d, "course_id", "courseId"),
        status=str(_pick(d, "status", default="Published")),
    )
    return exam.validate()

def exam_to_public_dict(exam: ExamDefinition) -> Dict[str, Any]:
    """Exam payload for the student: everything needed to sit the exam, minus the answer key."""
    return {
        "id": exam.id,
        "title": exam.title,
        "description": exam.description,
        "course_id": exam.course_id,
        "duration_minutes": exam.duration_minutes,
        "total_marks": exam.total_marks,
        "pass_marks": exam.pass_marks,
        "coin_reward": exam.coin_reward,
        "full_marks_bonus": exam.full_marks_bonus,
        "attempt_limit": exam.attempt_limit,
        "status": exam.status,
        "questions": [
            {
                "id": q.id,
                "text": q.text,
                "type": q.type.value,
                "options": list(q.choices),
                "marks": q.marks,
            }
            for q in exam.questions
        ],
    }

def exam_summary_dict(exam: ExamDefinition) -> Dict[str, Any]:
    return {
        "id": exam.id,
        "title": exam.title,
        "description": exam.description,
        "course_id": exam.course_id,
        "duration_minutes": exam.duration_minutes,
        "total_marks": exam.total_marks,
        "coin_reward": exam.coin_reward,
        "num_questions": len(exam.questions),
    }

def attempt_from_row(row: Dict[str, Any]) -> AttemptRecord:
    submitted_at = row.get("submitted_at")
    if isinstance(submitted_at, str):
        submitted_at = datetime.fromisoformat(submitted_at)
    return AttemptRecord(
        id=str(row["id"]),
        exam_id=str(row["exam_id"]),
        user_id=str(row["user_id"]),
        username=str(row.get("username") or ""),
        score=int(row.get("score") or 0),
        total_marks=int(row.get("total_marks") or 0),
        time_taken=int(row.get("time_taken") or 0),
        coins_earned=int(row.get("coins_earned") or 0),
        submitted_at=submitted_at or datetime.now(timezone.utc),
        submission_id=row.get("submission_id"),
    )

def exam_from_public_dict(d: Dict[str, Any]) -> ExamDefinition:
    """Exam as a remote client sees it: no answer key, so only the shape is checked."""
    questions = tuple(
        Question(
            id=str(q["id"]),
            text=str(q.get("text") or ""),
            type=QuestionType.parse(q.get("type")),
            correct_answer="",
            marks=int(q.get("marks") or 0),
            options=tuple(str(o) for o in (q.get("options") or [])),
        )
        for q in (d.get("questions") or [])
    )
    return ExamDefinition(
        id=str(d["id"]),
        title=str(d.get("title") or ""),
        duration_minutes=int(d.get("duration_minutes") or 0),
        total_marks=int(d.get("total_marks") or 0),
        pass_marks=int(d.get("pass_marks") or 0),
        questions=questions,
        coin_reward=int(d.get("coin_reward") or 0),
        full_marks_bonus=int(d.get("full_marks_bonus") or 0),
        attempt_limit=int(d.get("attempt_limit") or 0),
        description=str(d.get("description") or ""),
        course_id=d.get("course_id"),
        status=str(d.get("status") or "Published"),
    )
