# randomizer.py
# Per-session presentation order: questions shuffled, MCQ options shuffled
# independently. The ExamDefinition is shared, so nothing here mutates it.

import random
from dataclasses import replace
from typing import Callable, List, Optional, Sequence, TypeVar

from exam_models import ExamDefinition, Question, QuestionType

T = TypeVar("T")

OrderFn = Callable[[Sequence[T]], List[T]]


def random_order(items: Sequence[T]) -> List[T]:
    rng = random.Random()
    return rng.sample(list(items), len(items))


def seeded_order(seed: int) -> OrderFn:
    """Reproducible permutation source; one RNG stream shared by every call."""
    rng = random.Random(seed)

    def _order(items: Sequence[T]) -> List[T]:
        return rng.sample(list(items), len(items))

    return _order


def identity_order(items: Sequence[T]) -> List[T]:
    return list(items)


def randomize_exam(exam: ExamDefinition, order: Optional[OrderFn] = None) -> List[Question]:
    order = order or random_order
    out: List[Question] = []
    for q in order(exam.questions):
        if q.type is QuestionType.MULTIPLE_CHOICE and q.options:
            q = replace(q, options=tuple(order(q.options)))
        out.append(q)
    return out
