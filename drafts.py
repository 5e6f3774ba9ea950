# drafts.py
# -----------------------------------------------------------------------------
# Draft answers persisted against reload/crash, keyed by (user, exam).
# - save() always replaces the whole map (no field merge)
# - load() returns ABSENT when nothing is stored (distinct from an empty map)
# - last write wins per key; two sessions on the same key are not merged
# -----------------------------------------------------------------------------

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

DRAFT_KEY_PREFIX = (os.getenv("EXAM_DRAFT_KEY_PREFIX") or "exam-draft").strip()


class _Absent:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT = _Absent()

Answers = Dict[str, str]
DraftResult = Union[Answers, _Absent]


def draft_key(user_id: Any, exam_id: Any, prefix: Optional[str] = None) -> str:
    return f"{prefix or DRAFT_KEY_PREFIX}-{user_id}-{exam_id}"


def _clean_answers(answers: Dict[Any, Any]) -> Answers:
    return {str(k): str(v) for k, v in (answers or {}).items() if v is not None}


class MemoryDraftStore:
    def __init__(self, prefix: Optional[str] = None):
        self.prefix = prefix
        self._data: Dict[str, Answers] = {}

    def save(self, user_id: Any, exam_id: Any, answers: Dict[str, str]) -> None:
        self._data[draft_key(user_id, exam_id, self.prefix)] = _clean_answers(answers)

    def load(self, user_id: Any, exam_id: Any) -> DraftResult:
        found = self._data.get(draft_key(user_id, exam_id, self.prefix))
        return dict(found) if found is not None else ABSENT

    def clear(self, user_id: Any, exam_id: Any) -> None:
        self._data.pop(draft_key(user_id, exam_id, self.prefix), None)


class FileDraftStore:
    """One JSON file per draft key; written via temp file + rename so a crash never leaves half a draft."""

    def __init__(self, directory: Union[str, Path], prefix: Optional[str] = None):
        self.directory = Path(directory)
        self.prefix = prefix

    def _path(self, user_id: Any, exam_id: Any) -> Path:
        return self.directory / f"{draft_key(user_id, exam_id, self.prefix)}.json"

    def save(self, user_id: Any, exam_id: Any, answers: Dict[str, str]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(user_id, exam_id)
        body = json.dumps({"answers": _clean_answers(answers)}, ensure_ascii=False)
        fd, tmp = tempfile.mkstemp(dir=str(self.directory), prefix=".draft-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(body)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def load(self, user_id: Any, exam_id: Any) -> DraftResult:
        path = self._path(user_id, exam_id)
        try:
            with path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return ABSENT
        except ValueError as e:
            print(f"[drafts] unreadable draft '{path}': {e}")
            return ABSENT
        return _clean_answers((data or {}).get("answers") or {})

    def clear(self, user_id: Any, exam_id: Any) -> None:
        try:
            self._path(user_id, exam_id).unlink()
        except FileNotFoundError:
            pass


class PgDraftStore:
    """
    Drafts in public.exam_drafts, one row per draft_key.
    Required deps: fetch_one, execute
    """

    def __init__(self, deps: Dict[str, Callable], prefix: Optional[str] = None):
        self.fetch_one: Callable = deps["fetch_one"]
        self.execute: Callable = deps["execute"]
        self.prefix = prefix

    def save(self, user_id: Any, exam_id: Any, answers: Dict[str, str]) -> None:
        self.execute("""
            INSERT INTO public.exam_drafts (draft_key, user_id, exam_id, answers, updated_at)
            VALUES (%s, %s, %s, %s::jsonb, now())
            ON CONFLICT (draft_key)
            DO UPDATE SET answers = EXCLUDED.answers, updated_at = now();
        """, (draft_key(user_id, exam_id, self.prefix), str(user_id), str(exam_id),
              json.dumps(_clean_answers(answers), ensure_ascii=False)))

    def load(self, user_id: Any, exam_id: Any) -> DraftResult:
        row = self.fetch_one("""
            SELECT answers
              FROM public.exam_drafts
             WHERE draft_key = %s;
        """, (draft_key(user_id, exam_id, self.prefix),))
        if not row:
            return ABSENT
        answers = row.get("answers")
        if isinstance(answers, str):
            answers = json.loads(answers)
        return _clean_answers(answers or {})

    def clear(self, user_id: Any, exam_id: Any) -> None:
        self.execute("DELETE FROM public.exam_drafts WHERE draft_key = %s;",
                     (draft_key(user_id, exam_id, self.prefix),))
