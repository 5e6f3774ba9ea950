"""Exam catalog: definitions loaded from JSON files on disk or from Postgres."""

from __future__ import annotations

import json
import os
import sys
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from exam_models import ExamContentError, ExamDefinition, exam_from_dict

# source checkout first, then the data-files location of an installed build
EXAM_CONTENT_CANDIDATES = (
    Path(__file__).resolve().parent / "exams",
    Path(sys.prefix) / "share" / "academy-exams" / "exams",
)


def default_content_dir(candidates: Iterable[Path] = EXAM_CONTENT_CANDIDATES) -> Path:
    candidates = list(candidates)
    for path in candidates:
        if path.is_dir():
            return path
    return candidates[0]


EXAM_CONTENT_DIR = Path(os.getenv("EXAM_CONTENT_DIR") or default_content_dir())


def _safe_load_json(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except Exception as exc:
        print(f"[exam_content] failed to load '{path}': {exc}")
        return None


def _sorted_exams(exams: Iterable[ExamDefinition]) -> List[ExamDefinition]:
    return sorted(exams, key=lambda e: (e.title.lower(), e.id))


@lru_cache(maxsize=4)
def load_exam_content(directory: str = str(EXAM_CONTENT_DIR)) -> Tuple[ExamDefinition, ...]:
    """Load every *.json exam under directory. Malformed content raises."""

    out: List[ExamDefinition] = []
    root = Path(directory)
    if not root.is_dir():
        print(f"[exam_content] no exam directory at '{root}'")
        return tuple()
    for path in sorted(root.glob("*.json")):
        data = _safe_load_json(path)
        if not isinstance(data, dict):
            continue
        try:
            out.append(exam_from_dict(data))
        except ExamContentError as exc:
            raise ExamContentError(f"{path.name}: {exc}") from exc
    return tuple(_sorted_exams(out))


class MemoryExamCatalog:
    def __init__(self, exams: Iterable[ExamDefinition] = ()):
        self._exams: Dict[str, ExamDefinition] = {e.id: e for e in exams}

    def get_exam(self, exam_id: str) -> Optional[ExamDefinition]:
        return self._exams.get(str(exam_id))

    def list_published_exams(self) -> List[ExamDefinition]:
        return _sorted_exams(e for e in self._exams.values() if e.is_published)


class FileExamCatalog(MemoryExamCatalog):
    def __init__(self, directory: Optional[Path] = None):
        super().__init__(load_exam_content(str(directory or EXAM_CONTENT_DIR)))


class PgExamCatalog:
    """
    Exams in public.exams: one row per exam, the definition document as JSONB.
    Required deps: fetch_one, fetch_all
    """

    def __init__(self, deps: Dict[str, Callable]):
        self.fetch_one: Callable = deps["fetch_one"]
        self.fetch_all: Callable = deps["fetch_all"]

    @staticmethod
    def _from_row(row: Dict[str, Any]) -> ExamDefinition:
        definition = row.get("definition") or {}
        if isinstance(definition, str):
            definition = json.loads(definition)
        definition = dict(definition)
        definition["id"] = str(row["id"])
        if row.get("status"):
            definition["status"] = row["status"]
        return exam_from_dict(definition)

    def get_exam(self, exam_id: str) -> Optional[ExamDefinition]:
        row = self.fetch_one("SELECT id, status, definition FROM public.exams WHERE id = %s;", (str(exam_id),))
        return self._from_row(row) if row else None

    def list_published_exams(self) -> List[ExamDefinition]:
        rows = self.fetch_all("""
            SELECT id, status, definition
              FROM public.exams
             WHERE status = 'Published'
             ORDER BY id;
        """, ())
        return _sorted_exams(self._from_row(r) for r in rows or [])


__all__ = ["load_exam_content", "MemoryExamCatalog", "FileExamCatalog", "PgExamCatalog"]
