import json

import pytest

from fakes import PROJECT_ROOT, physics_exam

from exam_models import (  # noqa: E402
    ExamContentError, QuestionType, exam_from_dict, exam_from_public_dict, exam_to_public_dict,
)
from exam_content_loader import MemoryExamCatalog, default_content_dir, load_exam_content  # noqa: E402


def _doc(**overrides):
    doc = {
        "id": "e1",
        "title": "Sample",
        "duration": 5,
        "passMarks": 1,
        "coinReward": 3,
        "questions": [
            {"id": "a", "questionText": "2+2?", "questionType": "Multiple Choice",
             "options": ["3", "4"], "correctAnswer": "4", "marks": 2},
            {"id": "b", "text": "Sky is blue", "type": "True/False", "correct_answer": "True", "marks": 3},
        ],
    }
    doc.update(overrides)
    return doc


def test_exam_from_dict_accepts_camel_case_and_defaults_total():
    exam = exam_from_dict(_doc())
    assert exam.duration_seconds == 300
    assert exam.total_marks == 5
    assert exam.coin_reward == 3
    assert exam.questions[0].type is QuestionType.MULTIPLE_CHOICE
    assert exam.questions[1].choices == ("True", "False")


def test_exam_from_dict_accepts_json_text():
    assert exam_from_dict(json.dumps(_doc())).id == "e1"


def test_exam_without_questions_is_a_content_error():
    with pytest.raises(ExamContentError):
        exam_from_dict(_doc(questions=[]))


def test_correct_answer_must_be_an_option():
    doc = _doc()
    doc["questions"][0]["correctAnswer"] = "5"
    with pytest.raises(ExamContentError):
        exam_from_dict(doc)


def test_duplicate_question_ids_rejected():
    doc = _doc()
    doc["questions"][1]["id"] = "a"
    with pytest.raises(ExamContentError):
        exam_from_dict(doc)


def test_public_payload_hides_answer_key():
    public = exam_to_public_dict(physics_exam())
    for q in public["questions"]:
        assert "correct_answer" not in q
    assert public["questions"][1]["options"] == ["True", "False"]

    again = exam_from_public_dict(public)
    assert [q.id for q in again.questions] == ["q1-1", "q1-2"]
    assert all(q.correct_answer == "" for q in again.questions)


def test_bundled_exams_load():
    exams = load_exam_content(str(PROJECT_ROOT / "exams"))
    catalog = MemoryExamCatalog(exams)
    exam = catalog.get_exam("q1")
    assert exam.title == "Physics Chapter 1 Quiz"
    assert [e.id for e in catalog.list_published_exams()] == ["q1"]


def test_loader_names_the_broken_file(tmp_path):
    (tmp_path / "broken.json").write_text(json.dumps(_doc(questions=[])), encoding="utf-8")
    with pytest.raises(ExamContentError, match="broken.json"):
        load_exam_content(str(tmp_path))


def test_content_dir_falls_back_to_installed_share_dir(tmp_path):
    installed = tmp_path / "share" / "academy-exams" / "exams"
    installed.mkdir(parents=True)
    assert default_content_dir([tmp_path / "missing", installed]) == installed
    assert default_content_dir([tmp_path / "missing"]) == tmp_path / "missing"
