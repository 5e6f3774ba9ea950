import asyncio
import io
import threading

import pytest
import requests

from fakes import FakeClock, ManualScheduler, physics_exam

from drafts import MemoryDraftStore  # noqa: E402
from exam_cli import ApiError, ExamApiClient, SubmissionFailed, TerminalExam, run_exam  # noqa: E402
from exam_models import ScoreResult, exam_to_public_dict  # noqa: E402
from exam_session import ExamSession, SessionStatus, Start  # noqa: E402
from randomizer import identity_order  # noqa: E402


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeHttp:
    def __init__(self, responses):
        self.headers = {}
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, timeout=None, **kw):
        self.calls.append((method, url, kw))
        nxt = self.responses.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt


def _client(*responses):
    http = FakeHttp(responses)
    return ExamApiClient("http://exams.local/academy/", "u1", "alice", http=http), http


def test_client_sends_identity_headers_and_parses_exam():
    client, http = _client(FakeResponse(200, {"ok": True, "exam": exam_to_public_dict(physics_exam())}))
    exam = client.get_exam("q1")
    assert http.headers == {"X-User-Id": "u1", "X-Username": "alice"}
    assert http.calls[0][:2] == ("GET", "http://exams.local/academy/exams/q1")
    assert exam.title == "Physics Chapter 1 Quiz"
    assert exam.questions[1].choices == ("True", "False")


def test_submit_posts_submission_id():
    client, http = _client(FakeResponse(200, {"ok": True, "score": 5, "total_marks": 10,
                                              "coins_earned": 10, "passed": True, "attempt_id": "a1"}))
    result = client.submit_exam("q1", "u1", "alice", {"q1-1": "Newton"}, 33, submission_id="s-1")
    assert result.coins_earned == 10
    assert http.calls[0][2]["json"] == {"answers": {"q1-1": "Newton"}, "time_taken": 33, "submission_id": "s-1"}


@pytest.mark.parametrize("response", [
    FakeResponse(500, None),
    FakeResponse(403, {"ok": False, "error": "attempt limit reached (1) for exam q1"}),
    requests.exceptions.ConnectionError("refused"),
    requests.exceptions.Timeout("slow"),
])
def test_submit_failures_raise_submission_failed(response):
    client, _ = _client(response)
    with pytest.raises(SubmissionFailed):
        client.submit_exam("q1", "u1", "alice", {}, 1, submission_id="s-1")


def test_other_calls_raise_api_error_with_status():
    client, _ = _client(FakeResponse(404, {"ok": False, "error": "exam not found"}))
    with pytest.raises(ApiError) as exc:
        client.status("nope")
    assert exc.value.status == 404
    assert not isinstance(exc.value, SubmissionFailed)


def _terminal(submit):
    clock = FakeClock()
    ui = TerminalExam(out=io.StringIO())
    ui.session = ExamSession(physics_exam(), "u1", "alice", {
        "draft_store": MemoryDraftStore(),
        "submit": submit,
        "scheduler": ManualScheduler(clock),
        "clock": clock,
        "order": identity_order,
        "notify": ui.notice,
    })
    ui.session.dispatch(Start())
    return ui


def test_terminal_commands_drive_the_session():
    submitted = []

    def submit(exam_id, user_id, username, answers, time_taken, submission_id=None):
        submitted.append(answers)
        return ScoreResult(10, 10, 15, True, "a1")

    ui = _terminal(submit)
    ui.render()
    ui.handle_line("1 3")
    ui.handle_line("2 1")
    ui.handle_line("9 1")
    ui.handle_line("1 7")
    ui.handle_line("submit")

    out = ui.out.getvalue()
    assert "saved: 1 -> Newton" in out
    assert "? no question 9" in out
    assert "? question 1 has 4 choices" in out
    assert "Exam submitted! Score 10/10 (Passed). You earned 15 coins." in out
    assert submitted == [{"q1-1": "Newton", "q1-2": "True"}]
    assert ui.session.status is SessionStatus.FINISHED


def test_first_interrupt_warns_second_abandons():
    ui = _terminal(lambda *a, **kw: None)
    ui.on_interrupt()
    assert ui.session.status is SessionStatus.IN_PROGRESS
    assert "timer will continue" in ui.out.getvalue()
    ui.on_interrupt()
    assert ui.session.status is SessionStatus.ABANDONED


def test_exam_is_fetched_off_the_event_loop_thread(tmp_path):
    seen = []

    class RecordingClient:
        def get_exam(self, exam_id):
            seen.append(threading.current_thread())
            raise ApiError("exam not found", 404)

    with pytest.raises(ApiError):
        asyncio.run(run_exam(RecordingClient(), "q1", "u1", "alice", str(tmp_path)))
    assert seen and seen[0] is not threading.main_thread()
