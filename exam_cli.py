# exam_cli.py
# -----------------------------------------------------------------------------
# Terminal exam runner.
# - Hosts one ExamSession on an asyncio loop (the loop is the tick scheduler)
# - stdin is read with loop.add_reader; commands: "<q> <choice>", submit,
#   retry, time, quit
# - Ctrl-C once: navigate-away warning; twice: abandon (draft stays on disk)
# - Talks to the exam API over HTTP; drafts are kept in local JSON files
# - The exam is fetched on a worker thread. Submit runs inline on the loop
#   (the session holds SUBMITTING with no tick armed until it returns), so
#   stdin and Ctrl-C wait at most HTTP_TIMEOUT while a submit is in flight
# -----------------------------------------------------------------------------

import argparse
import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from drafts import FileDraftStore
from exam_models import ExamDefinition, ScoreResult, exam_from_public_dict
from exam_session import (
    Abandon, AnswerChanged, ExamSession, InvalidAnswer, NavigateAway, Notice,
    SessionClosed, SessionStatus, Start, SubmitRequested, format_time,
)
from randomizer import seeded_order

EXAM_API_URL = (os.getenv("EXAM_API_URL") or "http://127.0.0.1:8080").rstrip("/")
EXAM_DRAFT_DIR = os.getenv("EXAM_DRAFT_DIR") or str(Path.home() / ".exam-drafts")
HTTP_TIMEOUT = int(os.getenv("EXAM_HTTP_TIMEOUT") or 20)
STATUS_EVERY_SECONDS = 30


class ApiError(Exception):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class SubmissionFailed(ApiError):
    pass


class ExamApiClient:
    """Thin requests wrapper over the exam blueprint; identity travels in gateway headers."""

    def __init__(self, base_url: str, user_id: str, username: str = "",
                 timeout: int = HTTP_TIMEOUT, http: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()
        self.http.headers.update({"X-User-Id": str(user_id), "X-Username": username or ""})

    def _call(self, method: str, path: str, error_cls=ApiError, **kw) -> Dict[str, Any]:
        try:
            r = self.http.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kw)
        except requests.exceptions.Timeout:
            raise error_cls("request timed out")
        except requests.exceptions.ConnectionError:
            raise error_cls("cannot reach the exam server")
        try:
            data = r.json()
        except ValueError:
            data = {}
        if r.status_code >= 400 or not data.get("ok"):
            raise error_cls(data.get("error") or f"HTTP {r.status_code}", status=r.status_code)
        return data

    def get_exam(self, exam_id: str) -> ExamDefinition:
        return exam_from_public_dict(self._call("GET", f"/exams/{exam_id}")["exam"])

    def status(self, exam_id: str) -> Dict[str, Any]:
        return self._call("GET", f"/exams/{exam_id}/status")

    def leaderboard(self, exam_id: str) -> List[Dict[str, Any]]:
        return self._call("GET", f"/exams/{exam_id}/leaderboard").get("leaderboard") or []

    def submit_exam(self, exam_id: str, user_id: str, username: str,
                    answers: Dict[str, str], time_taken: int,
                    submission_id: Optional[str] = None) -> ScoreResult:
        data = self._call("POST", f"/exams/{exam_id}/submit", error_cls=SubmissionFailed, json={
            "answers": answers,
            "time_taken": int(time_taken),
            "submission_id": submission_id,
        })
        return ScoreResult(
            score=int(data["score"]),
            total_marks=int(data["total_marks"]),
            coins_earned=int(data.get("coins_earned") or 0),
            passed=bool(data.get("passed")),
            attempt_id=data.get("attempt_id"),
        )


class TerminalExam:
    def __init__(self, out=None):
        self.out = out or sys.stdout
        self.session: Optional[ExamSession] = None
        self.done: Optional[asyncio.Future] = None
        self._interrupted = False

    def say(self, msg: str = ""):
        print(msg, file=self.out, flush=True)

    # ---- rendering -------------------------------------------------------------
    def render(self):
        st = self.session.state
        exam = self.session.exam
        self.say(f"\n== {exam.title} ==  ({exam.total_marks} marks, pass {exam.pass_marks}, "
                 f"{format_time(st.remaining_seconds)} left)")
        for n, q in enumerate(st.questions, start=1):
            picked = st.answers.get(q.id)
            self.say(f"\n{n}. {q.text}  [{q.marks} marks]")
            for m, choice in enumerate(q.choices, start=1):
                mark = "x" if choice == picked else " "
                self.say(f"   [{mark}] {m}) {choice}")
        self.say("\nAnswer with '<question> <choice>', or: submit, retry, time, quit")

    def notice(self, n: Notice):
        prefix = {"warning": "!", "error": "x", "success": "*"}.get(n.level, "-")
        self.say(f"{prefix} {n.message}")
        if n.retryable:
            self.say("  type 'retry' to submit again")

    def _status_line(self):
        if self.session.status is not SessionStatus.IN_PROGRESS:
            return
        total = len(self.session.state.questions)
        self.say(f"[{self.session.remaining_display} left, {self.session.answered_count}/{total} answered]")
        asyncio.get_running_loop().call_later(STATUS_EVERY_SECONDS, self._status_line)

    # ---- input -----------------------------------------------------------------
    def handle_line(self, line: str):
        cmd = line.strip().lower()
        if not cmd:
            return
        if cmd in ("submit", "retry"):
            self.session.dispatch(SubmitRequested())
        elif cmd == "time":
            self.say(f"{self.session.remaining_display} left")
        elif cmd in ("quit", "exit"):
            self.session.dispatch(Abandon())
            self.say("Session closed; your answers stay saved as a draft.")
        else:
            self._answer(cmd)
        self._check_done()

    def _answer(self, cmd: str):
        parts = cmd.split()
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            self.say("? expected '<question number> <choice number>'")
            return
        qn, cn = int(parts[0]), int(parts[1])
        questions = self.session.state.questions
        if not 1 <= qn <= len(questions):
            self.say(f"? no question {qn}")
            return
        q = questions[qn - 1]
        if not 1 <= cn <= len(q.choices):
            self.say(f"? question {qn} has {len(q.choices)} choices")
            return
        try:
            self.session.dispatch(AnswerChanged(q.id, q.choices[cn - 1]))
        except (InvalidAnswer, SessionClosed) as e:
            self.say(f"? {e}")
            return
        self.say(f"saved: {qn} -> {q.choices[cn - 1]}")

    def on_stdin(self):
        line = sys.stdin.readline()
        if line == "":
            self.session.dispatch(Abandon())
            self._check_done()
            return
        self.handle_line(line)

    def on_interrupt(self):
        if not self._interrupted and self.session.dispatch(NavigateAway()):
            self._interrupted = True
            self.say("  press Ctrl-C again to leave")
            return
        self.session.dispatch(Abandon())
        self._check_done()

    def _check_done(self):
        if self.done is None or self.done.done():
            return
        if self.session.status in (SessionStatus.FINISHED, SessionStatus.ABANDONED):
            self.done.set_result(self.session.status)

    def on_notice(self, n: Notice):
        self.notice(n)
        # auto-submit on timeout finishes the session from inside a tick
        if n.level == "success":
            asyncio.get_running_loop().call_soon(self._check_done)


async def run_exam(client: ExamApiClient, exam_id: str, user_id: str, username: str,
                   draft_dir: str, seed: Optional[int] = None) -> SessionStatus:
    loop = asyncio.get_running_loop()
    exam = await loop.run_in_executor(None, client.get_exam, exam_id)
    ui = TerminalExam()
    ui.done = loop.create_future()
    ui.session = ExamSession(exam, user_id, username, {
        "draft_store": FileDraftStore(draft_dir),
        "submit": client.submit_exam,
        "scheduler": loop,
        "order": seeded_order(seed) if seed is not None else None,
        "notify": ui.on_notice,
    })

    ui.session.dispatch(Start())
    ui.render()
    loop.call_later(STATUS_EVERY_SECONDS, ui._status_line)

    loop.add_reader(sys.stdin.fileno(), ui.on_stdin)
    loop.add_signal_handler(signal.SIGINT, ui.on_interrupt)
    try:
        return await ui.done
    finally:
        loop.remove_reader(sys.stdin.fileno())
        loop.remove_signal_handler(signal.SIGINT)


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Sit a timed exam in the terminal.")
    ap.add_argument("exam_id")
    ap.add_argument("--api", default=EXAM_API_URL, help="exam API base URL (including BASE_PATH)")
    ap.add_argument("--user-id", required=True)
    ap.add_argument("--username", default="")
    ap.add_argument("--seed", type=int, default=None, help="reproducible question/option order")
    ap.add_argument("--draft-dir", default=EXAM_DRAFT_DIR)
    args = ap.parse_args(argv)

    client = ExamApiClient(args.api, args.user_id, args.username)
    try:
        status = client.status(args.exam_id)
    except ApiError as e:
        print(f"cannot open exam {args.exam_id}: {e}", file=sys.stderr)
        return 1
    if not status.get("can_start"):
        print(f"attempt limit reached ({status.get('attempts_used')}/{status.get('attempt_limit')})", file=sys.stderr)
        return 1

    final = asyncio.run(run_exam(client, args.exam_id, args.user_id, args.username, args.draft_dir, args.seed))
    if final is not SessionStatus.FINISHED:
        return 2
    for row in client.leaderboard(args.exam_id)[:5]:
        print(f"{row['rank']:>3}. {row['username'] or row['user_id']:<20} "
              f"{row['score']}/{row['total_marks']}  {format_time(row['time_taken'])}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
