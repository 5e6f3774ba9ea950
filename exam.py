# exam.py
# -----------------------------------------------------------------------------
# Timed exam API (JSON only).
# - Catalog: published exams; the take-exam payload never carries answer keys
# - Drafts: per (user, exam) answer map, replace-on-save
# - Submit: scored server-side, idempotent on submission_id, attempt limit -> 403
# - Leaderboard: best attempt per user, score desc then time asc, top N
# -----------------------------------------------------------------------------

from typing import Any, Callable, Dict, Optional

from flask import Blueprint, request, jsonify, g

from attempts import attempt_payload
from drafts import ABSENT
from exam_models import ExamNotFound, exam_summary_dict, exam_to_public_dict
from leaderboard import LEADERBOARD_SIZE, get_leaderboard
from scoring import AttemptLimitReached


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at base_path (e.g. "/academy").
    Required deps: catalog, drafts, attempts, scoring
    Optional deps: log_activity(user_id, exam, event, payload)
    """
    bp = Blueprint(name, __name__, url_prefix=base_path or None)

    # ---- Required deps -------------------------------------------------------
    catalog = deps["catalog"]
    drafts = deps["drafts"]
    attempts = deps["attempts"]
    scoring = deps["scoring"]
    log_activity: Optional[Callable] = deps.get("log_activity")

    # ---- helpers -------------------------------------------------------------
    def _unauthorized():
        return jsonify({"ok": False, "error": "unauthorized"}), 401

    def _not_found(what: str = "exam not found"):
        return jsonify({"ok": False, "error": what}), 404

    def _bad_request(msg: str):
        return jsonify({"ok": False, "error": msg}), 400

    def _published_exam(exam_id: str):
        exam = catalog.get_exam(exam_id)
        if exam is None or not exam.is_published:
            return None
        return exam

    def _log(exam, event: str, payload: Optional[dict] = None):
        if not log_activity:
            return
        try:
            log_activity(g.user_id, exam, event, payload or {})
        except Exception as e:
            print(f"[exam] activity log failed: {e}")

    def _answers_from_body(data: Dict[str, Any]):
        answers = data.get("answers")
        if answers is None:
            return {}
        if not isinstance(answers, dict):
            return None
        out = {}
        for k, v in answers.items():
            if v is None:
                continue
            if not isinstance(v, str):
                return None
            out[str(k)] = v
        return out

    # --------------------------------- routes ---------------------------------
    @bp.get("/exams")
    def exam_list():
        return jsonify({"ok": True, "exams": [exam_summary_dict(e) for e in catalog.list_published_exams()]})

    @bp.get("/exams/<exam_id>")
    def exam_detail(exam_id: str):
        if not getattr(g, "user_id", None):
            return _unauthorized()
        exam = _published_exam(exam_id)
        if exam is None:
            return _not_found()
        _log(exam, "opened")
        return jsonify({"ok": True, "exam": exam_to_public_dict(exam)})

    @bp.get("/exams/<exam_id>/status")
    def exam_status(exam_id: str):
        if not getattr(g, "user_id", None):
            return _unauthorized()
        exam = _published_exam(exam_id)
        if exam is None:
            return _not_found()
        used = scoring.attempts_used(g.user_id, exam.id)
        return jsonify({
            "ok": True,
            "exam_id": exam.id,
            "attempts_used": used,
            "attempt_limit": exam.attempt_limit,
            "can_start": scoring.can_start(g.user_id, exam),
            "has_draft": drafts.load(g.user_id, exam.id) is not ABSENT,
        })

    # ---- drafts ----------------------------------------------------------------
    @bp.get("/exams/<exam_id>/draft")
    def draft_load(exam_id: str):
        if not getattr(g, "user_id", None):
            return _unauthorized()
        found = drafts.load(g.user_id, exam_id)
        if found is ABSENT:
            return _not_found("no draft")
        return jsonify({"ok": True, "answers": found})

    @bp.put("/exams/<exam_id>/draft")
    def draft_save(exam_id: str):
        if not getattr(g, "user_id", None):
            return _unauthorized()
        if _published_exam(exam_id) is None:
            return _not_found()
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return _bad_request("expected a JSON object")
        answers = _answers_from_body(data)
        if answers is None:
            return _bad_request("answers must map question ids to strings")
        drafts.save(g.user_id, exam_id, answers)
        return jsonify({"ok": True})

    @bp.delete("/exams/<exam_id>/draft")
    def draft_clear(exam_id: str):
        if not getattr(g, "user_id", None):
            return _unauthorized()
        drafts.clear(g.user_id, exam_id)
        return jsonify({"ok": True})

    # ---- submit ----------------------------------------------------------------
    @bp.post("/exams/<exam_id>/submit")
    def exam_submit(exam_id: str):
        if not getattr(g, "user_id", None):
            return _unauthorized()
        exam = _published_exam(exam_id)
        if exam is None:
            return _not_found()

        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return _bad_request("expected a JSON object")
        answers = _answers_from_body(data)
        if answers is None:
            return _bad_request("answers must map question ids to strings")
        try:
            time_taken = int(data.get("time_taken"))
        except (TypeError, ValueError):
            return _bad_request("time_taken must be an integer number of seconds")
        if time_taken < 0:
            return _bad_request("time_taken must not be negative")
        submission_id = data.get("submission_id")
        if submission_id is not None and not isinstance(submission_id, str):
            return _bad_request("submission_id must be a string")

        try:
            result = scoring.submit_exam(
                exam.id, g.user_id, getattr(g, "username", None) or "",
                answers, time_taken, submission_id=submission_id or None,
            )
        except ExamNotFound:
            return _not_found()
        except AttemptLimitReached as e:
            return jsonify({"ok": False, "error": str(e), "attempt_limit": e.limit}), 403

        try:
            drafts.clear(g.user_id, exam.id)
        except Exception as e:
            print(f"[exam] draft clear after submit failed: {e}")

        return jsonify({"ok": True, **result.to_dict()})

    # ---- history / ranking -----------------------------------------------------
    @bp.get("/exams/<exam_id>/leaderboard")
    def exam_leaderboard(exam_id: str):
        exam = catalog.get_exam(exam_id)
        if exam is None:
            return _not_found()
        limit = request.args.get("limit", type=int) or LEADERBOARD_SIZE
        limit = max(1, min(limit, LEADERBOARD_SIZE))
        return jsonify({
            "ok": True,
            "exam_id": exam.id,
            "title": exam.title,
            "total_marks": exam.total_marks,
            "leaderboard": get_leaderboard(attempts, exam.id, limit),
        })

    @bp.get("/me/attempts")
    def my_attempts():
        if not getattr(g, "user_id", None):
            return _unauthorized()
        titles: Dict[str, str] = {}
        rows = []
        for rec in attempts.for_user(g.user_id):
            if rec.exam_id not in titles:
                exam = catalog.get_exam(rec.exam_id)
                titles[rec.exam_id] = exam.title if exam else ""
            d = attempt_payload(rec)
            d["exam_title"] = titles[rec.exam_id]
            rows.append(d)
        return jsonify({"ok": True, "attempts": rows})

    return bp
