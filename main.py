# main.py: exam engine API, BASE_PATH-aware (psycopg3 + pooling)
# Identity comes from the fronting gateway (X-User-Id / X-Username headers).

import os
import json
from contextlib import contextmanager
from urllib.parse import urlparse, parse_qs, unquote
from typing import Any, Dict, Optional, List

from flask import Flask, request, g

# Database (psycopg 3)
from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row

# Exam engine
from attempts import MemoryAttemptStore, PgAttemptStore
from drafts import MemoryDraftStore, PgDraftStore
from exam import create_exam_blueprint
from exam_content_loader import FileExamCatalog, PgExamCatalog, load_exam_content
from scoring import ScoringService
from wallet import MemoryWallet, PgWallet

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False

# "postgres" (default) or "memory" (single process, nothing persisted)
EXAM_STORAGE = (os.getenv("EXAM_STORAGE") or "postgres").strip().lower()

# =============================================================================
# DB configuration
# =============================================================================
INSTANCE_CONNECTION_NAME = os.getenv("INSTANCE_CONNECTION_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_NAME = os.getenv("DB_NAME")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")
DB_HOST_OVERRIDE = os.getenv("DB_HOST")
DB_PORT_OVERRIDE = os.getenv("DB_PORT")
FORCE_TCP = os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}

def _on_managed_runtime() -> bool:
    # GAE or Cloud Run, etc.
    return os.getenv("GAE_ENV", "").startswith("standard") or bool(os.getenv("K_SERVICE"))

def _log_choice(kwargs: dict, origin: str):
    if "host" in kwargs and isinstance(kwargs["host"], str) and kwargs["host"].startswith("/cloudsql/"):
        print(f"[DB] {origin}: Unix socket -> {kwargs['host']}")
    else:
        host = kwargs.get("host", "localhost")
        port = kwargs.get("port", 5432)
        print(f"[DB] {origin}: TCP -> {host}:{port}")

def _parse_database_url(url: str) -> dict:
    if not url:
        raise ValueError("Empty DATABASE_URL")
    # Normalize SA-style scheme to plain postgres for psycopg usage
    for pref in ("postgresql+psycopg://", "postgres+psycopg://",
                 "postgresql+psycopg2://", "postgres+psycopg2://"):
        if url.startswith(pref):
            url = "postgresql://" + url.split("://", 1)[1]
            break

    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    host = qs["host"][0] if qs.get("host") else p.hostname
    dbname = (p.path or "").lstrip("/") or (qs["dbname"][0] if qs.get("dbname") else "")
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    kwargs = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }
    if host:
        kwargs["host"] = host
    if p.port and not (isinstance(host, str) and host.startswith("/")):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs

def _tcp_kwargs() -> dict:
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("DB_NAME, DB_USER, DB_PASS must be set for TCP mode.")
    return {
        "host": DB_HOST_OVERRIDE or "127.0.0.1",
        "port": int(DB_PORT_OVERRIDE or "5432"),
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "sslmode": "disable",
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _socket_kwargs() -> dict:
    if not all([INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS must be set for socket mode.")
    return {
        "host": f"/cloudsql/{INSTANCE_CONNECTION_NAME}",
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _connection_kwargs() -> dict:
    managed = _on_managed_runtime()

    if FORCE_TCP and not managed:
        kwargs = _tcp_kwargs(); _log_choice(kwargs, "FORCE_TCP"); return kwargs

    if not managed and DATABASE_URL_LOCAL:
        try:
            kwargs = _parse_database_url(DATABASE_URL_LOCAL)
            _log_choice(kwargs, "Using DATABASE_URL_LOCAL (parsed)")
            return kwargs
        except Exception as e:
            print(f"[DB] Ignoring DATABASE_URL_LOCAL: {e}")

    if DATABASE_URL:
        try:
            parsed = _parse_database_url(DATABASE_URL)
            host = parsed.get("host")
            if (not managed) and isinstance(host, str) and host.startswith("/cloudsql/"):
                print("[DB] DATABASE_URL targets /cloudsql/ but we are local; ignoring and using TCP.")
            else:
                _log_choice(parsed, "Using DATABASE_URL (parsed)")
                return parsed
        except Exception as e:
            print(f"[DB] Ignoring DATABASE_URL: {e}")

    if managed:
        kwargs = _socket_kwargs(); _log_choice(kwargs, "Managed runtime"); return kwargs

    kwargs = _tcp_kwargs(); _log_choice(kwargs, "Local dev"); return kwargs

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

def _to_conninfo(kwargs: dict) -> str:
    parts = []
    for k, v in kwargs.items():
        if v is None:
            continue
        s = str(v)
        if any(ch.isspace() for ch in s) or "'" in s or '"' in s:
            s = "'" + s.replace("'", r"\'") + "'"
        parts.append(f"{k}={s}")
    return " ".join(parts)

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    _pg_pool = ConnectionPool(conninfo=_to_conninfo(_connection_kwargs()), min_size=1, max_size=6)

@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn

def fetch_all(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()

def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None

def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
        conn.commit()

def execute_returning(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows

_DB = {
    "fetch_one": fetch_one,
    "fetch_all": fetch_all,
    "execute": execute,
    "execute_returning": execute_returning,
}

# =============================================================================
# Schema bootstrap
# =============================================================================
EXAM_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS public.exams (
    id          text PRIMARY KEY,
    status      text NOT NULL DEFAULT 'Published',
    definition  jsonb NOT NULL,
    created_at  timestamptz NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS public.exam_attempts (
    seq            bigserial UNIQUE,
    id             text PRIMARY KEY,
    exam_id        text NOT NULL,
    user_id        text NOT NULL,
    username       text NOT NULL DEFAULT '',
    score          integer NOT NULL,
    total_marks    integer NOT NULL,
    time_taken     integer NOT NULL,
    coins_earned   integer NOT NULL DEFAULT 0,
    submitted_at   timestamptz NOT NULL DEFAULT now(),
    submission_id  text UNIQUE
);
CREATE INDEX IF NOT EXISTS exam_attempts_exam_idx ON public.exam_attempts (exam_id, seq);
CREATE INDEX IF NOT EXISTS exam_attempts_user_idx ON public.exam_attempts (user_id, submitted_at DESC);
CREATE TABLE IF NOT EXISTS public.exam_drafts (
    draft_key   text PRIMARY KEY,
    user_id     text NOT NULL,
    exam_id     text NOT NULL,
    answers     jsonb NOT NULL DEFAULT '{}'::jsonb,
    updated_at  timestamptz NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS public.coin_transactions (
    id           bigserial PRIMARY KEY,
    user_id      text NOT NULL,
    kind         text NOT NULL,
    amount       integer NOT NULL,
    description  text NOT NULL DEFAULT '',
    attempt_id   text,
    created_at   timestamptz NOT NULL DEFAULT now()
);
ALTER TABLE public.coin_transactions ADD COLUMN IF NOT EXISTS attempt_id text;
CREATE UNIQUE INDEX IF NOT EXISTS coin_transactions_attempt_uidx ON public.coin_transactions (attempt_id);
"""

def ensure_exam_tables():
    for stmt in EXAM_TABLES_SQL.split(";"):
        if stmt.strip():
            execute(stmt + ";")
    try:
        execute("ALTER TABLE public.users ADD COLUMN IF NOT EXISTS coins integer NOT NULL DEFAULT 0;")
    except Exception as e:
        print(f"[DB] users.coins column not ensured: {e}")

def seed_exams_if_missing() -> int:
    """Copy file-authored exams into public.exams when the table has none."""
    row = fetch_one("SELECT COUNT(*) AS n FROM public.exams;")
    if row and int(row.get("n") or 0) > 0:
        return 0
    seeded = 0
    for exam in load_exam_content():
        execute("""
            INSERT INTO public.exams (id, status, definition)
            VALUES (%s, %s, %s::jsonb)
            ON CONFLICT (id) DO NOTHING;
        """, (exam.id, exam.status, json.dumps(_exam_document(exam))))
        seeded += 1
    print(f"[exam] seeded {seeded} exam(s) from files")
    return seeded

def _exam_document(exam) -> Dict[str, Any]:
    return {
        "id": exam.id, "title": exam.title, "description": exam.description,
        "course_id": exam.course_id, "duration_minutes": exam.duration_minutes,
        "total_marks": exam.total_marks, "pass_marks": exam.pass_marks,
        "coin_reward": exam.coin_reward, "full_marks_bonus": exam.full_marks_bonus,
        "attempt_limit": exam.attempt_limit, "status": exam.status,
        "questions": [
            {"id": q.id, "text": q.text, "type": q.type.value, "options": list(q.options),
             "correct_answer": q.correct_answer, "marks": q.marks}
            for q in exam.questions
        ],
    }

# =============================================================================
# Activity logging (exam lifecycle -> public.activity_log)
# =============================================================================
_ACTIVITY_TYPE_NAME: Optional[str] = None
_ACTIVITY_ENUM_LABELS: List[str] = []

def _detect_activity_type():
    """Detect enum type name of activity_log.a_type (if any) and cache labels."""
    global _ACTIVITY_TYPE_NAME, _ACTIVITY_ENUM_LABELS
    if _ACTIVITY_TYPE_NAME is not None:
        return
    try:
        row = fetch_one("""
            SELECT atttypid::regtype::text AS tname
            FROM pg_attribute
            WHERE attrelid = 'public.activity_log'::regclass
              AND attname = 'a_type';
        """)
        tname = (row or {}).get("tname")
        if tname and tname.lower() not in ("text", "varchar", "character varying", "pg_catalog.text"):
            _ACTIVITY_TYPE_NAME = tname
            labels = fetch_all(f"""
                SELECT enumlabel
                FROM pg_enum
                WHERE enumtypid = '{_ACTIVITY_TYPE_NAME}'::regtype
                ORDER BY enumsortorder;
            """)
            _ACTIVITY_ENUM_LABELS = [r["enumlabel"] for r in labels or []]
        else:
            _ACTIVITY_TYPE_NAME = None
            _ACTIVITY_ENUM_LABELS = []
    except Exception as e:
        print(f"[activity] type detect failed: {e}")
        _ACTIVITY_TYPE_NAME = None
        _ACTIVITY_ENUM_LABELS = []

def log_activity(user_id: Any, exam, event: str, payload: Optional[dict] = None,
                 score_points: Optional[int] = None, passed: Optional[bool] = None):
    """Append-only activity row. Synthetic lesson_uid per exam: 'EXAM-<id>'."""
    _detect_activity_type()
    body = {"kind": "exam", "event": event, "exam_id": exam.id}
    body.update(payload or {})
    payload_json = json.dumps(body, ensure_ascii=False)
    label = f"exam_{event}"
    lesson_uid = f"EXAM-{exam.id}"
    try:
        if _ACTIVITY_TYPE_NAME:
            if _ACTIVITY_ENUM_LABELS and label not in _ACTIVITY_ENUM_LABELS:
                label = _ACTIVITY_ENUM_LABELS[0]
            execute(f"""
                INSERT INTO public.activity_log
                    (user_id, course_id, lesson_uid, a_type, created_at, score_points, passed, payload)
                VALUES (%s, %s, %s, %s::{_ACTIVITY_TYPE_NAME}, now(), %s, %s, %s);
            """, (user_id, exam.course_id, lesson_uid, label, score_points, passed, payload_json))
        else:
            execute("""
                INSERT INTO public.activity_log
                    (user_id, course_id, lesson_uid, a_type, created_at, score_points, passed, payload)
                VALUES (%s, %s, %s, %s, now(), %s, %s, %s);
            """, (user_id, exam.course_id, lesson_uid, label, score_points, passed, payload_json))
    except Exception as e:
        print(f"[activity] insert failed (safe): {e}")

def log_attempt_submitted(record, exam):
    log_activity(record.user_id, exam, "submitted",
                 {"attempt_id": record.id, "time_taken": record.time_taken,
                  "coins_earned": record.coins_earned},
                 score_points=record.score, passed=record.score >= exam.pass_marks)

# =============================================================================
# Identity (set by the gateway in front of this service)
# =============================================================================
@app.before_request
def attach_identity():
    uid = (request.headers.get("X-User-Id") or "").strip()
    g.user_id = uid or None
    g.username = (request.headers.get("X-Username") or "").strip() or None

@app.get("/healthz")
def healthz():
    if EXAM_STORAGE == "memory":
        return ("ok", 200)
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)

# =============================================================================
# Exam engine wiring
# =============================================================================
def build_exam_deps(storage: str = EXAM_STORAGE) -> Dict[str, Any]:
    if storage == "memory":
        catalog = FileExamCatalog()
        deps = {
            "catalog": catalog,
            "drafts": MemoryDraftStore(),
            "attempts": MemoryAttemptStore(),
            "wallet": MemoryWallet(),
        }
    else:
        deps = {
            "catalog": PgExamCatalog(_DB),
            "drafts": PgDraftStore(_DB),
            "attempts": PgAttemptStore(_DB),
            "wallet": PgWallet(_DB),
            "log_activity": log_activity,
            "on_submitted": log_attempt_submitted,
        }
    deps["scoring"] = ScoringService(deps)
    print(f"[exam] storage={storage}")
    return deps

if EXAM_STORAGE != "memory":
    try:
        ensure_exam_tables()
        seed_exams_if_missing()
    except Exception as e:
        print(f"[DB] exam schema bootstrap failed: {e}")

exam_deps = build_exam_deps()
app.register_blueprint(create_exam_blueprint(BASE_PATH, exam_deps))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
