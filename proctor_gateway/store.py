"""
Record store (sqlite).

Persistent storage for everything the gateways and the synchronization
engine read or write: capability digests, students, sessions, assessment
units, responses and the guardian-portal facts.

Storage Properties:
- WAL journal, foreign keys enforced on every connection
- All access goes through `_db()`, which fails closed via the circuit breaker
- Durable writes are linearized by sqlite itself; no application locking
- Committed writes to `sessions` and `responses` are announced to change
  listeners (the change-notification feed) after commit, never before

Raw capability secrets never reach this module; only their digests do.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .crypto import _now_utc
from .lockdown import DbCircuitBreaker

logger = logging.getLogger("proctor_gateway.store")

ChangeListener = Callable[[str, str, Dict[str, Any]], None]

SESSION_STATUSES = ("scheduled", "in_progress", "completed")

_JSON_COLUMNS = {
    "students": ("primary_concerns",),
    "sessions": ("observations",),
    "session_summaries": ("summary",),
    "parent_scales": ("responses",),
    "teacher_requests": ("questions", "responses"),
}

_BOOL_COLUMNS = {
    "checklist_items": ("is_completed",),
}

_SESSION_UPDATABLE = ("status", "current_unit_id", "observations", "started_at", "ended_at")


def _new_id() -> str:
    return str(uuid.uuid4())


def _now_iso() -> str:
    return _now_utc().isoformat()


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


class RecordStore:
    """sqlite-backed record store with a change-notification feed."""

    def __init__(self, db_path: str = "proctor_gateway.db", circuit: Optional[DbCircuitBreaker] = None):
        self.db_path = db_path
        self.circuit = circuit or DbCircuitBreaker()
        self._listeners: List[ChangeListener] = []
        self._init_db()

    # ---------------------------
    # Plumbing
    # ---------------------------

    @contextmanager
    def _db(self, op_name: str) -> Iterator[sqlite3.Connection]:
        """Connection wrapper with circuit breaker (fail-closed).

        IntegrityError is a caller-level outcome (constraint hit), not a
        storage health signal, so it does not count towards lockdown.
        """
        self.circuit.raise_if_lockdown()
        try:
            conn = sqlite3.connect(self.db_path, timeout=float(self.circuit.config.connect_timeout_seconds))
            conn.row_factory = sqlite3.Row
            try:
                conn.execute("PRAGMA foreign_keys = ON")
                with conn:
                    yield conn
            finally:
                conn.close()
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            logger.error("store op %s failed: %s", op_name, e)
            self.circuit.record_failure(e)
            raise
        self.circuit.record_success()

    def add_change_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def remove_change_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, table: str, op: str, row: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(table, op, dict(row))
            except Exception:
                # Feed delivery is best-effort; the write already committed.
                logger.exception("change listener failed for %s %s", table, op)

    @staticmethod
    def _row(table: str, row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        d = dict(row)
        for col in _JSON_COLUMNS.get(table, ()):
            if d.get(col) is not None:
                d[col] = json.loads(d[col])
        for col in _BOOL_COLUMNS.get(table, ()):
            if col in d:
                d[col] = bool(d[col])
        d.pop("seq", None)
        return d

    def _rows(self, table: str, rows: List[sqlite3.Row]) -> List[Dict[str, Any]]:
        return [self._row(table, r) for r in rows]

    def _init_db(self) -> None:
        with self._db("init") as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA busy_timeout = 5000")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS capability_tokens (
                handle TEXT PRIMARY KEY,
                token_digest TEXT NOT NULL UNIQUE,
                kind TEXT NOT NULL,
                subject_id TEXT NOT NULL,
                created_at_utc TEXT NOT NULL,
                expires_at_utc TEXT NOT NULL,
                created_by TEXT
            )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_capability_subject ON capability_tokens (subject_id, kind)"
            )

            conn.execute("""
            CREATE TABLE IF NOT EXISTS students (
                id TEXT PRIMARY KEY,
                full_name TEXT NOT NULL,
                grade TEXT NOT NULL,
                school TEXT,
                date_of_birth TEXT,
                risk_level TEXT,
                primary_concerns TEXT,
                created_at TEXT NOT NULL
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS appointments (
                id TEXT PRIMARY KEY,
                student_id TEXT NOT NULL REFERENCES students(id),
                scheduled_at TEXT NOT NULL,
                zoom_join_url TEXT
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS assessment_units (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                module_type TEXT,
                item_count INTEGER,
                order_index INTEGER NOT NULL DEFAULT 0
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                student_id TEXT NOT NULL REFERENCES students(id),
                appointment_id TEXT REFERENCES appointments(id),
                status TEXT NOT NULL DEFAULT 'scheduled',
                current_unit_id TEXT REFERENCES assessment_units(id),
                observations TEXT,
                started_at TEXT NOT NULL,
                ended_at TEXT
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_student ON sessions (student_id, started_at)")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS session_summaries (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL UNIQUE REFERENCES sessions(id),
                risk_level TEXT,
                summary TEXT,
                updated_at TEXT NOT NULL
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS responses (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                session_id TEXT NOT NULL REFERENCES sessions(id),
                unit_id TEXT NOT NULL REFERENCES assessment_units(id),
                item_index INTEGER NOT NULL,
                score_code TEXT NOT NULL,
                notes TEXT,
                response_time_ms INTEGER,
                idempotency_key TEXT,
                recorded_at TEXT NOT NULL,
                UNIQUE (session_id, idempotency_key)
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_responses_session ON responses (session_id, unit_id)")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS domain_scores (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL REFERENCES sessions(id),
                domain TEXT NOT NULL,
                raw_score REAL,
                max_score REAL,
                percentile INTEGER,
                risk_level TEXT,
                notes TEXT
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS checklist_items (
                id TEXT PRIMARY KEY,
                student_id TEXT NOT NULL REFERENCES students(id),
                title TEXT NOT NULL,
                description TEXT,
                category TEXT NOT NULL,
                priority INTEGER NOT NULL DEFAULT 0,
                is_completed INTEGER NOT NULL DEFAULT 0,
                completed_at TEXT,
                due_date TEXT
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS parent_scales (
                id TEXT PRIMARY KEY,
                student_id TEXT NOT NULL REFERENCES students(id),
                scale_type TEXT NOT NULL,
                responses TEXT NOT NULL,
                completed_at TEXT,
                updated_at TEXT NOT NULL,
                UNIQUE (student_id, scale_type)
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS teacher_requests (
                id TEXT PRIMARY KEY,
                student_id TEXT NOT NULL REFERENCES students(id),
                teacher_email TEXT,
                teacher_name TEXT,
                questions TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                responses TEXT,
                created_at TEXT NOT NULL
            )
            """)

    # ---------------------------
    # Capability digests
    # ---------------------------

    def insert_capability(
        self,
        digest: str,
        kind: str,
        subject_id: str,
        expires_at_utc: str,
        created_by: Optional[str] = None,
    ) -> str:
        """Insert a capability record (immutable). Returns its handle."""
        handle = f"cap_{uuid.uuid4().hex}"
        with self._db("insert_capability") as conn:
            conn.execute(
                """
                INSERT INTO capability_tokens
                (handle, token_digest, kind, subject_id, created_at_utc, expires_at_utc, created_by)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (handle, digest, kind, subject_id, _now_iso(), expires_at_utc, created_by),
            )
        return handle

    def find_capability(self, digest: str, kind: str) -> Optional[Dict[str, Any]]:
        with self._db("find_capability") as conn:
            row = conn.execute(
                "SELECT * FROM capability_tokens WHERE token_digest = ? AND kind = ?",
                (digest, kind),
            ).fetchone()
        return self._row("capability_tokens", row)

    def list_capabilities(self, subject_id: str, kind: str) -> List[Dict[str, Any]]:
        with self._db("list_capabilities") as conn:
            rows = conn.execute(
                "SELECT * FROM capability_tokens WHERE subject_id = ? AND kind = ? ORDER BY created_at_utc",
                (subject_id, kind),
            ).fetchall()
        return self._rows("capability_tokens", rows)

    def delete_capability(self, handle: str) -> bool:
        with self._db("delete_capability") as conn:
            cur = conn.execute("DELETE FROM capability_tokens WHERE handle = ?", (handle,))
            return int(cur.rowcount or 0) > 0

    def purge_expired_capabilities(self, now_iso: str) -> int:
        with self._db("purge_capabilities") as conn:
            cur = conn.execute("DELETE FROM capability_tokens WHERE expires_at_utc <= ?", (now_iso,))
            return int(cur.rowcount or 0)

    # ---------------------------
    # Students / appointments / units
    # ---------------------------

    def create_student(
        self,
        full_name: str,
        grade: str,
        *,
        school: Optional[str] = None,
        date_of_birth: Optional[str] = None,
        risk_level: Optional[str] = None,
        primary_concerns: Optional[List[str]] = None,
        student_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        sid = student_id or _new_id()
        with self._db("create_student") as conn:
            conn.execute(
                """
                INSERT INTO students
                (id, full_name, grade, school, date_of_birth, risk_level, primary_concerns, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (sid, full_name, grade, school, date_of_birth, risk_level, _dumps(primary_concerns), _now_iso()),
            )
        return self.get_student(sid)

    def get_student(self, student_id: str) -> Optional[Dict[str, Any]]:
        with self._db("get_student") as conn:
            row = conn.execute("SELECT * FROM students WHERE id = ?", (student_id,)).fetchone()
        return self._row("students", row)

    def create_appointment(
        self, student_id: str, scheduled_at: str, zoom_join_url: Optional[str] = None
    ) -> Dict[str, Any]:
        aid = _new_id()
        with self._db("create_appointment") as conn:
            conn.execute(
                "INSERT INTO appointments (id, student_id, scheduled_at, zoom_join_url) VALUES (?, ?, ?, ?)",
                (aid, student_id, scheduled_at, zoom_join_url),
            )
        return self.get_appointment(aid)

    def get_appointment(self, appointment_id: str) -> Optional[Dict[str, Any]]:
        with self._db("get_appointment") as conn:
            row = conn.execute("SELECT * FROM appointments WHERE id = ?", (appointment_id,)).fetchone()
        return self._row("appointments", row)

    def create_unit(
        self,
        name: str,
        *,
        item_count: Optional[int] = None,
        module_type: Optional[str] = None,
        order_index: int = 0,
        unit_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        uid = unit_id or _new_id()
        with self._db("create_unit") as conn:
            conn.execute(
                "INSERT INTO assessment_units (id, name, module_type, item_count, order_index) VALUES (?, ?, ?, ?, ?)",
                (uid, name, module_type, item_count, int(order_index)),
            )
        return self.get_unit(uid)

    def get_unit(self, unit_id: str) -> Optional[Dict[str, Any]]:
        with self._db("get_unit") as conn:
            row = conn.execute("SELECT * FROM assessment_units WHERE id = ?", (unit_id,)).fetchone()
        return self._row("assessment_units", row)

    def list_units(self) -> List[Dict[str, Any]]:
        with self._db("list_units") as conn:
            rows = conn.execute("SELECT * FROM assessment_units ORDER BY order_index, name").fetchall()
        return self._rows("assessment_units", rows)

    # ---------------------------
    # Sessions
    # ---------------------------

    def create_session(
        self,
        student_id: str,
        *,
        appointment_id: Optional[str] = None,
        status: str = "scheduled",
        started_at: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        sid = session_id or _new_id()
        with self._db("create_session") as conn:
            conn.execute(
                "INSERT INTO sessions (id, student_id, appointment_id, status, started_at) VALUES (?, ?, ?, ?, ?)",
                (sid, student_id, appointment_id, status, started_at or _now_iso()),
            )
        return self.get_session(sid)

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._db("get_session") as conn:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return self._row("sessions", row)

    def latest_session_for_student(self, student_id: str) -> Optional[Dict[str, Any]]:
        with self._db("latest_session") as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE student_id = ? ORDER BY started_at DESC LIMIT 1",
                (student_id,),
            ).fetchone()
        return self._row("sessions", row)

    def update_session(self, session_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Apply a multi-field update in one statement.

        Returns the authoritative row after the write, or None if the session
        does not exist. Listeners receive the full row (replace semantics).
        """
        unknown = set(fields) - set(_SESSION_UPDATABLE)
        if unknown:
            raise ValueError(f"non-updatable session fields: {sorted(unknown)}")
        if not fields:
            return self.get_session(session_id)

        cols = sorted(fields)
        values = [_dumps(fields[c]) if c == "observations" else fields[c] for c in cols]
        assignments = ", ".join(f"{c} = ?" for c in cols)
        with self._db("update_session") as conn:
            cur = conn.execute(f"UPDATE sessions SET {assignments} WHERE id = ?", (*values, session_id))
            if not cur.rowcount:
                return None
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        out = self._row("sessions", row)
        self._notify("sessions", "UPDATE", out)
        return out

    def upsert_session_summary(
        self, session_id: str, *, risk_level: Optional[str] = None, summary: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        with self._db("upsert_summary") as conn:
            conn.execute(
                """
                INSERT INTO session_summaries (id, session_id, risk_level, summary, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (session_id) DO UPDATE SET
                    risk_level = excluded.risk_level,
                    summary = excluded.summary,
                    updated_at = excluded.updated_at
                """,
                (_new_id(), session_id, risk_level, _dumps(summary or {}), _now_iso()),
            )
        return self.get_session_summary(session_id)

    def get_session_summary(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._db("get_summary") as conn:
            row = conn.execute("SELECT * FROM session_summaries WHERE session_id = ?", (session_id,)).fetchone()
        return self._row("session_summaries", row)

    # ---------------------------
    # Responses (append-only)
    # ---------------------------

    def insert_response(
        self,
        session_id: str,
        unit_id: str,
        item_index: int,
        score_code: str,
        *,
        notes: Optional[str] = None,
        response_time_ms: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        """Append one response. Returns (row, created).

        Without an idempotency key every call appends. With one, a repeated
        key for the same session returns the existing row and created=False.
        """
        if idempotency_key:
            existing = self._find_response_by_key(session_id, idempotency_key)
            if existing is not None:
                return existing, False

        rid = _new_id()
        try:
            with self._db("insert_response") as conn:
                conn.execute(
                    """
                    INSERT INTO responses
                    (id, session_id, unit_id, item_index, score_code, notes, response_time_ms,
                     idempotency_key, recorded_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (rid, session_id, unit_id, int(item_index), score_code, notes, response_time_ms,
                     idempotency_key, _now_iso()),
                )
                row = conn.execute("SELECT * FROM responses WHERE id = ?", (rid,)).fetchone()
        except sqlite3.IntegrityError:
            # Lost a race on the same idempotency key.
            if idempotency_key:
                existing = self._find_response_by_key(session_id, idempotency_key)
                if existing is not None:
                    return existing, False
            raise

        out = self._row("responses", row)
        self._notify("responses", "INSERT", out)
        return out, True

    def _find_response_by_key(self, session_id: str, idempotency_key: str) -> Optional[Dict[str, Any]]:
        with self._db("find_response") as conn:
            row = conn.execute(
                "SELECT * FROM responses WHERE session_id = ? AND idempotency_key = ?",
                (session_id, idempotency_key),
            ).fetchone()
        return self._row("responses", row)

    def list_responses(self, session_id: str, unit_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._db("list_responses") as conn:
            if unit_id is None:
                rows = conn.execute(
                    "SELECT * FROM responses WHERE session_id = ? ORDER BY seq", (session_id,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM responses WHERE session_id = ? AND unit_id = ? ORDER BY seq",
                    (session_id, unit_id),
                ).fetchall()
        return self._rows("responses", rows)

    # ---------------------------
    # Guardian portal facts
    # ---------------------------

    def add_domain_score(
        self,
        session_id: str,
        domain: str,
        *,
        raw_score: Optional[float] = None,
        max_score: Optional[float] = None,
        percentile: Optional[int] = None,
        risk_level: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        did = _new_id()
        with self._db("add_domain_score") as conn:
            conn.execute(
                """
                INSERT INTO domain_scores
                (id, session_id, domain, raw_score, max_score, percentile, risk_level, notes)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (did, session_id, domain, raw_score, max_score, percentile, risk_level, notes),
            )
            row = conn.execute("SELECT * FROM domain_scores WHERE id = ?", (did,)).fetchone()
        return self._row("domain_scores", row)

    def list_domain_scores(self, session_id: str) -> List[Dict[str, Any]]:
        with self._db("list_domain_scores") as conn:
            rows = conn.execute(
                "SELECT * FROM domain_scores WHERE session_id = ? ORDER BY domain", (session_id,)
            ).fetchall()
        return self._rows("domain_scores", rows)

    def create_checklist_item(
        self,
        student_id: str,
        title: str,
        *,
        category: str = "home",
        priority: int = 0,
        description: Optional[str] = None,
        due_date: Optional[str] = None,
    ) -> Dict[str, Any]:
        cid = _new_id()
        with self._db("create_checklist_item") as conn:
            conn.execute(
                """
                INSERT INTO checklist_items (id, student_id, title, description, category, priority, due_date)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (cid, student_id, title, description, category, int(priority), due_date),
            )
            row = conn.execute("SELECT * FROM checklist_items WHERE id = ?", (cid,)).fetchone()
        return self._row("checklist_items", row)

    def list_checklist_items(self, student_id: str) -> List[Dict[str, Any]]:
        with self._db("list_checklist_items") as conn:
            rows = conn.execute(
                "SELECT * FROM checklist_items WHERE student_id = ? ORDER BY priority, title", (student_id,)
            ).fetchall()
        return self._rows("checklist_items", rows)

    def set_checklist_completion(
        self, student_id: str, item_id: str, is_completed: bool, completed_at: Optional[str]
    ) -> bool:
        """Absolute set (not a toggle read-modify-write); last write wins."""
        with self._db("set_checklist_completion") as conn:
            cur = conn.execute(
                "UPDATE checklist_items SET is_completed = ?, completed_at = ? WHERE id = ? AND student_id = ?",
                (1 if is_completed else 0, completed_at, item_id, student_id),
            )
            return int(cur.rowcount or 0) > 0

    def upsert_parent_scale(
        self, student_id: str, scale_type: str, responses: Dict[str, Any], completed_at: str
    ) -> Dict[str, Any]:
        """Upsert keyed by (student_id, scale_type); resubmission replaces."""
        with self._db("upsert_parent_scale") as conn:
            conn.execute(
                """
                INSERT INTO parent_scales (id, student_id, scale_type, responses, completed_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (student_id, scale_type) DO UPDATE SET
                    responses = excluded.responses,
                    completed_at = excluded.completed_at,
                    updated_at = excluded.updated_at
                """,
                (_new_id(), student_id, scale_type, _dumps(responses), completed_at, _now_iso()),
            )
            row = conn.execute(
                "SELECT * FROM parent_scales WHERE student_id = ? AND scale_type = ?",
                (student_id, scale_type),
            ).fetchone()
        return self._row("parent_scales", row)

    def list_parent_scales(self, student_id: str) -> List[Dict[str, Any]]:
        with self._db("list_parent_scales") as conn:
            rows = conn.execute(
                "SELECT * FROM parent_scales WHERE student_id = ? ORDER BY scale_type", (student_id,)
            ).fetchall()
        return self._rows("parent_scales", rows)

    def create_teacher_request(
        self,
        student_id: str,
        questions: List[str],
        *,
        teacher_email: Optional[str] = None,
        teacher_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        tid = _new_id()
        with self._db("create_teacher_request") as conn:
            conn.execute(
                """
                INSERT INTO teacher_requests
                (id, student_id, teacher_email, teacher_name, questions, status, created_at)
                VALUES (?, ?, ?, ?, ?, 'pending', ?)
                """,
                (tid, student_id, teacher_email, teacher_name, _dumps(list(questions)), _now_iso()),
            )
            row = conn.execute("SELECT * FROM teacher_requests WHERE id = ?", (tid,)).fetchone()
        return self._row("teacher_requests", row)

    def list_teacher_requests(self, student_id: str) -> List[Dict[str, Any]]:
        with self._db("list_teacher_requests") as conn:
            rows = conn.execute(
                "SELECT * FROM teacher_requests WHERE student_id = ? ORDER BY created_at", (student_id,)
            ).fetchall()
        return self._rows("teacher_requests", rows)
