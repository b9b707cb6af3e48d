import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from uuid import uuid4
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from engines.attempts import Attempt, parse_timestamp
from engines.normalization import AttemptUpdate

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")

UPDATE_CHUNK_SIZE = 100
DEFAULT_ATTEMPT_LIMIT = 50


@contextmanager
def _conn() -> Iterator[sqlite3.Connection]:
    """Open a connection to the current ``DB_PATH`` and close it afterwards."""
    con = sqlite3.connect(DB_PATH)
    con.row_factory = sqlite3.Row
    try:
        yield con
    finally:
        con.close()


def _exec(sql: str, params: Iterable = ()) -> int:
    with _conn() as con:
        cur = con.execute(sql, tuple(params))
        con.commit()
        return cur.rowcount


def _query(sql: str, params: Iterable = ()) -> List[sqlite3.Row]:
    with _conn() as con:
        return con.execute(sql, tuple(params)).fetchall()


def init() -> None:
    with _conn() as con:
        con.executescript(
            """
            CREATE TABLE IF NOT EXISTS test_sessions (
              id          TEXT NOT NULL,
              user_id     TEXT NOT NULL,
              exam_type   TEXT,
              test_name   TEXT,
              test_date   TEXT,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (user_id, id)
            );

            CREATE TABLE IF NOT EXISTS question_attempts (
              id                  TEXT NOT NULL,
              user_id             TEXT NOT NULL,
              test_session_id     TEXT,
              question_metadata   TEXT NOT NULL DEFAULT '{}',
              correctness         INTEGER NOT NULL,
              confidence_rating   REAL,
              time_taken_seconds  REAL,
              mistake_type        TEXT,
              exam_type           TEXT,
              test_name           TEXT,
              attempted_at        TEXT NOT NULL,
              created_at          TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (user_id, id)
            );

            CREATE TABLE IF NOT EXISTS recommendations (
              user_id     TEXT NOT NULL,
              exam_type   TEXT NOT NULL,
              status      TEXT NOT NULL,
              cards       TEXT NOT NULL DEFAULT '[]',
              evidence    TEXT NOT NULL DEFAULT '{}',
              updated_at  TEXT NOT NULL,
              PRIMARY KEY (user_id, exam_type)
            );

            CREATE INDEX IF NOT EXISTS idx_attempts_user ON question_attempts(user_id, attempted_at);
            CREATE INDEX IF NOT EXISTS idx_sessions_user ON test_sessions(user_id, exam_type);
            """
        )
        con.commit()


# -------------- test sessions --------------
def upsert_test_session(
    session_id: str,
    user_id: str,
    exam_type: Optional[str] = None,
    test_name: Optional[str] = None,
    test_date: Optional[Any] = None,
) -> None:
    parsed = parse_timestamp(test_date)
    _exec(
        """
        INSERT INTO test_sessions (id, user_id, exam_type, test_name, test_date)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(user_id, id) DO UPDATE SET
            exam_type = COALESCE(excluded.exam_type, test_sessions.exam_type),
            test_name = COALESCE(excluded.test_name, test_sessions.test_name),
            test_date = COALESCE(excluded.test_date, test_sessions.test_date)
        """,
        (session_id, user_id, exam_type, test_name, parsed.isoformat() if parsed else None),
    )


def list_test_sessions(user_id: str, exam_type: Optional[str] = None) -> List[Dict[str, Any]]:
    sql = "SELECT * FROM test_sessions WHERE user_id = ?"
    params: List[Any] = [user_id]
    if exam_type:
        sql += " AND lower(exam_type) = lower(?)"
        params.append(exam_type)
    sql += " ORDER BY test_date IS NULL, test_date, created_at"
    return [dict(row) for row in _query(sql, params)]


# -------------- attempts --------------
def insert_attempts(user_id: str, attempts: Sequence[Attempt]) -> int:
    """Store ``attempts`` for ``user_id``; an id the user already has is skipped."""
    sessions: Dict[str, Attempt] = {}
    rows = []
    for attempt in attempts:
        if attempt.test_session_id:
            sessions.setdefault(attempt.test_session_id, attempt)
        rows.append(
            (
                attempt.id or uuid4().hex,
                user_id,
                attempt.test_session_id,
                json.dumps(attempt.metadata.to_dict()),
                1 if attempt.correctness else 0,
                attempt.confidence_rating,
                attempt.time_taken_seconds,
                attempt.mistake_type,
                attempt.exam_type,
                attempt.test_name,
                attempt.attempted_at.isoformat(),
            )
        )

    for session_id, attempt in sessions.items():
        upsert_test_session(
            session_id, user_id, attempt.exam_type, attempt.test_name, attempt.test_date
        )

    with _conn() as con:
        before = con.total_changes
        con.executemany(
            """
            INSERT OR IGNORE INTO question_attempts
            (id, user_id, test_session_id, question_metadata, correctness,
             confidence_rating, time_taken_seconds, mistake_type, exam_type,
             test_name, attempted_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            rows,
        )
        con.commit()
        inserted = con.total_changes - before
    if inserted < len(rows):
        logger.warning(
            "Skipped %d attempts for user %s whose ids were already stored",
            len(rows) - inserted,
            user_id,
        )
    logger.info("Stored %d of %d attempts for user %s", inserted, len(rows), user_id)
    return inserted


def _stored_number(value: Optional[float]) -> float:
    # Ingestion fills in defaults for missing values, so a stored NULL is a
    # malformed number (SQLite keeps NaN as NULL).
    return float("nan") if value is None else value


def _row_to_attempt(row: sqlite3.Row) -> Attempt:
    try:
        metadata = json.loads(row["question_metadata"] or "{}")
    except json.JSONDecodeError:
        logger.warning("Attempt %s has unreadable metadata; treating it as empty", row["id"])
        metadata = {}
    return Attempt.from_record(
        {
            "id": row["id"],
            "user_id": row["user_id"],
            "test_session_id": row["test_session_id"],
            "question_metadata": metadata,
            "correctness": bool(row["correctness"]),
            "confidence_rating": _stored_number(row["confidence_rating"]),
            "time_taken_seconds": _stored_number(row["time_taken_seconds"]),
            "mistake_type": row["mistake_type"],
            "attempted_at": row["attempted_at"],
            "exam_type": row["exam_type"],
            "test_name": row["test_name"],
            "test_date": row["test_date"],
        }
    )


_ATTEMPT_SELECT = """
    SELECT a.id, a.user_id, a.test_session_id, a.question_metadata, a.correctness,
           a.confidence_rating, a.time_taken_seconds, a.mistake_type, a.attempted_at,
           COALESCE(s.exam_type, a.exam_type) AS exam_type,
           COALESCE(s.test_name, a.test_name) AS test_name,
           s.test_date AS test_date
    FROM question_attempts a
    LEFT JOIN test_sessions s ON s.user_id = a.user_id AND s.id = a.test_session_id
    WHERE a.user_id = ?
"""


def list_attempts(user_id: str, exam_type: Optional[str] = None) -> List[Attempt]:
    """All attempts of ``user_id`` oldest first, optionally for one exam type."""
    sql = _ATTEMPT_SELECT
    params: List[Any] = [user_id]
    if exam_type:
        sql += " AND lower(COALESCE(s.exam_type, a.exam_type)) = lower(?)"
        params.append(exam_type)
    sql += " ORDER BY a.attempted_at, a.id"
    return [_row_to_attempt(row) for row in _query(sql, params)]


def recent_attempts(user_id: str, limit: int = DEFAULT_ATTEMPT_LIMIT) -> List[Attempt]:
    """The ``limit`` most recent attempts of ``user_id``, newest first."""
    sql = _ATTEMPT_SELECT + " ORDER BY a.attempted_at DESC, a.id DESC LIMIT ?"
    return [_row_to_attempt(row) for row in _query(sql, (user_id, limit))]


def apply_attempt_updates(updates: Sequence[AttemptUpdate], chunk_size: int = UPDATE_CHUNK_SIZE) -> int:
    """Persist normaliser fixes in transactions of ``chunk_size`` updates.

    A stored mistake type is never overwritten.
    """
    updated = 0
    for start in range(0, len(updates), chunk_size):
        chunk = updates[start : start + chunk_size]
        with _conn() as con:
            for update in chunk:
                con.execute(
                    """
                    UPDATE question_attempts
                    SET question_metadata = ?,
                        mistake_type = COALESCE(mistake_type, ?)
                    WHERE user_id = ? AND id = ?
                    """,
                    (
                        json.dumps(update.question_metadata),
                        update.mistake_type,
                        update.user_id,
                        update.attempt_id,
                    ),
                )
            con.commit()
        updated += len(chunk)
    return updated


def delete_user_attempts(user_id: str) -> int:
    """Bulk account reset: remove every attempt, session and stored recommendation of ``user_id``."""
    removed = _exec("DELETE FROM question_attempts WHERE user_id = ?", (user_id,))
    _exec("DELETE FROM test_sessions WHERE user_id = ?", (user_id,))
    _exec("DELETE FROM recommendations WHERE user_id = ?", (user_id,))
    logger.info("Removed %d attempts for user %s", removed, user_id)
    return removed


# -------------- recommendations --------------
def save_recommendations(
    user_id: str,
    exam_type: str,
    status: str,
    cards: Sequence[Dict[str, Any]],
    evidence: Dict[str, Any],
    updated_at: str,
) -> None:
    """Replace the stored recommendation cards of ``user_id`` for ``exam_type``."""
    _exec(
        """
        INSERT INTO recommendations (user_id, exam_type, status, cards, evidence, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id, exam_type) DO UPDATE SET
            status = excluded.status,
            cards = excluded.cards,
            evidence = excluded.evidence,
            updated_at = excluded.updated_at
        """,
        (user_id, exam_type, status, json.dumps(list(cards)), json.dumps(evidence), updated_at),
    )


def get_recommendations(user_id: str, exam_type: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM recommendations WHERE user_id = ? AND exam_type = ?",
        (user_id, exam_type),
    )
    if not rows:
        return None
    row = rows[0]
    return {
        "exam_type": row["exam_type"],
        "status": row["status"],
        "cards": json.loads(row["cards"]),
        "evidence": json.loads(row["evidence"]),
        "updated_at": row["updated_at"],
    }


def delete_recommendations(user_id: str, exam_type: str) -> int:
    return _exec(
        "DELETE FROM recommendations WHERE user_id = ? AND exam_type = ?",
        (user_id, exam_type),
    )
