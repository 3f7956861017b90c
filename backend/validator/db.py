from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
import hashlib
import json
from pathlib import Path
from typing import Iterable, Iterator
from uuid import uuid4

from validator.config import settings


_JSON_COLUMNS = {
    "quality_metrics_json": "quality_metrics",
    "smart_question_json": "smart_question",
    "citations_json": "citations",
    "metrics_json": "metrics",
    "diagnostics_json": "diagnostics",
    "payload_json": "payload",
}


def _database_path() -> Path:
    prefix = "sqlite:///"
    if not settings.database_url.startswith(prefix):
        raise RuntimeError(f"Unsupported DATABASE_URL {settings.database_url!r}; expected sqlite:///<path>.")
    return Path(settings.database_url[len(prefix) :])


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dump_json(value: object) -> str:
    return json.dumps(value, ensure_ascii=True, separators=(",", ":"), sort_keys=True)


def _row_to_dict(row: sqlite3.Row | None) -> dict[str, object] | None:
    if row is None:
        return None
    parsed = dict(row)
    for column, key in _JSON_COLUMNS.items():
        if column in parsed:
            raw = parsed.pop(column)
            parsed[key] = json.loads(raw) if raw else None
    for flag in ("degraded", "partial_failure"):
        if flag in parsed:
            parsed[flag] = bool(parsed[flag])
    return parsed


def init_db() -> None:
    db_path = _database_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    with sqlite3.connect(db_path) as conn:
        conn.execute("PRAGMA foreign_keys = ON")
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS validation_sessions (
                id TEXT PRIMARY KEY,
                unit_code TEXT NOT NULL,
                unit_url TEXT,
                unit_title TEXT,
                namespace TEXT NOT NULL UNIQUE,
                document_type TEXT NOT NULL,
                status TEXT NOT NULL,
                error TEXT,
                store_name TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                file_name TEXT NOT NULL,
                content_type TEXT NOT NULL,
                storage_path TEXT NOT NULL,
                indexing_status TEXT NOT NULL,
                index_store_ref TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(session_id) REFERENCES validation_sessions(id)
            );

            CREATE INDEX IF NOT EXISTS idx_documents_session_id ON documents(session_id);

            CREATE TABLE IF NOT EXISTS indexing_operations (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                document_id TEXT NOT NULL UNIQUE,
                status TEXT NOT NULL,
                external_name TEXT,
                error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(session_id) REFERENCES validation_sessions(id),
                FOREIGN KEY(document_id) REFERENCES documents(id)
            );

            CREATE INDEX IF NOT EXISTS idx_indexing_operations_session_id
                ON indexing_operations(session_id);

            CREATE TABLE IF NOT EXISTS unit_requirements (
                id TEXT PRIMARY KEY,
                category TEXT NOT NULL,
                number TEXT NOT NULL,
                text TEXT NOT NULL,
                element_text TEXT,
                unit_url TEXT,
                unit_code TEXT,
                sort_order INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_unit_requirements_url
                ON unit_requirements(category, unit_url, sort_order ASC);
            CREATE INDEX IF NOT EXISTS idx_unit_requirements_code
                ON unit_requirements(category, unit_code, sort_order ASC);

            CREATE TABLE IF NOT EXISTS validation_results (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                requirement_key TEXT NOT NULL,
                category TEXT NOT NULL,
                position INTEGER NOT NULL DEFAULT 0,
                generation INTEGER NOT NULL,
                status TEXT NOT NULL,
                reasoning TEXT NOT NULL,
                mapped_content TEXT NOT NULL,
                unmapped_content TEXT NOT NULL,
                recommendations TEXT NOT NULL,
                smart_question_json TEXT,
                citations_json TEXT NOT NULL,
                metrics_json TEXT NOT NULL,
                degraded INTEGER NOT NULL DEFAULT 0,
                diagnostics_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                supersedes TEXT,
                superseded_by TEXT,
                FOREIGN KEY(session_id) REFERENCES validation_sessions(id),
                UNIQUE(session_id, requirement_key, generation)
            );

            CREATE INDEX IF NOT EXISTS idx_validation_results_current
                ON validation_results(session_id, superseded_by, requirement_key);

            CREATE TABLE IF NOT EXISTS session_events (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                sequence_no INTEGER NOT NULL,
                event_type TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                payload_sha256 TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY(session_id) REFERENCES validation_sessions(id),
                UNIQUE(session_id, sequence_no)
            );
            """
        )
        _ensure_column(conn, "validation_sessions", "partial_failure", "INTEGER NOT NULL DEFAULT 0")
        _ensure_column(conn, "validation_sessions", "quality_metrics_json", "TEXT")


def _ensure_column(conn: sqlite3.Connection, table_name: str, column_name: str, column_def: str) -> None:
    rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    existing_columns = {str(row[1]) for row in rows}
    if column_name in existing_columns:
        return
    conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_def}")


@contextmanager
def get_conn(*, immediate: bool = False) -> Iterator[sqlite3.Connection]:
    """Open a connection; ``immediate`` takes the write lock up front for read-then-write blocks."""
    conn = sqlite3.connect(_database_path(), timeout=30.0)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA foreign_keys = ON")
        if immediate:
            conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


# --- sessions ---------------------------------------------------------------


def create_session(
    *,
    unit_code: str,
    unit_url: str | None,
    unit_title: str | None,
    document_type: str,
    namespace: str | None = None,
) -> dict[str, object]:
    now = _utc_now_iso()
    session_id = str(uuid4())
    row = {
        "id": session_id,
        "unit_code": unit_code,
        "unit_url": unit_url,
        "unit_title": unit_title,
        "namespace": namespace or f"session-{session_id}",
        "document_type": document_type,
        "status": "pending",
        "created_at": now,
        "updated_at": now,
    }
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO validation_sessions (
                id, unit_code, unit_url, unit_title, namespace, document_type, status, created_at, updated_at
            )
            VALUES (
                :id, :unit_code, :unit_url, :unit_title, :namespace, :document_type, :status, :created_at, :updated_at
            )
            """,
            row,
        )
    created = get_session(session_id)
    assert created is not None
    return created


def get_session(session_id: str) -> dict[str, object] | None:
    with get_conn() as conn:
        row = conn.execute("SELECT * FROM validation_sessions WHERE id = ?", (session_id,)).fetchone()
    return _row_to_dict(row)


def compare_and_set_session_status(
    session_id: str,
    *,
    expected: Iterable[str],
    new_status: str,
    error: str | None = None,
    partial_failure: bool = False,
) -> bool:
    """Move a session to ``new_status`` only if it is currently in one of ``expected``.

    Returns True for the single caller whose update matched a row.
    """
    expected_statuses = tuple(expected)
    if not expected_statuses:
        return False
    placeholders = ", ".join("?" for _ in expected_statuses)
    with get_conn() as conn:
        cursor = conn.execute(
            f"""
            UPDATE validation_sessions
            SET status = ?, error = ?, partial_failure = ?, updated_at = ?
            WHERE id = ? AND status IN ({placeholders})
            """,
            (new_status, error, int(partial_failure), _utc_now_iso(), session_id, *expected_statuses),
        )
        return cursor.rowcount == 1


def set_session_partial_failure(session_id: str, partial_failure: bool) -> None:
    with get_conn() as conn:
        conn.execute(
            "UPDATE validation_sessions SET partial_failure = ?, updated_at = ? WHERE id = ?",
            (int(partial_failure), _utc_now_iso(), session_id),
        )


def set_session_store_name(session_id: str, store_name: str) -> None:
    with get_conn() as conn:
        conn.execute(
            "UPDATE validation_sessions SET store_name = ?, updated_at = ? WHERE id = ?",
            (store_name, _utc_now_iso(), session_id),
        )


def set_session_quality_metrics(session_id: str, metrics: dict[str, object]) -> None:
    with get_conn() as conn:
        conn.execute(
            "UPDATE validation_sessions SET quality_metrics_json = ?, updated_at = ? WHERE id = ?",
            (_dump_json(metrics), _utc_now_iso(), session_id),
        )


# --- documents & indexing operations -----------------------------------------


def create_document(
    *,
    session_id: str,
    file_name: str,
    content_type: str,
    storage_path: str,
) -> dict[str, object]:
    now = _utc_now_iso()
    document = {
        "id": str(uuid4()),
        "session_id": session_id,
        "file_name": file_name,
        "content_type": content_type,
        "storage_path": storage_path,
        "indexing_status": "unindexed",
        "index_store_ref": None,
        "created_at": now,
        "updated_at": now,
    }
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO documents (
                id, session_id, file_name, content_type, storage_path, indexing_status, index_store_ref,
                created_at, updated_at
            )
            VALUES (
                :id, :session_id, :file_name, :content_type, :storage_path, :indexing_status, :index_store_ref,
                :created_at, :updated_at
            )
            """,
            document,
        )
    return document


def get_document(document_id: str) -> dict[str, object] | None:
    with get_conn() as conn:
        row = conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
    return _row_to_dict(row)


def list_session_documents(session_id: str) -> list[dict[str, object]]:
    with get_conn() as conn:
        rows = conn.execute(
            "SELECT * FROM documents WHERE session_id = ? ORDER BY created_at ASC, id ASC",
            (session_id,),
        ).fetchall()
    return [dict(row) for row in rows]


def update_document_indexing(
    document_id: str,
    indexing_status: str,
    *,
    index_store_ref: str | None = None,
) -> None:
    with get_conn() as conn:
        conn.execute(
            """
            UPDATE documents
            SET indexing_status = ?, index_store_ref = COALESCE(?, index_store_ref), updated_at = ?
            WHERE id = ?
            """,
            (indexing_status, index_store_ref, _utc_now_iso(), document_id),
        )


def create_indexing_operation(
    *,
    session_id: str,
    document_id: str,
    status: str = "pending",
    external_name: str | None = None,
) -> dict[str, object]:
    now = _utc_now_iso()
    operation = {
        "id": str(uuid4()),
        "session_id": session_id,
        "document_id": document_id,
        "status": status,
        "external_name": external_name,
        "error": None,
        "created_at": now,
        "updated_at": now,
    }
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO indexing_operations (
                id, session_id, document_id, status, external_name, error, created_at, updated_at
            )
            VALUES (:id, :session_id, :document_id, :status, :external_name, :error, :created_at, :updated_at)
            """,
            operation,
        )
    return operation


def get_indexing_operation(operation_id: str) -> dict[str, object] | None:
    with get_conn() as conn:
        row = conn.execute("SELECT * FROM indexing_operations WHERE id = ?", (operation_id,)).fetchone()
    return _row_to_dict(row)


def get_indexing_operation_for_document(document_id: str) -> dict[str, object] | None:
    with get_conn() as conn:
        row = conn.execute(
            "SELECT * FROM indexing_operations WHERE document_id = ?",
            (document_id,),
        ).fetchone()
    return _row_to_dict(row)


def list_session_operations(session_id: str) -> list[dict[str, object]]:
    with get_conn() as conn:
        rows = conn.execute(
            """
            SELECT o.*, d.file_name AS file_name
            FROM indexing_operations o
            JOIN documents d ON d.id = o.document_id
            WHERE o.session_id = ?
            ORDER BY o.created_at ASC, o.id ASC
            """,
            (session_id,),
        ).fetchall()
    return [dict(row) for row in rows]


def update_indexing_operation_status(
    operation_id: str,
    status: str,
    *,
    error: str | None = None,
    external_name: str | None = None,
) -> bool:
    """Record a status change; terminal statuses are never overwritten.

    Returns False when the operation was already terminal.
    """
    with get_conn() as conn:
        cursor = conn.execute(
            """
            UPDATE indexing_operations
            SET status = ?, error = COALESCE(?, error), external_name = COALESCE(?, external_name), updated_at = ?
            WHERE id = ? AND status NOT IN ('completed', 'failed')
            """,
            (status, error, external_name, _utc_now_iso(), operation_id),
        )
        return cursor.rowcount == 1


def reset_failed_operations(session_id: str) -> int:
    with get_conn() as conn:
        cursor = conn.execute(
            """
            UPDATE indexing_operations
            SET status = 'pending', error = NULL, updated_at = ?
            WHERE session_id = ? AND status = 'failed'
            """,
            (_utc_now_iso(), session_id),
        )
        return cursor.rowcount


# --- requirement reference data -----------------------------------------------


def insert_unit_requirements(rows: list[dict[str, object]]) -> int:
    prepared = []
    for index, row in enumerate(rows):
        prepared.append(
            {
                "id": str(row.get("id") or uuid4()),
                "category": row["category"],
                "number": str(row["number"]),
                "text": row["text"],
                "element_text": row.get("element_text"),
                "unit_url": row.get("unit_url"),
                "unit_code": row.get("unit_code"),
                "sort_order": int(row.get("sort_order", index)),
            }
        )
    with get_conn() as conn:
        conn.executemany(
            """
            INSERT INTO unit_requirements (id, category, number, text, element_text, unit_url, unit_code, sort_order)
            VALUES (:id, :category, :number, :text, :element_text, :unit_url, :unit_code, :sort_order)
            """,
            prepared,
        )
    return len(prepared)


def query_unit_requirements(
    category: str,
    *,
    unit_url: str | None = None,
    unit_code: str | None = None,
) -> list[dict[str, object]]:
    if (unit_url is None) == (unit_code is None):
        raise ValueError("Exactly one of unit_url or unit_code is required.")
    column, value = ("unit_url", unit_url) if unit_url is not None else ("unit_code", unit_code)
    with get_conn() as conn:
        rows = conn.execute(
            f"""
            SELECT id, category, number, text, element_text, unit_url, unit_code, sort_order
            FROM unit_requirements
            WHERE category = ? AND {column} = ?
            ORDER BY sort_order ASC, id ASC
            """,
            (category, value),
        ).fetchall()
    return [dict(row) for row in rows]


# --- validation results ---------------------------------------------------------


_RESULT_COLUMNS = (
    "id",
    "session_id",
    "requirement_key",
    "category",
    "position",
    "generation",
    "status",
    "reasoning",
    "mapped_content",
    "unmapped_content",
    "recommendations",
    "smart_question_json",
    "citations_json",
    "metrics_json",
    "degraded",
    "diagnostics_json",
    "created_at",
    "supersedes",
    "superseded_by",
)


def get_result(session_id: str, requirement_key: str, generation: int) -> dict[str, object] | None:
    with get_conn() as conn:
        row = conn.execute(
            """
            SELECT * FROM validation_results
            WHERE session_id = ? AND requirement_key = ? AND generation = ?
            """,
            (session_id, requirement_key, generation),
        ).fetchone()
    return _row_to_dict(row)


def get_current_result(session_id: str, requirement_key: str) -> dict[str, object] | None:
    with get_conn() as conn:
        row = conn.execute(
            """
            SELECT * FROM validation_results
            WHERE session_id = ? AND requirement_key = ? AND superseded_by IS NULL
            """,
            (session_id, requirement_key),
        ).fetchone()
    return _row_to_dict(row)


def insert_result_superseding(
    result: dict[str, object],
    *,
    require_session_status: str | None = None,
) -> tuple[dict[str, object] | None, bool]:
    """Insert a result row and mark the previous current row for the same key as superseded.

    Returns ``(row, created)``; an existing row with the same (session, key, generation) is
    returned unchanged with ``created=False``. When ``require_session_status`` is given and the
    session is in any other status, nothing is written and ``(None, False)`` is returned.
    """
    session_id = str(result["session_id"])
    requirement_key = str(result["requirement_key"])
    generation = int(result["generation"])  # type: ignore[arg-type]

    with get_conn(immediate=True) as conn:
        if require_session_status is not None:
            status_row = conn.execute(
                "SELECT status FROM validation_sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
            if status_row is None or status_row["status"] != require_session_status:
                return None, False

        existing = conn.execute(
            """
            SELECT * FROM validation_results
            WHERE session_id = ? AND requirement_key = ? AND generation = ?
            """,
            (session_id, requirement_key, generation),
        ).fetchone()
        if existing is not None:
            parsed = _row_to_dict(existing)
            assert parsed is not None
            return parsed, False

        previous = conn.execute(
            """
            SELECT id, generation FROM validation_results
            WHERE session_id = ? AND requirement_key = ? AND superseded_by IS NULL
            """,
            (session_id, requirement_key),
        ).fetchone()
        if previous is not None and int(previous["generation"]) > generation:
            raise ValueError(
                f"Result generation {generation} for '{requirement_key}' is older than current "
                f"generation {previous['generation']}."
            )

        row = {
            "id": str(uuid4()),
            "session_id": session_id,
            "requirement_key": requirement_key,
            "category": result["category"],
            "position": int(result.get("position", 0)),  # type: ignore[arg-type]
            "generation": generation,
            "status": result["status"],
            "reasoning": result["reasoning"],
            "mapped_content": result["mapped_content"],
            "unmapped_content": result["unmapped_content"],
            "recommendations": result["recommendations"],
            "smart_question_json": (
                _dump_json(result["smart_question"]) if result.get("smart_question") is not None else None
            ),
            "citations_json": _dump_json(result.get("citations") or []),
            "metrics_json": _dump_json(result.get("metrics") or {}),
            "degraded": int(bool(result.get("degraded"))),
            "diagnostics_json": _dump_json(result.get("diagnostics") or []),
            "created_at": _utc_now_iso(),
            "supersedes": previous["id"] if previous is not None else None,
            "superseded_by": None,
        }
        columns = ", ".join(_RESULT_COLUMNS)
        values = ", ".join(f":{column}" for column in _RESULT_COLUMNS)
        conn.execute(f"INSERT INTO validation_results ({columns}) VALUES ({values})", row)
        if previous is not None:
            conn.execute(
                "UPDATE validation_results SET superseded_by = ? WHERE id = ?",
                (row["id"], previous["id"]),
            )
        inserted = conn.execute("SELECT * FROM validation_results WHERE id = ?", (row["id"],)).fetchone()

    parsed = _row_to_dict(inserted)
    assert parsed is not None
    return parsed, True


def list_results(session_id: str, *, include_superseded: bool = False) -> list[dict[str, object]]:
    query = "SELECT * FROM validation_results WHERE session_id = ?"
    if not include_superseded:
        query += " AND superseded_by IS NULL"
    query += " ORDER BY position ASC, requirement_key ASC, generation ASC"
    with get_conn() as conn:
        rows = conn.execute(query, (session_id,)).fetchall()
    return [parsed for parsed in (_row_to_dict(row) for row in rows) if parsed is not None]


# --- session events ----------------------------------------------------------------


def append_session_event(
    session_id: str,
    event_type: str,
    payload: dict[str, object],
) -> dict[str, object]:
    payload_json = _dump_json(payload)
    checksum = hashlib.sha256(payload_json.encode("utf-8")).hexdigest()
    with get_conn(immediate=True) as conn:
        next_sequence = conn.execute(
            "SELECT COALESCE(MAX(sequence_no), 0) + 1 FROM session_events WHERE session_id = ?",
            (session_id,),
        ).fetchone()[0]
        row = {
            "id": str(uuid4()),
            "session_id": session_id,
            "sequence_no": int(next_sequence),
            "event_type": event_type,
            "payload_json": payload_json,
            "payload_sha256": checksum,
            "created_at": _utc_now_iso(),
        }
        conn.execute(
            """
            INSERT INTO session_events (id, session_id, sequence_no, event_type, payload_json, payload_sha256, created_at)
            VALUES (:id, :session_id, :sequence_no, :event_type, :payload_json, :payload_sha256, :created_at)
            """,
            row,
        )
    parsed = dict(row)
    parsed["payload"] = json.loads(parsed.pop("payload_json"))
    return parsed


def list_session_events(session_id: str, *, after_sequence: int = 0) -> list[dict[str, object]]:
    with get_conn() as conn:
        rows = conn.execute(
            """
            SELECT id, session_id, sequence_no, event_type, payload_json, payload_sha256, created_at
            FROM session_events
            WHERE session_id = ? AND sequence_no > ?
            ORDER BY sequence_no ASC
            """,
            (session_id, after_sequence),
        ).fetchall()
    return [parsed for parsed in (_row_to_dict(row) for row in rows) if parsed is not None]
