"""
record_store.py
---------------
RecordVerify - Patient-Verified Health Records - Record persistence
--------------------------------------------------------------------
SQLite persistence for HealthRecord documents. Scalar fields are columns;
nested structures (extracted data, structured data, processing metadata,
verification call) are JSON text columns in camelCase wire form.

Table: health_records
  - One row per uploaded document, keyed by an opaque uuid4 hex id.
  - Indexed by (user_id, created_at) for the per-user listing.

Partial updates
  update_fields() takes a dict whose keys are record attributes
  ("structured_data") or dotted paths into a nested structure
  ("verification_call.status", "processing_metadata.timeline"). The row is
  read, patched and written back inside one IMMEDIATE transaction, so
  concurrent writers never interleave on the same record.

Monotonic status guard
  processing_status and verification_call.status only move forward (see
  schemas.is_forward_transition). A regressing value is logged and dropped
  from the update; the rest of the update still applies.

Public API:
    RecordStore.init_db()       - Create table + indexes if absent. Idempotent.
    RecordStore.create()        - INSERT a new record.
    RecordStore.find_by_id()    - SELECT one record or None.
    RecordStore.update_fields() - Guarded partial update, returns the new record.
    RecordStore.list_by_user()  - SELECT a user's records, newest first.
    RecordStore.delete()        - DELETE one record.
    get_connection()            - Context-manager yielding an open sqlite3.Connection.

Project: RecordVerify - Patient-Verified Health Records
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

from errors import RecordNotFoundError
from schemas import (
    CALL_STATUS_RANK,
    PROCESSING_STATUS_RANK,
    HealthRecord,
    is_forward_transition,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------
_DDL = """
CREATE TABLE IF NOT EXISTS health_records (
    id                   TEXT    PRIMARY KEY,
    user_id              TEXT    NOT NULL,
    title                TEXT    NOT NULL DEFAULT '',
    description          TEXT    NOT NULL DEFAULT '',
    document_type        TEXT    NOT NULL DEFAULT 'Medical Report',
    patient_name         TEXT    NOT NULL DEFAULT '',
    patient_phone        TEXT    NOT NULL DEFAULT '',
    file_url             TEXT,

    -- JSON documents
    extracted_data       TEXT,
    structured_data      TEXT,
    processing_metadata  TEXT    NOT NULL DEFAULT '{}',
    verification_call    TEXT    NOT NULL DEFAULT '{}',

    processing_status    TEXT    NOT NULL DEFAULT 'uploaded',

    -- Audit timestamps (ISO-8601 UTC)
    created_at           TEXT    NOT NULL,
    updated_at           TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_hr_user_created ON health_records (user_id, created_at DESC);
"""

_JSON_COLUMNS = ("extracted_data", "structured_data", "processing_metadata", "verification_call")
_SCALAR_COLUMNS = (
    "user_id", "title", "description", "document_type", "patient_name",
    "patient_phone", "file_url", "processing_status", "created_at", "updated_at",
)
_IMMUTABLE_FIELDS = {"id", "user_id", "created_at"}
_NESTED_WRITABLE = {"processing_metadata", "verification_call", "structured_data"}


@contextmanager
def get_connection(db_path: Path) -> Generator[sqlite3.Connection, None, None]:
    """
    Yield an open ``sqlite3.Connection`` that commits on clean exit and rolls
    back on exception.

    Yields:
        sqlite3.Connection: with ``row_factory = sqlite3.Row`` set.

    Raises:
        sqlite3.Error: propagated after rollback.
    """
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _dump_json(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


def _row_to_record(row: sqlite3.Row) -> HealthRecord:
    data: Dict[str, Any] = {"id": row["id"]}
    for col in _SCALAR_COLUMNS:
        data[col] = row[col]
    for col in _JSON_COLUMNS:
        raw = row[col]
        data[col] = json.loads(raw) if raw else None
    if data["processing_metadata"] is None:
        data["processing_metadata"] = {}
    if not data["verification_call"]:
        data.pop("verification_call")
    return HealthRecord.model_validate(data)


def _record_to_params(record: HealthRecord) -> Dict[str, Any]:
    wire = record.model_dump(mode="json", by_alias=True)
    plain = record.model_dump(mode="json")
    params = {"id": record.id}
    for col in _SCALAR_COLUMNS:
        params[col] = plain[col]
    params["extracted_data"] = _dump_json(wire["extractedData"])
    params["structured_data"] = _dump_json(plain["structured_data"])
    params["processing_metadata"] = _dump_json(plain["processing_metadata"])
    params["verification_call"] = _dump_json(wire["verificationCall"])
    return params


def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    """Assign *value* at a dotted *path* inside *doc*, creating dicts as needed."""
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        nxt = target.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            target[part] = nxt
        target = nxt
    target[parts[-1]] = value


class RecordStore:
    """
    SQLite-backed record repository.

    Args:
        db_path: SQLite file location. Tests pass a tmp_path file.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def init_db(self) -> None:
        """
        Create the health_records table and its indexes if they do not exist.

        Raises:
            sqlite3.Error: if the underlying SQLite operation fails.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with get_connection(self.db_path) as conn:
            conn.executescript(_DDL)
        logger.info("health_records DB ready at '%s'.", self.db_path)

    # ── Write operations ─────────────────────────────────────────────────────

    def create(self, record: HealthRecord) -> HealthRecord:
        """
        INSERT a new record.

        Returns:
            HealthRecord: The record as stored.

        Raises:
            sqlite3.IntegrityError: if the id already exists.
        """
        params = _record_to_params(record)
        columns = ", ".join(params)
        placeholders = ", ".join(f":{c}" for c in params)
        with get_connection(self.db_path) as conn:
            conn.execute(f"INSERT INTO health_records ({columns}) VALUES ({placeholders})", params)
        logger.debug("health_records: inserted %s (user=%s).", record.id, record.user_id)
        return record

    def update_fields(self, record_id: str, updates: Dict[str, Any]) -> HealthRecord:
        """
        Apply a partial update to one record.

        Args:
            record_id: Record to update.
            updates:   Attribute names or dotted paths mapped to new values.
                       extracted_data may only be replaced as a whole.

        Returns:
            HealthRecord: The record after the update.

        Raises:
            RecordNotFoundError: if no record has this id.
            ValueError:          for unknown or immutable fields.
            sqlite3.Error:       on I/O failures.
        """
        with get_connection(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT * FROM health_records WHERE id = ?", (record_id,)
            ).fetchone()
            if row is None:
                raise RecordNotFoundError(record_id)

            current = _row_to_record(row)
            doc = current.model_dump(mode="json")

            for key, value in updates.items():
                root = key.split(".", 1)[0]
                if root in _IMMUTABLE_FIELDS:
                    raise ValueError(f"Field '{root}' cannot be updated.")
                if root not in HealthRecord.model_fields:
                    raise ValueError(f"Unknown record field '{root}'.")
                if "." in key and root not in _NESTED_WRITABLE:
                    raise ValueError(f"Field '{root}' only supports full replacement.")

                if not self._status_allowed(key, value, current):
                    continue
                if "." in key:
                    _set_path(doc, key, value)
                else:
                    doc[key] = value

            doc["updated_at"] = utc_now_iso()
            updated = HealthRecord.model_validate(doc)

            params = _record_to_params(updated)
            params.pop("created_at")
            params.pop("user_id")
            assignments = ", ".join(f"{c} = :{c}" for c in params if c != "id")
            conn.execute(f"UPDATE health_records SET {assignments} WHERE id = :id", params)

        logger.debug("health_records: updated %s fields=%s.", record_id, sorted(updates))
        return updated

    @staticmethod
    def _status_allowed(key: str, value: Any, current: HealthRecord) -> bool:
        if key == "processing_status":
            new = value.value if hasattr(value, "value") else value
            old = current.processing_status.value
            if not is_forward_transition(old, new, PROCESSING_STATUS_RANK):
                logger.warning(
                    "Refusing processing_status regression %s -> %s on record %s.",
                    old, new, current.id,
                )
                return False
            return True

        new_call_status = None
        if key == "verification_call.status":
            new_call_status = value
        elif key == "verification_call" and isinstance(value, dict):
            # A different call id starts a new call lifecycle.
            new_call_id = value.get("call_id")
            if new_call_id and new_call_id != current.verification_call.call_id:
                return True
            new_call_status = value.get("status")
        if new_call_status is not None:
            old = current.verification_call.status
            if not is_forward_transition(old, new_call_status, CALL_STATUS_RANK):
                logger.warning(
                    "Refusing verification call status regression %s -> %s on record %s.",
                    old, new_call_status, current.id,
                )
                return False
        return True

    def delete(self, record_id: str) -> bool:
        """
        DELETE one record.

        Returns:
            bool: True if a row was removed.
        """
        with get_connection(self.db_path) as conn:
            cur = conn.execute("DELETE FROM health_records WHERE id = ?", (record_id,))
            removed = cur.rowcount > 0
        logger.debug("health_records: delete %s removed=%s.", record_id, removed)
        return removed

    # ── Read operations ──────────────────────────────────────────────────────

    def find_by_id(self, record_id: str) -> Optional[HealthRecord]:
        """SELECT one record by id; None when absent."""
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM health_records WHERE id = ?", (record_id,)
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def list_by_user(self, user_id: str) -> List[HealthRecord]:
        """SELECT all records owned by *user_id*, newest first."""
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM health_records WHERE user_id = ? ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [_row_to_record(r) for r in rows]
