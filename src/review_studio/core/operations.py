"""Operation queue persistence: enqueue, lease, terminal transitions, stuck recovery."""

import json
import sqlite3
from datetime import datetime, timedelta, timezone

from review_studio.core.payloads import OperationPayload, SimulatePRPayload
from review_studio.db.models import OPERATION_STATUSES, Operation

_TS_FORMAT = "%Y-%m-%d %H:%M:%S"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_ts(dt: datetime) -> str:
    """Format a naive UTC datetime the way SQLite's datetime('now') does."""
    return dt.strftime(_TS_FORMAT)


def enqueue_operation(
    db: sqlite3.Connection,
    payload: OperationPayload,
    created_by: str | None = None,
) -> int:
    """Append an operation to the queue. Returns its ID."""
    cursor = db.execute(
        "INSERT INTO operations (operation_type, payload, created_by) VALUES (?, ?, ?)",
        (payload.operation_type, json.dumps(payload.to_dict()), created_by),
    )
    db.commit()
    return cursor.lastrowid


def get_operation(db: sqlite3.Connection, op_id: int) -> Operation | None:
    row = db.execute("SELECT * FROM operations WHERE id = ?", (op_id,)).fetchone()
    if not row:
        return None
    return _row_to_operation(row)


def get_operations_by_ids(db: sqlite3.Connection, ids: list[int]) -> list[Operation]:
    if not ids:
        return []
    placeholders = ", ".join("?" for _ in ids)
    rows = db.execute(
        f"SELECT * FROM operations WHERE id IN ({placeholders}) ORDER BY id", list(ids)
    ).fetchall()
    return [_row_to_operation(r) for r in rows]


def list_operations(
    db: sqlite3.Connection,
    status: str | None = None,
    limit: int = 50,
) -> list[Operation]:
    """List operations, newest first, optionally filtered by status."""
    query = "SELECT * FROM operations"
    params: list = []
    if status:
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY id DESC LIMIT ?"
    params.append(limit)
    return [_row_to_operation(r) for r in db.execute(query, params).fetchall()]


def list_pending_operations(db: sqlite3.Connection) -> list[Operation]:
    """Queued and processing operations in queue order."""
    rows = db.execute(
        "SELECT * FROM operations WHERE status IN ('queued', 'processing') ORDER BY id"
    ).fetchall()
    return [_row_to_operation(r) for r in rows]


def find_queued_simulation(db: sqlite3.Connection, pr_url: str) -> Operation | None:
    """Find a pending simulate_pr operation for a PR URL."""
    for op in list_pending_operations(db):
        if op.operation_type == SimulatePRPayload.operation_type and op.payload.get("prUrl") == pr_url:
            return op
    return None


def get_next_queued_operation(db: sqlite3.Connection) -> Operation | None:
    """The oldest queued operation (FIFO by enqueue order)."""
    row = db.execute(
        "SELECT * FROM operations WHERE status = 'queued' ORDER BY id LIMIT 1"
    ).fetchone()
    if not row:
        return None
    return _row_to_operation(row)


def mark_operation_processing(
    db: sqlite3.Connection,
    op_id: int,
    lease_owner: str,
    now: datetime,
    lease_duration: timedelta,
) -> bool:
    """Lease a queued operation. Returns False if it is no longer queued."""
    cursor = db.execute(
        """UPDATE operations
           SET status = 'processing', lease_owner = ?, lease_expires_at = ?,
               processing_started_at = ?
           WHERE id = ? AND status = 'queued'""",
        (lease_owner, format_ts(now + lease_duration), format_ts(now), op_id),
    )
    db.commit()
    return cursor.rowcount == 1


def mark_operation_completed(
    db: sqlite3.Connection,
    op_id: int,
    result: dict,
    lease_owner: str | None = None,
    now: datetime | None = None,
) -> bool:
    return _finish(db, op_id, "completed", lease_owner, now, result=json.dumps(result))


def mark_operation_failed(
    db: sqlite3.Connection,
    op_id: int,
    error: str,
    lease_owner: str | None = None,
    now: datetime | None = None,
) -> bool:
    return _finish(db, op_id, "failed", lease_owner, now, error=error)


def _finish(
    db: sqlite3.Connection,
    op_id: int,
    status: str,
    lease_owner: str | None,
    now: datetime | None,
    result: str | None = None,
    error: str | None = None,
) -> bool:
    query = """UPDATE operations
               SET status = ?, result = ?, error = ?, completed_at = ?,
                   lease_owner = NULL, lease_expires_at = NULL
               WHERE id = ? AND status = 'processing'"""
    params: list = [status, result, error, format_ts(now or utcnow()), op_id]
    if lease_owner is not None:
        query += " AND lease_owner = ?"
        params.append(lease_owner)
    cursor = db.execute(query, params)
    db.commit()
    return cursor.rowcount == 1


def get_last_finished_at(db: sqlite3.Connection) -> datetime | None:
    """When the most recent operation reached a terminal state, if any has."""
    row = db.execute(
        "SELECT MAX(completed_at) AS finished FROM operations WHERE status IN ('completed', 'failed')"
    ).fetchone()
    return _parse_dt(row["finished"])


def get_stuck_operations(
    db: sqlite3.Connection,
    now: datetime,
    timeout: timedelta,
) -> list[Operation]:
    """Processing operations whose lease expired or that started before ``now - timeout``."""
    rows = db.execute(
        """SELECT * FROM operations
           WHERE status = 'processing'
             AND (lease_expires_at < ? OR processing_started_at < ?)
           ORDER BY id""",
        (format_ts(now), format_ts(now - timeout)),
    ).fetchall()
    return [_row_to_operation(r) for r in rows]


def reset_stuck_operation(db: sqlite3.Connection, op_id: int) -> bool:
    """Return a stuck processing operation to the queue."""
    cursor = db.execute(
        """UPDATE operations
           SET status = 'queued', lease_owner = NULL, lease_expires_at = NULL,
               processing_started_at = NULL
           WHERE id = ? AND status = 'processing'""",
        (op_id,),
    )
    db.commit()
    return cursor.rowcount == 1


def cancel_operation(db: sqlite3.Connection, op_id: int) -> bool:
    """Delete an operation that has not been picked up yet."""
    cursor = db.execute(
        "DELETE FROM operations WHERE id = ? AND status = 'queued'", (op_id,)
    )
    db.commit()
    return cursor.rowcount == 1


def get_queue_status(db: sqlite3.Connection) -> dict:
    """Operation counts per status."""
    counts = {s: 0 for s in OPERATION_STATUSES}
    for row in db.execute("SELECT status, COUNT(*) AS n FROM operations GROUP BY status"):
        counts[row["status"]] = row["n"]
    counts["total"] = sum(counts[s] for s in OPERATION_STATUSES)
    return counts


def operation_dict(op: Operation) -> dict:
    return {
        "id": op.id,
        "operation_type": op.operation_type,
        "payload": op.payload,
        "status": op.status,
        "result": op.result,
        "error": op.error,
        "created_by": op.created_by,
        "created_at": op.created_at.isoformat() if op.created_at else None,
        "started_at": op.processing_started_at.isoformat() if op.processing_started_at else None,
        "completed_at": op.completed_at.isoformat() if op.completed_at else None,
    }


def _row_to_operation(row: sqlite3.Row) -> Operation:
    return Operation(
        id=row["id"],
        operation_type=row["operation_type"],
        payload=json.loads(row["payload"]),
        status=row["status"],
        result=json.loads(row["result"]) if row["result"] else None,
        error=row["error"],
        created_by=row["created_by"],
        lease_owner=row["lease_owner"],
        lease_expires_at=_parse_dt(row["lease_expires_at"]),
        created_at=_parse_dt(row["created_at"]),
        processing_started_at=_parse_dt(row["processing_started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
