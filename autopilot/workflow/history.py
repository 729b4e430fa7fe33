"""
Tool: Run History
Purpose: Query past workflow runs, their errors and summary statistics

Usage:
    from autopilot.workflow import history

    history.get_runs(workflow_id, limit=10, status="failed")
    history.get_stats(workflow_id)
    history.get_recent_errors(workflow_id)
"""

import json
from datetime import datetime
from typing import Any

from autopilot import storage


def _parse_json(text: str | None, default: Any) -> Any:
    if not text:
        return default
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return default


def _duration(started_at: str | None, completed_at: str | None) -> float | None:
    if not started_at or not completed_at:
        return None
    try:
        return (
            datetime.fromisoformat(completed_at) - datetime.fromisoformat(started_at)
        ).total_seconds()
    except ValueError:
        return None


def _run_to_dict(row, include_log: bool) -> dict[str, Any]:
    run = {
        "id": row["id"],
        "workflow_id": row["workflow_id"],
        "status": row["status"],
        "started_at": row["started_at"],
        "completed_at": row["completed_at"],
        "duration_seconds": _duration(row["started_at"], row["completed_at"]),
    }
    if "workflow_name" in row.keys():
        run["workflow_name"] = row["workflow_name"]
    if include_log:
        run["state"] = _parse_json(row["state_snapshot"], {})
        run["log"] = _parse_json(row["log"], [])
    return run


def get_runs(
    workflow_id: str,
    limit: int = 20,
    status: str | None = None,
    include_log: bool = False,
) -> list[dict[str, Any]]:
    """Get runs of one workflow, newest first."""
    query = "SELECT * FROM workflow_runs WHERE workflow_id = ?"
    params: list[Any] = [workflow_id]

    if status:
        query += " AND status = ?"
        params.append(status)

    query += " ORDER BY started_at DESC, rowid DESC LIMIT ?"
    params.append(limit)

    conn = storage.get_connection()
    rows = conn.execute(query, params).fetchall()
    conn.close()

    return [_run_to_dict(row, include_log) for row in rows]


def get_all_runs(
    limit: int = 20,
    status: str | None = None,
    include_log: bool = False,
    since: datetime | None = None,
) -> list[dict[str, Any]]:
    """Get runs across all workflows, newest first, with workflow names."""
    query = """
        SELECT r.*, w.name AS workflow_name
        FROM workflow_runs r
        JOIN workflows w ON r.workflow_id = w.id
        WHERE 1=1
    """
    params: list[Any] = []

    if status:
        query += " AND r.status = ?"
        params.append(status)

    if since:
        query += " AND r.started_at >= ?"
        params.append(storage.timestamp(since))

    query += " ORDER BY r.started_at DESC, r.rowid DESC LIMIT ?"
    params.append(limit)

    conn = storage.get_connection()
    rows = conn.execute(query, params).fetchall()
    conn.close()

    return [_run_to_dict(row, include_log) for row in rows]


def get_stats(workflow_id: str) -> dict[str, Any]:
    """
    Summary statistics over a workflow's finished runs.

    Returns:
        dict with total_runs, successful, failed, partial, success_rate
        (percent) and avg_duration_seconds
    """
    conn = storage.get_connection()
    row = conn.execute(
        """
        SELECT
            COUNT(*) AS total_runs,
            SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS successful,
            SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
            SUM(CASE WHEN status = 'partial' THEN 1 ELSE 0 END) AS partial,
            AVG((julianday(completed_at) - julianday(started_at)) * 86400) AS avg_duration
        FROM workflow_runs
        WHERE workflow_id = ? AND completed_at IS NOT NULL
    """,
        (workflow_id,),
    ).fetchone()
    conn.close()

    total = row["total_runs"] or 0
    successful = row["successful"] or 0

    return {
        "total_runs": total,
        "successful": successful,
        "failed": row["failed"] or 0,
        "partial": row["partial"] or 0,
        "success_rate": round(successful / total * 100, 1) if total else 0.0,
        "avg_duration_seconds": round(row["avg_duration"] or 0.0, 2),
    }


def get_recent_errors(workflow_id: str, limit: int = 5) -> list[dict[str, Any]]:
    """Error messages from the most recent failed or partial runs."""
    conn = storage.get_connection()
    rows = conn.execute(
        """
        SELECT id, started_at, log FROM workflow_runs
        WHERE workflow_id = ? AND status IN ('failed', 'partial')
        ORDER BY started_at DESC, rowid DESC
        LIMIT ?
    """,
        (workflow_id, limit),
    ).fetchall()
    conn.close()

    errors = []
    for row in rows:
        log = _parse_json(row["log"], [])
        messages = [
            entry["error"]
            for entry in log
            if isinstance(entry, dict) and entry.get("error")
        ]
        errors.append({"run_id": row["id"], "timestamp": row["started_at"], "errors": messages})
    return errors
