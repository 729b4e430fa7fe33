"""
Tool: Storage
Purpose: SQLite persistence for workflows, runs, corrections, triggers and actions

Features:
- Schema creation on first connection
- Workflow CRUD (never hard-deleted; disable instead)
- Run lifecycle with JSON state snapshot and step log
- Append-only corrections, trigger history and watched items
- Guarded action status updates (UPDATE ... WHERE status = ?)

Usage:
    from autopilot import storage
    storage.create_workflow("pdf_sweep", "Collect PDFs", trigger, steps)
    workflow = storage.get_workflow("pdf_sweep")

Database: data/autopilot.db (override with AUTOPILOT_DB_PATH)
"""

import json
import sqlite3
import uuid
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from autopilot import DB_PATH
from autopilot.automation.models import Action, ActionStatus, WatchedItem, can_transition
from autopilot.errors import InvalidTransitionError
from autopilot.workflow.models import (
    Correction,
    CorrectionType,
    RunStatus,
    Step,
    TriggerEvent,
    Workflow,
    WorkflowRun,
    parse_trigger_config,
)


def timestamp(now: datetime | None = None) -> str:
    """Format a timestamp the way every table stores it."""
    return (now or datetime.now()).isoformat(timespec="seconds")


def get_connection() -> sqlite3.Connection:
    """Get database connection, creating tables if needed."""
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(DB_PATH))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")

    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS workflows (
            id TEXT PRIMARY KEY,
            name TEXT UNIQUE NOT NULL,
            description TEXT,
            trigger_type TEXT NOT NULL DEFAULT 'manual',
            trigger_config TEXT,
            overall_confidence REAL DEFAULT 0,
            run_count INTEGER DEFAULT 0,
            success_count INTEGER DEFAULT 0,
            enabled INTEGER DEFAULT 1,
            created_at DATETIME,
            updated_at DATETIME
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS workflow_steps (
            workflow_id TEXT NOT NULL,
            step_order INTEGER NOT NULL,
            tool TEXT NOT NULL,
            params TEXT,
            output_key TEXT,
            description TEXT,
            confidence REAL DEFAULT 0 CHECK(confidence >= 0 AND confidence <= 1),
            PRIMARY KEY (workflow_id, step_order),
            FOREIGN KEY (workflow_id) REFERENCES workflows(id)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS workflow_runs (
            id TEXT PRIMARY KEY,
            workflow_id TEXT NOT NULL,
            status TEXT CHECK(status IN ('running', 'completed', 'failed', 'partial')) NOT NULL,
            started_at DATETIME NOT NULL,
            completed_at DATETIME,
            state_snapshot TEXT,
            log TEXT,
            FOREIGN KEY (workflow_id) REFERENCES workflows(id)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS step_corrections (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            workflow_id TEXT NOT NULL,
            step_order INTEGER NOT NULL,
            correction_type TEXT CHECK(correction_type IN ('param_edit', 'output_filter')) NOT NULL,
            original_value TEXT,
            corrected_value TEXT,
            created_at DATETIME NOT NULL,
            FOREIGN KEY (workflow_id) REFERENCES workflows(id)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS trigger_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            workflow_id TEXT NOT NULL,
            trigger_type TEXT NOT NULL,
            trigger_data TEXT,
            triggered_at DATETIME NOT NULL,
            FOREIGN KEY (workflow_id) REFERENCES workflows(id)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS actions (
            id TEXT PRIMARY KEY,
            intent TEXT NOT NULL,
            description TEXT NOT NULL,
            source_id TEXT,
            extracted_data TEXT,
            action_plan TEXT,
            status TEXT CHECK(status IN ('pending', 'notified', 'executing', 'completed', 'failed', 'cancelled')) NOT NULL,
            confidence REAL,
            not_before DATETIME,
            result TEXT,
            created_at DATETIME NOT NULL,
            executed_at DATETIME
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS watched_items (
            source TEXT NOT NULL,
            source_id TEXT NOT NULL,
            first_seen_at DATETIME NOT NULL,
            PRIMARY KEY (source, source_id)
        )
    """)

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_workflows_enabled ON workflows(enabled)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_runs_workflow ON workflow_runs(workflow_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_runs_started ON workflow_runs(started_at)")
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_corrections_step ON step_corrections(workflow_id, step_order)"
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_trigger_history_workflow ON trigger_history(workflow_id, triggered_at)"
    )
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_actions_status ON actions(status)")

    conn.commit()
    return conn


# =============================================================================
# Workflows and steps
# =============================================================================


def _coerce_steps(steps: list[Step | dict[str, Any]]) -> list[Step]:
    coerced = []
    for idx, step in enumerate(steps, start=1):
        if isinstance(step, dict):
            step = Step.from_dict(step)
        step.order = idx
        step.confidence = min(max(step.confidence, 0.0), 1.0)
        coerced.append(step)
    return coerced


def create_workflow(
    name: str,
    description: str,
    trigger: Any,
    steps: list[Step | dict[str, Any]],
    enabled: bool = True,
) -> dict[str, Any]:
    """
    Create a new workflow with its ordered steps.

    Args:
        name: Unique workflow name
        description: Free-text description
        trigger: Trigger config (mapping or trigger model); validated here
        steps: Ordered steps; order indexes are reassigned 1..n
        enabled: Whether triggers should fire for this workflow

    Returns:
        dict with success status and workflow id
    """
    try:
        trigger_model = parse_trigger_config(trigger or {"type": "manual"})
    except ValidationError as e:
        return {"success": False, "error": f"Invalid trigger configuration: {e}"}

    if not steps:
        return {"success": False, "error": "A workflow needs at least one step"}

    try:
        step_models = _coerce_steps(steps)
    except (KeyError, TypeError, ValueError) as e:
        return {"success": False, "error": f"Invalid step definition: {e}"}

    workflow_id = str(uuid.uuid4())
    now = timestamp()

    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute(
            """
            INSERT INTO workflows (id, name, description, trigger_type, trigger_config,
                                   enabled, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                workflow_id,
                name,
                description,
                trigger_model.type,
                trigger_model.model_dump_json(),
                1 if enabled else 0,
                now,
                now,
            ),
        )
        for step in step_models:
            cursor.execute(
                """
                INSERT INTO workflow_steps (workflow_id, step_order, tool, params,
                                            output_key, description, confidence)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    workflow_id,
                    step.order,
                    step.tool,
                    json.dumps(step.params),
                    step.output_key,
                    step.description,
                    step.confidence,
                ),
            )
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        conn.close()
        return {"success": False, "error": f"Workflow with name '{name}' already exists"}

    conn.close()

    return {
        "success": True,
        "workflow_id": workflow_id,
        "name": name,
        "trigger_type": trigger_model.type,
        "step_count": len(step_models),
        "message": f"Workflow '{name}' created successfully",
    }


def load_steps(workflow_id: str) -> list[Step]:
    """Load a workflow's steps in execution order."""
    conn = get_connection()
    rows = conn.execute(
        "SELECT * FROM workflow_steps WHERE workflow_id = ? ORDER BY step_order",
        (workflow_id,),
    ).fetchall()
    conn.close()
    return [Step.from_row(row) for row in rows]


def get_workflow(workflow_id_or_name: str) -> Workflow | None:
    """Get a workflow (with steps) by ID or name."""
    conn = get_connection()
    row = conn.execute(
        "SELECT * FROM workflows WHERE id = ? OR name = ?",
        (workflow_id_or_name, workflow_id_or_name),
    ).fetchone()
    conn.close()

    if not row:
        return None

    return Workflow.from_row(row, load_steps(row["id"]))


def list_workflows(
    enabled: bool | None = None,
    trigger_type: str | None = None,
) -> list[Workflow]:
    """List workflows with their steps, most-run first."""
    conn = get_connection()

    query = "SELECT * FROM workflows WHERE 1=1"
    params: list[Any] = []

    if enabled is not None:
        query += " AND enabled = ?"
        params.append(1 if enabled else 0)

    if trigger_type:
        query += " AND trigger_type = ?"
        params.append(trigger_type)

    query += " ORDER BY run_count DESC, created_at ASC"

    rows = conn.execute(query, params).fetchall()
    conn.close()

    return [Workflow.from_row(row, load_steps(row["id"])) for row in rows]


def update_workflow(workflow_id: str, **updates) -> dict[str, Any]:
    """Update workflow description, trigger or enabled flag."""
    workflow = get_workflow(workflow_id)
    if not workflow:
        return {"success": False, "error": f"Workflow '{workflow_id}' not found"}

    allowed_fields = {"description", "trigger", "enabled"}
    valid_updates = {k: v for k, v in updates.items() if k in allowed_fields}

    if not valid_updates:
        return {"success": False, "error": "No valid fields to update"}

    set_clauses = []
    params: list[Any] = []
    for field, value in valid_updates.items():
        if field == "trigger":
            try:
                trigger_model = parse_trigger_config(value)
            except ValidationError as e:
                return {"success": False, "error": f"Invalid trigger configuration: {e}"}
            set_clauses.append("trigger_type = ?")
            params.append(trigger_model.type)
            set_clauses.append("trigger_config = ?")
            params.append(trigger_model.model_dump_json())
        elif field == "enabled":
            set_clauses.append("enabled = ?")
            params.append(1 if value else 0)
        else:
            set_clauses.append(f"{field} = ?")
            params.append(value)

    set_clauses.append("updated_at = ?")
    params.append(timestamp())
    params.append(workflow.id)

    conn = get_connection()
    conn.execute(f"UPDATE workflows SET {', '.join(set_clauses)} WHERE id = ?", params)
    conn.commit()
    conn.close()

    return {
        "success": True,
        "workflow_id": workflow.id,
        "updated_fields": list(valid_updates.keys()),
        "message": f"Workflow '{workflow.name}' updated",
    }


def enable_workflow(workflow_id: str) -> dict[str, Any]:
    """Enable a workflow."""
    return update_workflow(workflow_id, enabled=True)


def disable_workflow(workflow_id: str) -> dict[str, Any]:
    """Disable a workflow. Workflows are never deleted."""
    return update_workflow(workflow_id, enabled=False)


def update_step_confidence(workflow_id: str, step_order: int, confidence: float) -> None:
    """Persist a step's confidence, clamped to [0, 1]."""
    confidence = min(max(float(confidence), 0.0), 1.0)
    conn = get_connection()
    conn.execute(
        "UPDATE workflow_steps SET confidence = ? WHERE workflow_id = ? AND step_order = ?",
        (confidence, workflow_id, step_order),
    )
    conn.commit()
    conn.close()


def update_overall_confidence(workflow_id: str) -> float:
    """Recompute a workflow's confidence as the mean of its step confidences."""
    conn = get_connection()
    avg = conn.execute(
        "SELECT AVG(confidence) FROM workflow_steps WHERE workflow_id = ?",
        (workflow_id,),
    ).fetchone()[0]
    overall = float(avg or 0.0)
    conn.execute(
        "UPDATE workflows SET overall_confidence = ? WHERE id = ?",
        (overall, workflow_id),
    )
    conn.commit()
    conn.close()
    return overall


def increment_run_count(workflow_id: str, success: bool) -> None:
    """Count a finished run against the workflow."""
    conn = get_connection()
    conn.execute(
        """
        UPDATE workflows
        SET run_count = run_count + 1,
            success_count = success_count + ?,
            updated_at = ?
        WHERE id = ?
    """,
        (1 if success else 0, timestamp(), workflow_id),
    )
    conn.commit()
    conn.close()


# =============================================================================
# Runs
# =============================================================================


def start_run(workflow_id: str, now: datetime | None = None) -> str:
    """Create a running workflow run and return its ID."""
    run_id = str(uuid.uuid4())
    conn = get_connection()
    conn.execute(
        """
        INSERT INTO workflow_runs (id, workflow_id, status, started_at, state_snapshot, log)
        VALUES (?, ?, ?, ?, '{}', '[]')
    """,
        (run_id, workflow_id, RunStatus.RUNNING.value, timestamp(now)),
    )
    conn.commit()
    conn.close()
    return run_id


def complete_run(
    run_id: str,
    status: RunStatus | str,
    state: dict[str, Any],
    log: list[dict[str, Any]],
    now: datetime | None = None,
) -> None:
    """Finish a run. Completed runs are never modified again."""
    conn = get_connection()
    conn.execute(
        """
        UPDATE workflow_runs
        SET status = ?, completed_at = ?, state_snapshot = ?, log = ?
        WHERE id = ? AND completed_at IS NULL
    """,
        (
            RunStatus(status).value,
            timestamp(now),
            json.dumps(state, default=str),
            json.dumps(log, default=str),
            run_id,
        ),
    )
    conn.commit()
    conn.close()


def get_run(run_id: str) -> WorkflowRun | None:
    """Get a workflow run by ID."""
    conn = get_connection()
    row = conn.execute("SELECT * FROM workflow_runs WHERE id = ?", (run_id,)).fetchone()
    conn.close()
    return WorkflowRun.from_row(row) if row else None


# =============================================================================
# Corrections
# =============================================================================


def record_correction(
    workflow_id: str,
    step_order: int,
    correction_type: CorrectionType | str,
    original: Any,
    corrected: Any,
    now: datetime | None = None,
) -> None:
    """Append a correction record."""
    conn = get_connection()
    conn.execute(
        """
        INSERT INTO step_corrections (workflow_id, step_order, correction_type,
                                      original_value, corrected_value, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
    """,
        (
            workflow_id,
            step_order,
            CorrectionType(correction_type).value,
            _as_text(original),
            _as_text(corrected),
            timestamp(now),
        ),
    )
    conn.commit()
    conn.close()


def list_corrections(
    workflow_id: str,
    step_order: int,
    correction_type: CorrectionType | str | None = None,
) -> list[Correction]:
    """List corrections for a step, newest first."""
    query = "SELECT * FROM step_corrections WHERE workflow_id = ? AND step_order = ?"
    params: list[Any] = [workflow_id, step_order]
    if correction_type:
        query += " AND correction_type = ?"
        params.append(CorrectionType(correction_type).value)
    query += " ORDER BY created_at DESC, id DESC"

    conn = get_connection()
    rows = conn.execute(query, params).fetchall()
    conn.close()
    return [Correction.from_row(row) for row in rows]


def count_corrections(workflow_id: str, step_order: int) -> int:
    """Count every correction ever recorded against a step."""
    conn = get_connection()
    count = conn.execute(
        "SELECT COUNT(*) FROM step_corrections WHERE workflow_id = ? AND step_order = ?",
        (workflow_id, step_order),
    ).fetchone()[0]
    conn.close()
    return count


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, default=str)


# =============================================================================
# Trigger history
# =============================================================================


def record_trigger(
    workflow_id: str,
    trigger_type: str,
    trigger_data: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> int:
    """Append a trigger firing and return its row ID."""
    conn = get_connection()
    cursor = conn.execute(
        """
        INSERT INTO trigger_history (workflow_id, trigger_type, trigger_data, triggered_at)
        VALUES (?, ?, ?, ?)
    """,
        (workflow_id, trigger_type, json.dumps(trigger_data or {}, default=str), timestamp(now)),
    )
    conn.commit()
    row_id = cursor.lastrowid
    conn.close()
    return row_id


def get_trigger_history(
    workflow_id: str,
    limit: int = 10,
    since: datetime | None = None,
) -> list[TriggerEvent]:
    """Get a workflow's trigger firings, newest first."""
    query = "SELECT * FROM trigger_history WHERE workflow_id = ?"
    params: list[Any] = [workflow_id]
    if since is not None:
        query += " AND triggered_at >= ?"
        params.append(timestamp(since))
    query += " ORDER BY triggered_at DESC, id DESC LIMIT ?"
    params.append(limit)

    conn = get_connection()
    rows = conn.execute(query, params).fetchall()
    conn.close()
    return [TriggerEvent.from_row(row) for row in rows]


# =============================================================================
# Actions
# =============================================================================


def insert_action(
    intent: str,
    description: str,
    source_id: str,
    extracted_data: dict[str, Any],
    action_plan: str,
    confidence: float,
    now: datetime | None = None,
) -> Action:
    """Insert a new pending action."""
    action_id = str(uuid.uuid4())
    created_at = timestamp(now)
    conn = get_connection()
    conn.execute(
        """
        INSERT INTO actions (id, intent, description, source_id, extracted_data,
                             action_plan, status, confidence, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
    """,
        (
            action_id,
            intent,
            description,
            source_id,
            json.dumps(extracted_data, default=str),
            action_plan,
            ActionStatus.PENDING.value,
            confidence,
            created_at,
        ),
    )
    conn.commit()
    conn.close()

    return Action(
        id=action_id,
        intent=intent,
        description=description,
        source_id=source_id,
        extracted_data=extracted_data,
        action_plan=action_plan,
        status=ActionStatus.PENDING,
        confidence=confidence,
        created_at=created_at,
    )


def get_action(action_id: str) -> Action | None:
    """Get an action by ID."""
    conn = get_connection()
    row = conn.execute("SELECT * FROM actions WHERE id = ?", (action_id,)).fetchone()
    conn.close()
    return Action.from_row(row) if row else None


def list_actions(
    statuses: list[ActionStatus | str] | None = None,
    ready_before: datetime | None = None,
    limit: int = 100,
) -> list[Action]:
    """List actions, oldest first, optionally filtered by status and countdown expiry."""
    query = "SELECT * FROM actions WHERE 1=1"
    params: list[Any] = []

    if statuses:
        placeholders = ", ".join("?" for _ in statuses)
        query += f" AND status IN ({placeholders})"
        params.extend(ActionStatus(s).value for s in statuses)

    if ready_before is not None:
        query += " AND not_before IS NOT NULL AND not_before <= ?"
        params.append(timestamp(ready_before))

    query += " ORDER BY created_at ASC, rowid ASC LIMIT ?"
    params.append(limit)

    conn = get_connection()
    rows = conn.execute(query, params).fetchall()
    conn.close()
    return [Action.from_row(row) for row in rows]


def transition_action(
    action_id: str,
    current: ActionStatus | str,
    target: ActionStatus | str,
    **fields,
) -> bool:
    """
    Move an action from ``current`` to ``target`` if it is still in ``current``.

    Args:
        action_id: Action ID
        current: Status the caller observed
        target: Status to move to
        **fields: not_before, result and/or executed_at to set in the same write

    Returns:
        True if the row was updated, False if the action was no longer in ``current``

    Raises:
        InvalidTransitionError: if the state machine does not allow the move
    """
    current = ActionStatus(current)
    target = ActionStatus(target)
    if not can_transition(current, target):
        raise InvalidTransitionError(action_id, current.value, target.value)

    allowed_fields = {"not_before", "result", "executed_at"}
    unknown = set(fields) - allowed_fields
    if unknown:
        raise ValueError(f"Cannot set action fields: {sorted(unknown)}")

    set_clauses = ["status = ?"]
    params: list[Any] = [target.value]
    for field, value in fields.items():
        set_clauses.append(f"{field} = ?")
        params.append(timestamp(value) if isinstance(value, datetime) else value)
    params.extend([action_id, current.value])

    conn = get_connection()
    cursor = conn.execute(
        f"UPDATE actions SET {', '.join(set_clauses)} WHERE id = ? AND status = ?",
        params,
    )
    conn.commit()
    updated = cursor.rowcount == 1
    conn.close()
    return updated


# =============================================================================
# Watched items
# =============================================================================


def mark_seen(source: str, source_id: str, now: datetime | None = None) -> bool:
    """
    Record an external item as seen.

    Returns:
        True if this is the first sighting, False if it was already recorded
    """
    conn = get_connection()
    cursor = conn.execute(
        "INSERT OR IGNORE INTO watched_items (source, source_id, first_seen_at) VALUES (?, ?, ?)",
        (source, source_id, timestamp(now)),
    )
    conn.commit()
    inserted = cursor.rowcount == 1
    conn.close()
    return inserted


def is_seen(source: str, source_id: str) -> bool:
    """Check whether an external item has been seen before."""
    return get_watched_item(source, source_id) is not None


def get_watched_item(source: str, source_id: str) -> WatchedItem | None:
    conn = get_connection()
    row = conn.execute(
        "SELECT * FROM watched_items WHERE source = ? AND source_id = ?",
        (source, source_id),
    ).fetchone()
    conn.close()
    return WatchedItem.from_row(row) if row else None
