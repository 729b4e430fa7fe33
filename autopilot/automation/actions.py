"""
Tool: Action Queue
Purpose: Queue autonomous actions behind a cancellable countdown

Lifecycle:
    pending -> notified -> executing -> completed | failed
    pending | notified -> cancelled (user request only)

Every transition is a guarded row update committed before the matching side
effect (notification or execution) runs.

Usage:
    # List queued actions
    python -m autopilot.automation.actions --list

    # Cancel an action before its countdown elapses
    python -m autopilot.automation.actions --cancel <action-id>

    # Queue statistics
    python -m autopilot.automation.actions --stats

Dependencies:
    - sqlite3 (via autopilot.storage)
    - structlog (event logging)
"""

import argparse
import json
import sys
from datetime import datetime, timedelta
from typing import Any

from autopilot import storage
from autopilot.automation.executor import ActionExecutor
from autopilot.automation.models import Action, ActionStatus, ExecutionOutcome, Intent
from autopilot.automation.notify import Notifier, safe_notify
from autopilot.logging_config import get_logger

logger = get_logger(__name__)

COUNTDOWN_SECONDS = 60
MAX_RESULT_CHARS = 500
MAX_NOTIFICATION_CHARS = 200

CANCELLABLE = (ActionStatus.PENDING, ActionStatus.NOTIFIED)


# =============================================================================
# Policies and descriptions
# =============================================================================

FLIGHT_CHECKIN_POLICY = (
    "AUTONOMOUS MODE: You are completing a flight web check-in automatically. "
    "This is a time-sensitive action that benefits from early completion. "
    "ALLOWED: Open the check-in URL, fill in passenger details (booking reference, name), "
    "select seats if prompted (prefer window or aisle), and SUBMIT the check-in form. "
    "AFTER SUCCESS: Download or save the boarding pass if possible. "
    "NOT ALLOWED: Making purchases, paying for upgrades, changing flight details, or cancelling bookings. "
    "If the check-in requires payment or shows errors, STOP and report the issue."
)

PACKAGE_TRACKING_POLICY = (
    "AUTONOMOUS MODE: You are checking package tracking status. "
    "ALLOWED: Open tracking URLs, read delivery status, extract estimated delivery dates. "
    "NOT ALLOWED: Modifying delivery instructions, rescheduling, or any action that changes the delivery."
)

DEFAULT_POLICY = (
    "SAFETY: You are running autonomously without a user present. "
    "NEVER take destructive actions. Do NOT delete anything, do NOT send emails, "
    "do NOT submit payment forms, do NOT cancel or modify existing bookings. "
    "Only perform safe, read-oriented or clearly constructive actions. "
    "If the task requires a destructive or irreversible action, STOP and report what you would do instead."
)

SAFETY_POLICIES = {
    "flight_checkin": FLIGHT_CHECKIN_POLICY,
    "package_tracking": PACKAGE_TRACKING_POLICY,
}


def safety_policy_for_intent(intent: str) -> str:
    """Policy text for an intent; unknown intents get the conservative default."""
    return SAFETY_POLICIES.get(intent, DEFAULT_POLICY)


def build_description(intent: str, data: dict[str, Any]) -> str:
    """Short human-readable description used in notifications and listings."""
    if intent == "flight_checkin":
        return f"Check in for {data.get('airline') or 'flight'} {data.get('flight_number') or ''}".strip()
    if intent == "hotel_booking":
        return f"Hotel booking at {data.get('hotel_name') or 'hotel'}"
    if intent == "package_tracking":
        return f"Track {data.get('carrier') or 'package'} delivery"
    if intent == "bill_due":
        return f"Pay {data.get('vendor') or 'bill'} {data.get('amount') or ''}".strip()
    if intent == "meeting_prep":
        return f"Prepare for {data.get('title') or 'meeting'}"
    return intent.replace("_", " ").capitalize()


def build_prompt(action: Action) -> str:
    return (
        f"{action.action_plan}\n\n"
        f"Extracted data: {json.dumps(action.extracted_data, sort_keys=True, default=str)}"
    )


# =============================================================================
# Queue phases
# =============================================================================


def queue_action(intent: Intent, now: datetime | None = None) -> Action:
    """Insert a classified intent as a pending action."""
    action = storage.insert_action(
        intent=intent.intent,
        description=build_description(intent.intent, intent.data),
        source_id=intent.source_id,
        extracted_data=intent.data,
        action_plan=intent.action_text,
        confidence=intent.confidence,
        now=now,
    )
    logger.info(
        "action_queued",
        action_id=action.id,
        intent=action.intent,
        description=action.description,
        confidence=action.confidence,
    )
    return action


def notify_pending_actions(
    notifier: Notifier,
    countdown_seconds: int = COUNTDOWN_SECONDS,
    now: datetime | None = None,
) -> list[Action]:
    """Start the countdown for every pending action and tell the user how to cancel."""
    now = now or datetime.now()
    not_before = now + timedelta(seconds=countdown_seconds)
    notified = []

    for action in storage.list_actions(statuses=[ActionStatus.PENDING]):
        moved = storage.transition_action(
            action.id,
            ActionStatus.PENDING,
            ActionStatus.NOTIFIED,
            not_before=not_before,
        )
        if not moved:
            continue

        action.status = ActionStatus.NOTIFIED
        action.not_before = storage.timestamp(not_before)
        safe_notify(
            notifier,
            f"Autopilot: {action.description}",
            f"Auto-acting in {countdown_seconds} seconds. Run: "
            f"python -m autopilot.automation.actions --cancel {action.id} to cancel.",
        )
        logger.info("action_notified", action_id=action.id, not_before=action.not_before)
        notified.append(action)

    return notified


def execute_action(
    action: Action,
    executor: ActionExecutor,
    notifier: Notifier,
    now: datetime | None = None,
) -> Action | None:
    """
    Run one notified action.

    Returns:
        The finished action, or None if it was no longer notified (e.g. cancelled)
    """
    if not storage.transition_action(action.id, ActionStatus.NOTIFIED, ActionStatus.EXECUTING):
        logger.info("action_skipped", action_id=action.id, reason="no longer notified")
        return None

    logger.info("action_executing", action_id=action.id, intent=action.intent)

    try:
        outcome = executor.run_autonomous(build_prompt(action), safety_policy_for_intent(action.intent))
    except Exception as e:
        logger.error("action_error", action_id=action.id, error=str(e))
        outcome = ExecutionOutcome(success=False, text=f"Execution error: {e}")

    status = ActionStatus.COMPLETED if outcome.success else ActionStatus.FAILED
    result_text = (outcome.text or "")[:MAX_RESULT_CHARS]
    executed_at = now or datetime.now()

    storage.transition_action(
        action.id,
        ActionStatus.EXECUTING,
        status,
        result=result_text,
        executed_at=executed_at,
    )
    action.status = status
    action.result = result_text
    action.executed_at = storage.timestamp(executed_at)

    label = "Done" if outcome.success else "Failed"
    safe_notify(
        notifier,
        f"{label}: {action.description}",
        (outcome.text or "No details")[:MAX_NOTIFICATION_CHARS],
    )
    logger.info(
        f"action_{status.value}",
        action_id=action.id,
        tools_used=", ".join(outcome.tools_used),
    )
    return action


def execute_ready_actions(
    executor: ActionExecutor,
    notifier: Notifier,
    now: datetime | None = None,
) -> list[Action]:
    """Execute every notified action whose countdown has elapsed."""
    now = now or datetime.now()
    finished = []
    for action in storage.list_actions(statuses=[ActionStatus.NOTIFIED], ready_before=now):
        result = execute_action(action, executor, notifier, now=now)
        if result:
            finished.append(result)
    return finished


# =============================================================================
# User-facing operations
# =============================================================================


def cancel_action(action_id: str) -> dict[str, Any]:
    """
    Cancel a pending or notified action.

    Args:
        action_id: Action ID

    Returns:
        dict with success status and the action's final status
    """
    action = storage.get_action(action_id)
    if not action:
        return {"success": False, "error": f"Action {action_id} not found"}

    if action.status not in CANCELLABLE:
        return {
            "success": False,
            "status": action.status.value,
            "error": f"Action {action_id} is already {action.status.value}; cannot cancel",
        }

    if not storage.transition_action(action_id, action.status, ActionStatus.CANCELLED):
        current = storage.get_action(action_id)
        return {
            "success": False,
            "status": current.status.value if current else None,
            "error": f"Action {action_id} changed state before it could be cancelled",
        }

    logger.info("action_cancelled", action_id=action_id)
    return {
        "success": True,
        "status": ActionStatus.CANCELLED.value,
        "message": f"Action {action_id} cancelled",
    }


def list_actions(
    status: str | None = None,
    active_only: bool = False,
    limit: int = 50,
) -> dict[str, Any]:
    """List queued actions, optionally by status or only those not yet finished."""
    if status:
        try:
            statuses = [ActionStatus(status)]
        except ValueError:
            return {"success": False, "error": f"Unknown status: {status}"}
    elif active_only:
        statuses = [ActionStatus.PENDING, ActionStatus.NOTIFIED, ActionStatus.EXECUTING]
    else:
        statuses = None

    actions = storage.list_actions(statuses=statuses, limit=limit)
    return {
        "success": True,
        "actions": [a.to_dict() for a in actions],
        "total": len(actions),
    }


def get_queue_stats() -> dict[str, Any]:
    """Counts of actions by status and by intent (active only)."""
    conn = storage.get_connection()
    by_status = {
        row["status"]: row["count"]
        for row in conn.execute("SELECT status, COUNT(*) AS count FROM actions GROUP BY status")
    }
    by_intent = {
        row["intent"]: row["count"]
        for row in conn.execute(
            """
            SELECT intent, COUNT(*) AS count FROM actions
            WHERE status IN ('pending', 'notified', 'executing')
            GROUP BY intent
        """
        )
    }
    conn.close()

    return {
        "success": True,
        "by_status": {s.value: by_status.get(s.value, 0) for s in ActionStatus},
        "active_by_intent": by_intent,
        "total": sum(by_status.values()),
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Autopilot Action Queue")

    actions = parser.add_mutually_exclusive_group(required=True)
    actions.add_argument("--list", action="store_true", help="List active actions")
    actions.add_argument("--all", action="store_true", help="List all actions")
    actions.add_argument("--cancel", metavar="ACTION_ID", help="Cancel an action")
    actions.add_argument("--stats", action="store_true", help="Queue statistics")

    parser.add_argument("--status", help="Filter listing by status")
    parser.add_argument("--limit", type=int, default=50, help="Max results for list")
    parser.add_argument("--json", action="store_true", help="Output as JSON")

    args = parser.parse_args()

    if args.list or args.all:
        result = list_actions(status=args.status, active_only=args.list, limit=args.limit)
    elif args.cancel:
        result = cancel_action(args.cancel)
    else:
        result = get_queue_stats()

    if not result.get("success"):
        print(f"ERROR {result.get('error')}")
        sys.exit(1)

    if args.json:
        print(json.dumps(result, indent=2, default=str))
        return

    if args.list or args.all:
        if not result["actions"]:
            print("No actions.")
        for action in result["actions"]:
            status = action["status"].upper()
            if action["status"] == ActionStatus.NOTIFIED.value:
                status += f" until {action['not_before']}"
            print(
                f"  [{action['id']}] [{status}] {action['description']} "
                f"({action['intent']}, {round(action['confidence'] * 100)}%)"
            )
    elif args.cancel:
        print(f"OK {result['message']}")
    else:
        print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
