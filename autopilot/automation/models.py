"""Daemon data models.

Defines inbox items, classified intents, queued actions and de-duplication
markers for the daemon pipeline:
    InboxItem → Intent → Action
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class ActionStatus(StrEnum):
    """Action queue lifecycle."""

    PENDING = "pending"
    NOTIFIED = "notified"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ActionStatus.COMPLETED, ActionStatus.FAILED, ActionStatus.CANCELLED)


# Legal forward moves; everything else is rejected
ALLOWED_TRANSITIONS: dict[ActionStatus, frozenset[ActionStatus]] = {
    ActionStatus.PENDING: frozenset({ActionStatus.NOTIFIED, ActionStatus.CANCELLED}),
    ActionStatus.NOTIFIED: frozenset({ActionStatus.EXECUTING, ActionStatus.CANCELLED}),
    ActionStatus.EXECUTING: frozenset({ActionStatus.COMPLETED, ActionStatus.FAILED}),
    ActionStatus.COMPLETED: frozenset(),
    ActionStatus.FAILED: frozenset(),
    ActionStatus.CANCELLED: frozenset(),
}


def can_transition(current: ActionStatus | str, target: ActionStatus | str) -> bool:
    """Check whether the queue state machine allows ``current → target``."""
    return ActionStatus(target) in ALLOWED_TRANSITIONS[ActionStatus(current)]


class WatchSource(StrEnum):
    """Origins of de-duplicated external items."""

    MAIL = "mail"
    FILE = "file"


@dataclass
class InboxItem:
    """A message returned by an inbox collaborator."""

    id: str
    sender: str
    subject: str
    timestamp: str
    body: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "from": self.sender,
            "subject": self.subject,
            "timestamp": self.timestamp,
            "body": self.body,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InboxItem:
        return cls(
            id=str(data["id"]),
            sender=data.get("from") or data.get("sender") or "",
            subject=data.get("subject") or "",
            timestamp=data.get("timestamp") or data.get("date") or datetime.now().isoformat(),
            body=data.get("body") or "",
        )


@dataclass
class Intent:
    """A classified, actionable intent extracted from an inbox item."""

    source_id: str
    intent: str
    confidence: float
    data: dict[str, Any] = field(default_factory=dict)
    action_text: str = ""
    urgency: str = "none"


@dataclass
class ExecutionOutcome:
    """Result returned by an action executor."""

    success: bool
    text: str = ""
    tools_used: list[str] = field(default_factory=list)


@dataclass
class Action:
    """A daemon-managed autonomous task with a cancellable countdown."""

    id: str
    intent: str
    description: str
    source_id: str
    extracted_data: dict[str, Any]
    action_plan: str
    status: ActionStatus
    confidence: float
    not_before: str | None = None
    result: str | None = None
    created_at: str | None = None
    executed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "intent": self.intent,
            "description": self.description,
            "source_id": self.source_id,
            "extracted_data": self.extracted_data,
            "action_plan": self.action_plan,
            "status": self.status.value,
            "confidence": self.confidence,
            "not_before": self.not_before,
            "result": self.result,
            "created_at": self.created_at,
            "executed_at": self.executed_at,
        }

    @classmethod
    def from_row(cls, row: Any) -> Action:
        try:
            data = json.loads(row["extracted_data"] or "{}")
        except json.JSONDecodeError:
            data = {}
        return cls(
            id=row["id"],
            intent=row["intent"],
            description=row["description"],
            source_id=row["source_id"] or "",
            extracted_data=data,
            action_plan=row["action_plan"] or "",
            status=ActionStatus(row["status"]),
            confidence=float(row["confidence"] or 0.0),
            not_before=row["not_before"],
            result=row["result"],
            created_at=row["created_at"],
            executed_at=row["executed_at"],
        )


@dataclass
class WatchedItem:
    """Marker that an external item has been seen and must not be reprocessed."""

    source: str
    source_id: str
    first_seen_at: str

    @classmethod
    def from_row(cls, row: Any) -> WatchedItem:
        return cls(
            source=row["source"],
            source_id=row["source_id"],
            first_seen_at=row["first_seen_at"],
        )
