"""Workflow data models.

Defines workflows, steps, runs, corrections and trigger configuration:
    Workflow (trigger + ordered Steps) → WorkflowRun → Corrections
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

logger = logging.getLogger(__name__)


class RunStatus(StrEnum):
    """Lifecycle of a single workflow run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class CorrectionType(StrEnum):
    """Ways a user can override a step."""

    PARAM_EDIT = "param_edit"
    OUTPUT_FILTER = "output_filter"


class RunEvent(StrEnum):
    """Step-level events recorded in a run log."""

    STEP_START = "step_start"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# =============================================================================
# Trigger configuration
# =============================================================================


class ScheduleTrigger(BaseModel):
    """Fire at a wall-clock time, once per day, week or month.

    ``day_of_week`` follows ``datetime.weekday()``: 0 is Monday.
    """

    model_config = ConfigDict(extra="ignore")
    type: Literal["schedule"] = "schedule"
    frequency: Literal["daily", "weekly", "monthly"]
    hour: int = Field(ge=0, le=23)
    minute: int = Field(default=0, ge=0, le=59)
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)

    @model_validator(mode="after")
    def _check_period_fields(self) -> ScheduleTrigger:
        if self.frequency == "weekly" and self.day_of_week is None:
            raise ValueError("weekly schedules need day_of_week")
        if self.frequency == "monthly" and self.day_of_month is None:
            raise ValueError("monthly schedules need day_of_month")
        return self


class FileWatchTrigger(BaseModel):
    """Fire when a file matching ``pattern`` appears directly in ``path``."""

    model_config = ConfigDict(extra="ignore")
    type: Literal["file_watch"] = "file_watch"
    path: str = Field(min_length=1)
    pattern: str = "*"


class MessageTrigger(BaseModel):
    """Fire when an inbox item's sender and/or subject contain the patterns."""

    model_config = ConfigDict(extra="ignore")
    type: Literal["email_match"] = "email_match"
    from_pattern: Optional[str] = None
    subject_pattern: Optional[str] = None

    @model_validator(mode="after")
    def _check_some_pattern(self) -> MessageTrigger:
        if not (self.from_pattern or self.subject_pattern):
            raise ValueError("message triggers need from_pattern or subject_pattern")
        return self


class ManualTrigger(BaseModel):
    """Only runs when started explicitly."""

    model_config = ConfigDict(extra="ignore")
    type: Literal["manual"] = "manual"


TriggerConfig = Annotated[
    Union[ScheduleTrigger, FileWatchTrigger, MessageTrigger, ManualTrigger],
    Field(discriminator="type"),
]

_trigger_adapter: TypeAdapter = TypeAdapter(TriggerConfig)


def parse_trigger_config(raw: Any) -> TriggerConfig:
    """Validate a raw trigger mapping into its tagged variant.

    Raises:
        pydantic.ValidationError: if the mapping is not a valid trigger
    """
    if isinstance(raw, BaseModel):
        return raw
    return _trigger_adapter.validate_python(raw)


def try_parse_trigger_config(raw: Any) -> TriggerConfig | None:
    """Like parse_trigger_config, but returns None for malformed configuration."""
    if not raw:
        return None
    try:
        return parse_trigger_config(raw)
    except ValidationError as e:
        logger.debug(f"Ignoring malformed trigger config {raw!r}: {e.error_count()} errors")
        return None


# =============================================================================
# Workflow entities
# =============================================================================


@dataclass
class Step:
    """One tool invocation inside a workflow."""

    order: int
    tool: str
    params: dict[str, Any] = field(default_factory=dict)
    output_key: str | None = None
    description: str = ""
    confidence: float = 0.0

    def __post_init__(self) -> None:
        if not self.description:
            self.description = f"{self.tool} step"

    def to_dict(self) -> dict[str, Any]:
        return {
            "order": self.order,
            "tool": self.tool,
            "params": self.params,
            "output_key": self.output_key,
            "description": self.description,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Step:
        return cls(
            order=int(data.get("order") or data.get("step_order") or 0),
            tool=data["tool"],
            params=data.get("params") or {},
            output_key=data.get("output_key") or None,
            description=data.get("description") or "",
            confidence=float(data.get("confidence") or 0.0),
        )

    @classmethod
    def from_row(cls, row: Any) -> Step:
        return cls(
            order=row["step_order"],
            tool=row["tool"],
            params=json.loads(row["params"] or "{}"),
            output_key=row["output_key"] or None,
            description=row["description"] or "",
            confidence=float(row["confidence"] or 0.0),
        )


@dataclass
class Workflow:
    """A named automation with a trigger and an ordered list of steps."""

    id: str
    name: str
    description: str = ""
    trigger_type: str = "manual"
    trigger_config: dict[str, Any] = field(default_factory=dict)
    steps: list[Step] = field(default_factory=list)
    overall_confidence: float = 0.0
    run_count: int = 0
    success_count: int = 0
    enabled: bool = True
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def trigger(self) -> TriggerConfig | None:
        """Validated trigger, or None when the stored configuration is malformed."""
        return try_parse_trigger_config(self.trigger_config)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "trigger_type": self.trigger_type,
            "trigger_config": self.trigger_config,
            "steps": [s.to_dict() for s in self.steps],
            "overall_confidence": self.overall_confidence,
            "run_count": self.run_count,
            "success_count": self.success_count,
            "enabled": self.enabled,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: Any, steps: list[Step] | None = None) -> Workflow:
        try:
            trigger_config = json.loads(row["trigger_config"] or "{}")
        except json.JSONDecodeError:
            trigger_config = {}
        return cls(
            id=row["id"],
            name=row["name"],
            description=row["description"] or "",
            trigger_type=row["trigger_type"],
            trigger_config=trigger_config if isinstance(trigger_config, dict) else {},
            steps=steps or [],
            overall_confidence=float(row["overall_confidence"] or 0.0),
            run_count=row["run_count"],
            success_count=row["success_count"],
            enabled=bool(row["enabled"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class WorkflowRun:
    """One execution of a workflow."""

    id: str
    workflow_id: str
    status: RunStatus
    started_at: str
    completed_at: str | None = None
    state: dict[str, Any] = field(default_factory=dict)
    log: list[dict[str, Any]] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.completed_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "state": self.state,
            "log": self.log,
        }

    @classmethod
    def from_row(cls, row: Any) -> WorkflowRun:
        return cls(
            id=row["id"],
            workflow_id=row["workflow_id"],
            status=RunStatus(row["status"]),
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            state=json.loads(row["state_snapshot"] or "{}"),
            log=json.loads(row["log"] or "[]"),
        )


@dataclass
class Correction:
    """A user override of a step's parameters or output."""

    workflow_id: str
    step_order: int
    correction_type: CorrectionType
    original_value: str
    corrected_value: str
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> Correction:
        return cls(
            workflow_id=row["workflow_id"],
            step_order=row["step_order"],
            correction_type=CorrectionType(row["correction_type"]),
            original_value=row["original_value"] or "",
            corrected_value=row["corrected_value"] or "",
            created_at=row["created_at"],
        )


@dataclass
class TriggerEvent:
    """One recorded firing of a workflow trigger."""

    id: int
    workflow_id: str
    trigger_type: str
    trigger_data: dict[str, Any]
    triggered_at: str

    @classmethod
    def from_row(cls, row: Any) -> TriggerEvent:
        try:
            data = json.loads(row["trigger_data"] or "{}")
        except json.JSONDecodeError:
            data = {}
        return cls(
            id=row["id"],
            workflow_id=row["workflow_id"],
            trigger_type=row["trigger_type"],
            trigger_data=data,
            triggered_at=row["triggered_at"],
        )
