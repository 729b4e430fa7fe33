"""
Workflow Runtime

Runs a workflow's steps in order, threading each step's output into the
parameters of later steps.

Modes:
    supervised - steps below the autonomy threshold are shown to a
                 StepReviewer (approve / skip / edit / cancel); failures are
                 surfaced for retry / skip / cancel; list outputs can be
                 filtered. Every decision feeds the confidence tracker.
    autonomous - no interaction; failed steps are logged and the run
                 continues. Confidence is left untouched.

Parameter references: a string parameter that is exactly ``$name`` is
replaced by ``state[name]`` (the raw value, lists and dicts included).
Unknown references stay as literal strings.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Protocol

from autopilot import storage
from autopilot.errors import WorkflowNotFoundError
from autopilot.workflow.confidence import AUTONOMOUS_THRESHOLD, ConfidenceTracker
from autopilot.workflow.models import CorrectionType, RunEvent, RunStatus, Step, Workflow
from autopilot.workflow.recovery import ErrorRecovery
from autopilot.workflow.tools import StepExecutor, StepResult

logger = logging.getLogger(__name__)

_REFERENCE = re.compile(r"^\$([A-Za-z_][A-Za-z0-9_]*)$")


class RunMode(StrEnum):
    SUPERVISED = "supervised"
    AUTONOMOUS = "autonomous"


class ReviewDecision(StrEnum):
    APPROVE = "approve"
    SKIP = "skip"
    EDIT = "edit"
    CANCEL = "cancel"


class FailureDecision(StrEnum):
    RETRY = "retry"
    SKIP = "skip"
    CANCEL = "cancel"


# =============================================================================
# Parameter resolution
# =============================================================================


@dataclass(frozen=True)
class ResolvedParams:
    """Step parameters after ``$name`` substitution."""

    values: dict[str, Any]
    unresolved: tuple[str, ...] = ()


def resolve_params(params: dict[str, Any], state: dict[str, Any]) -> ResolvedParams:
    """Substitute ``$name`` references from ``state``.

    Nested dicts and lists in ``params`` are walked; values taken from
    ``state`` are inserted as-is and never resolved again.
    """
    unresolved: list[str] = []

    def resolve(value: Any) -> Any:
        if isinstance(value, str):
            match = _REFERENCE.match(value)
            if match:
                name = match.group(1)
                if name in state:
                    return state[name]
                unresolved.append(name)
            return value
        if isinstance(value, dict):
            return {k: resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [resolve(v) for v in value]
        return value

    values = {key: resolve(value) for key, value in params.items()}
    return ResolvedParams(values=values, unresolved=tuple(unresolved))


# =============================================================================
# Review protocol
# =============================================================================


@dataclass
class StepReview:
    decision: ReviewDecision
    params: dict[str, Any] | None = None


class StepReviewer(Protocol):
    """Human (or scripted) decisions for supervised runs."""

    def review_step(self, step: Step, params: ResolvedParams) -> StepReview: ...

    def review_failure(self, step: Step, result: StepResult) -> FailureDecision: ...

    def review_output(self, step: Step, output: list[Any]) -> list[Any]:
        """Return the items to remove from a list output."""
        ...


def load_workflow(workflow_id_or_name: str) -> Workflow:
    """Fetch a workflow by ID or name.

    Raises:
        WorkflowNotFoundError: if no such workflow exists
    """
    workflow = storage.get_workflow(workflow_id_or_name)
    if workflow is None:
        raise WorkflowNotFoundError(f"Workflow '{workflow_id_or_name}' not found")
    return workflow


@dataclass
class RunResult:
    run_id: str
    workflow_id: str
    status: RunStatus
    state: dict[str, Any] = field(default_factory=dict)
    log: list[dict[str, Any]] = field(default_factory=list)
    step_outcomes: dict[int, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "state": self.state,
            "log": self.log,
            "step_outcomes": self.step_outcomes,
        }


class _Cancelled(Exception):
    pass


# =============================================================================
# Runtime
# =============================================================================


class WorkflowRuntime:
    """Sequential executor for one workflow run.

    Args:
        workflow: Workflow with its ordered steps.
        executor: StepExecutor that runs tools by ID.
        mode: "supervised" or "autonomous".
        reviewer: Required in supervised mode.
        threshold: Confidence at or above which a supervised step runs unreviewed.
        sleep: Sleep function for retry backoff.
        state: Initial state, e.g. the file or message that fired the trigger.
    """

    def __init__(
        self,
        workflow: Workflow,
        executor: StepExecutor,
        mode: RunMode | str = RunMode.SUPERVISED,
        reviewer: StepReviewer | None = None,
        threshold: float = AUTONOMOUS_THRESHOLD,
        sleep: Callable[[float], None] = time.sleep,
        state: dict[str, Any] | None = None,
    ):
        self.workflow = workflow
        self.executor = executor
        self.mode = RunMode(mode)
        self.reviewer = reviewer
        self.threshold = threshold
        self.sleep = sleep

        if self.mode == RunMode.SUPERVISED and reviewer is None:
            raise ValueError("Supervised runs need a reviewer")

        self.steps = sorted(workflow.steps, key=lambda s: s.order)
        self.current_step_index = 0
        self.state: dict[str, Any] = dict(state or {})
        self.run_log: list[dict[str, Any]] = []
        self._started_at: datetime | None = None
        self._started_monotonic = 0.0

    @property
    def finished(self) -> bool:
        return self.current_step_index >= len(self.steps)

    def resolve(self, step: Step) -> ResolvedParams:
        return resolve_params(step.params, self.state)

    def store_result(self, key: str | None, value: Any) -> None:
        if key:
            self.state[key] = value

    def preview_step(self, step: Step) -> str:
        """Describe a step with its parameters resolved against the current state."""
        resolved = self.resolve(step)
        lines = [f"Step {step.order}: {step.description} [{step.tool}]"]
        for key, value in resolved.values.items():
            shown = repr(value)
            if len(shown) > 80:
                shown = shown[:77] + "..."
            lines.append(f"  {key} = {shown}")
        if resolved.unresolved:
            lines.append(f"  unresolved: {', '.join('$' + n for n in resolved.unresolved)}")
        lines.append(f"  confidence: {round(step.confidence * 100)}%")
        return "\n".join(lines)

    def clock(self) -> datetime:
        """Run time: the start time given to run() plus the monotonic time elapsed since."""
        if self._started_at is None:
            return datetime.now()
        return self._started_at + timedelta(seconds=time.monotonic() - self._started_monotonic)

    def _log(self, event: RunEvent, step: Step, **data: Any) -> None:
        entry = {
            "event": event.value,
            "step": step.order,
            "tool": step.tool,
            "timestamp": self.clock().isoformat(timespec="seconds"),
        }
        entry.update({k: v for k, v in data.items() if v is not None})
        self.run_log.append(entry)

    def _execute(self, step: Step, params: dict[str, Any]) -> StepResult:
        recovery = ErrorRecovery.for_tool(step.tool, sleep=self.sleep)
        return recovery.execute_with_recovery(step, params, self.executor)

    def run(self, now: datetime | None = None) -> RunResult:
        """Execute every step and persist the run."""
        self._started_at = now or datetime.now()
        self._started_monotonic = time.monotonic()
        run_id = storage.start_run(self.workflow.id, now=self._started_at)
        outcomes: dict[int, str] = {}
        cancelled = False

        logger.info(f"Starting {self.mode.value} run {run_id} of workflow {self.workflow.name}")

        try:
            for index, step in enumerate(self.steps):
                self.current_step_index = index
                if self.mode == RunMode.AUTONOMOUS:
                    outcomes[step.order] = self._run_autonomous_step(step)
                else:
                    outcomes[step.order] = self._run_supervised_step(step)
        except _Cancelled:
            cancelled = True
        except Exception as e:
            logger.exception(f"Run {run_id} of workflow {self.workflow.name} aborted: {e}")
            step = self.steps[self.current_step_index]
            self._log(RunEvent.FAILED, step, error=f"Run aborted: {e}")
            cancelled = True
        else:
            self.current_step_index = len(self.steps)

        if cancelled:
            status = RunStatus.FAILED
        elif all(outcome == "completed" for outcome in outcomes.values()):
            status = RunStatus.COMPLETED
        else:
            status = RunStatus.PARTIAL

        storage.complete_run(run_id, status, self.state, self.run_log, now=self.clock())
        storage.increment_run_count(self.workflow.id, success=status == RunStatus.COMPLETED)
        overall = storage.update_overall_confidence(self.workflow.id)
        self.workflow.overall_confidence = overall

        logger.info(f"Run {run_id} finished with status {status.value}")

        return RunResult(
            run_id=run_id,
            workflow_id=self.workflow.id,
            status=status,
            state=dict(self.state),
            log=list(self.run_log),
            step_outcomes=outcomes,
        )

    # -------------------------------------------------------------------------
    # Autonomous
    # -------------------------------------------------------------------------

    def _run_autonomous_step(self, step: Step) -> str:
        params = self.resolve(step).values
        self._log(RunEvent.STEP_START, step)
        result = self._execute(step, params)

        if not result.success:
            logger.warning(f"Step {step.order} ({step.tool}) failed, continuing: {result.error}")
            self._log(RunEvent.FAILED, step, error=result.error, attempts=result.attempts)
            return "failed"

        self.store_result(step.output_key, result.output)
        self._log(RunEvent.COMPLETED, step, summary=result.summary or None)
        return "completed"

    # -------------------------------------------------------------------------
    # Supervised
    # -------------------------------------------------------------------------

    def _persist_confidence(self, step: Step, confidence: float) -> None:
        step.confidence = confidence
        storage.update_step_confidence(self.workflow.id, step.order, confidence)

    def _run_supervised_step(self, step: Step) -> str:
        tracker = ConfidenceTracker(self.workflow.id, step.order, threshold=self.threshold)
        resolved = self.resolve(step)
        params = resolved.values
        reviewed = not tracker.is_autonomous(step.confidence)
        corrected = False

        if reviewed:
            review = self.reviewer.review_step(step, resolved)

            if review.decision == ReviewDecision.CANCEL:
                self._log(RunEvent.FAILED, step, error="Cancelled by user")
                raise _Cancelled()

            if review.decision == ReviewDecision.SKIP:
                self._persist_confidence(step, tracker.on_skip(step.confidence))
                self._log(RunEvent.SKIPPED, step)
                return "skipped"

            if review.decision == ReviewDecision.EDIT and review.params is not None:
                if review.params != params:
                    self._persist_confidence(
                        step,
                        tracker.on_correction(
                            step.confidence,
                            CorrectionType.PARAM_EDIT,
                            params,
                            review.params,
                            now=self.clock(),
                        ),
                    )
                    corrected = True
                params = review.params

        self._log(RunEvent.STEP_START, step)

        while True:
            result = self._execute(step, params)
            if result.success:
                break

            self._log(RunEvent.FAILED, step, error=result.error, attempts=result.attempts)
            decision = self.reviewer.review_failure(step, result)
            if decision == FailureDecision.RETRY:
                continue
            if decision == FailureDecision.CANCEL:
                raise _Cancelled()
            self._log(RunEvent.SKIPPED, step)
            return "failed"

        output = result.output
        if reviewed and isinstance(output, list) and output:
            removed = list(self.reviewer.review_output(step, output) or [])
            if removed:
                self._persist_confidence(
                    step, tracker.on_output_filter(step.confidence, removed, now=self.clock())
                )
                output = [item for item in output if item not in removed]
                corrected = True

        if not corrected:
            self._persist_confidence(step, tracker.on_approval(step.confidence))

        self.store_result(step.output_key, output)
        self._log(RunEvent.COMPLETED, step, summary=result.summary or None)
        return "completed"
