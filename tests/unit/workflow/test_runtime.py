"""Tests for autopilot/workflow/runtime.py

The runtime executes a workflow's steps in order. Key functionality:
- $name parameter resolution from earlier outputs
- Supervised review (approve / skip / edit / cancel) feeding confidence
- Failure handling (retry / skip / cancel) and output filtering
- Autonomous runs that continue past failures
- Run persistence and status
"""

from datetime import datetime

import pytest

from autopilot.errors import WorkflowNotFoundError
from autopilot.workflow import history
from autopilot.workflow.models import RunStatus
from autopilot.workflow.runtime import (
    FailureDecision,
    ReviewDecision,
    RunMode,
    StepReview,
    WorkflowRuntime,
    load_workflow,
    resolve_params,
)
from autopilot.workflow.tools import CallableExecutor, StepResult


class ScriptedReviewer:
    """Reviewer answering from queued decisions; approves by default."""

    def __init__(self, steps=None, failures=None, removals=None):
        self.steps = list(steps or [])
        self.failures = list(failures or [])
        self.removals = list(removals or [])
        self.reviewed = []

    def review_step(self, step, params):
        self.reviewed.append((step.order, params.values))
        if self.steps:
            return self.steps.pop(0)
        return StepReview(ReviewDecision.APPROVE)

    def review_failure(self, step, result):
        return self.failures.pop(0) if self.failures else FailureDecision.SKIP

    def review_output(self, step, output):
        return self.removals.pop(0) if self.removals else []


def tool_outputs(outputs):
    """Executor returning a fixed output per tool ID."""

    def run(tool, params):
        value = outputs[tool]
        if isinstance(value, Exception):
            raise value
        return StepResult(success=True, output=value, summary=f"{tool} ok")

    return CallableExecutor(run)


@pytest.fixture
def executor():
    return tool_outputs({"file_glob": ["a.pdf", "b.pdf", "c.tmp"], "summarize": "2 files"})


# ─────────────────────────────────────────────────────────────────────────────
# Parameter Resolution Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestResolveParams:
    def test_substitutes_raw_values(self):
        resolved = resolve_params({"files": "$pdfs", "limit": 3}, {"pdfs": ["a.pdf"]})

        assert resolved.values == {"files": ["a.pdf"], "limit": 3}
        assert resolved.unresolved == ()

    def test_unknown_reference_stays_literal(self):
        resolved = resolve_params({"files": "$missing"}, {})

        assert resolved.values == {"files": "$missing"}
        assert resolved.unresolved == ("missing",)

    def test_only_whole_string_references(self):
        resolved = resolve_params({"text": "cost is $price"}, {"price": 5})

        assert resolved.values == {"text": "cost is $price"}

    def test_nested_structures(self):
        resolved = resolve_params({"opts": {"paths": ["$a", "b"]}}, {"a": "/tmp/x"})

        assert resolved.values == {"opts": {"paths": ["/tmp/x", "b"]}}


# ─────────────────────────────────────────────────────────────────────────────
# Autonomous Run Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestAutonomousRun:
    """Tests for unattended execution."""

    def test_threads_outputs_between_steps(self, make_workflow, autopilot_db, executor):
        workflow = make_workflow()

        result = WorkflowRuntime(workflow, executor, mode=RunMode.AUTONOMOUS).run()

        assert result.status == RunStatus.COMPLETED
        assert executor.calls[1] == ("summarize", {"files": ["a.pdf", "b.pdf", "c.tmp"]})
        assert result.state == {"pdfs": ["a.pdf", "b.pdf", "c.tmp"], "summary": "2 files"}

    def test_persists_run_and_counts(self, make_workflow, autopilot_db, executor):
        workflow = make_workflow()

        result = WorkflowRuntime(workflow, executor, mode="autonomous").run()

        run = autopilot_db.get_run(result.run_id)
        stored = autopilot_db.get_workflow(workflow.id)
        assert run.status == RunStatus.COMPLETED
        assert run.completed_at is not None
        assert run.state["summary"] == "2 files"
        assert [e["event"] for e in run.log] == ["step_start", "completed", "step_start", "completed"]
        assert stored.run_count == 1
        assert stored.success_count == 1

    def test_failure_continues_and_marks_partial(self, make_workflow, autopilot_db):
        workflow = make_workflow()
        executor = tool_outputs({"file_glob": FileNotFoundError("no dir"), "summarize": "nothing"})

        result = WorkflowRuntime(workflow, executor, mode="autonomous", sleep=lambda s: None).run()

        assert result.status == RunStatus.PARTIAL
        assert result.step_outcomes == {1: "failed", 2: "completed"}
        # The unresolved reference is passed through literally
        assert executor.calls[-1] == ("summarize", {"files": "$pdfs"})
        failed = [e for e in result.log if e["event"] == "failed"]
        assert failed[0]["error"].startswith("Non-critical error")

    def test_run_times_follow_given_clock(self, make_workflow, autopilot_db, executor):
        """Start, completion and log times are all measured from run(now=...)."""
        workflow = make_workflow()
        start = datetime(2030, 1, 1, 9, 0)

        result = WorkflowRuntime(workflow, executor, mode="autonomous").run(now=start)

        run = autopilot_db.get_run(result.run_id)
        completed = datetime.fromisoformat(run.completed_at)
        assert run.started_at == "2030-01-01T09:00:00"
        assert 0 <= (completed - start).total_seconds() < 60
        assert all(entry["timestamp"].startswith("2030-01-01T09:0") for entry in run.log)
        assert 0 <= history.get_stats(workflow.id)["avg_duration_seconds"] < 60

    def test_does_not_touch_confidence(self, make_workflow, autopilot_db, executor):
        workflow = make_workflow()

        WorkflowRuntime(workflow, executor, mode="autonomous").run()

        assert all(s.confidence == 0.0 for s in autopilot_db.load_steps(workflow.id))

    def test_initial_state_is_visible_to_steps(self, make_workflow, autopilot_db):
        workflow = make_workflow(
            steps=[{"tool": "file_read", "params": {"path": "$trigger_file"}, "output_key": "text"}]
        )
        executor = tool_outputs({"file_read": "hello"})

        WorkflowRuntime(
            workflow, executor, mode="autonomous", state={"trigger_file": "/tmp/new.pdf"}
        ).run()

        assert executor.calls == [("file_read", {"path": "/tmp/new.pdf"})]

    def test_supervised_needs_reviewer(self, make_workflow, autopilot_db, executor):
        with pytest.raises(ValueError):
            WorkflowRuntime(make_workflow(), executor, mode="supervised")

    def test_load_workflow_by_id_or_name(self, make_workflow, autopilot_db):
        workflow = make_workflow("named")

        assert load_workflow("named").id == workflow.id
        assert load_workflow(workflow.id).name == "named"
        with pytest.raises(WorkflowNotFoundError, match="missing"):
            load_workflow("missing")


# ─────────────────────────────────────────────────────────────────────────────
# Supervised Run Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestSupervisedRun:
    """Tests for reviewed execution and confidence feedback."""

    def test_approval_raises_confidence(self, make_workflow, autopilot_db, executor):
        workflow = make_workflow()
        reviewer = ScriptedReviewer()

        result = WorkflowRuntime(workflow, executor, reviewer=reviewer).run()

        steps = autopilot_db.load_steps(workflow.id)
        assert result.status == RunStatus.COMPLETED
        assert [s.confidence for s in steps] == [pytest.approx(0.2), pytest.approx(0.2)]
        assert autopilot_db.get_workflow(workflow.id).overall_confidence == pytest.approx(0.2)

    def test_confident_steps_are_not_reviewed(self, make_workflow, autopilot_db, executor):
        workflow = make_workflow()
        autopilot_db.update_step_confidence(workflow.id, 1, 0.9)
        workflow = autopilot_db.get_workflow(workflow.id)
        reviewer = ScriptedReviewer()

        WorkflowRuntime(workflow, executor, reviewer=reviewer).run()

        assert [order for order, _ in reviewer.reviewed] == [2]
        assert autopilot_db.load_steps(workflow.id)[0].confidence == 1.0

    def test_reviewer_sees_resolved_params(self, make_workflow, autopilot_db, executor):
        reviewer = ScriptedReviewer()

        WorkflowRuntime(make_workflow(), executor, reviewer=reviewer).run()

        assert reviewer.reviewed[1] == (2, {"files": ["a.pdf", "b.pdf", "c.tmp"]})

    def test_skip_lowers_confidence(self, make_workflow, autopilot_db, executor):
        workflow = make_workflow()
        autopilot_db.update_step_confidence(workflow.id, 1, 0.6)
        workflow = autopilot_db.get_workflow(workflow.id)
        reviewer = ScriptedReviewer(steps=[StepReview(ReviewDecision.SKIP)])

        result = WorkflowRuntime(workflow, executor, reviewer=reviewer).run()

        assert result.step_outcomes[1] == "skipped"
        assert result.status == RunStatus.PARTIAL
        assert autopilot_db.load_steps(workflow.id)[0].confidence == pytest.approx(0.1)
        assert executor.calls[0][0] == "summarize"

    def test_edit_records_correction(self, make_workflow, autopilot_db, executor):
        workflow = make_workflow()
        autopilot_db.update_step_confidence(workflow.id, 1, 0.5)
        workflow = autopilot_db.get_workflow(workflow.id)
        edited = {"directory": "~/Invoices", "pattern": "*.pdf"}
        reviewer = ScriptedReviewer(steps=[StepReview(ReviewDecision.EDIT, params=edited)])

        WorkflowRuntime(workflow, executor, reviewer=reviewer).run()

        corrections = autopilot_db.list_corrections(workflow.id, 1)
        assert executor.calls[0] == ("file_glob", edited)
        assert len(corrections) == 1
        assert corrections[0].corrected_value == '{"directory": "~/Invoices", "pattern": "*.pdf"}'
        assert autopilot_db.load_steps(workflow.id)[0].confidence == pytest.approx(0.2)

    def test_cancel_fails_run(self, make_workflow, autopilot_db, executor):
        workflow = make_workflow()
        reviewer = ScriptedReviewer(steps=[StepReview(ReviewDecision.CANCEL)])

        result = WorkflowRuntime(workflow, executor, reviewer=reviewer).run()

        run = autopilot_db.get_run(result.run_id)
        assert result.status == RunStatus.FAILED
        assert run.status == RunStatus.FAILED
        assert executor.calls == []
        assert result.log[-1]["error"] == "Cancelled by user"
        assert autopilot_db.get_workflow(workflow.id).success_count == 0

    def test_output_filter_removes_items(self, make_workflow, autopilot_db, executor):
        workflow = make_workflow()
        reviewer = ScriptedReviewer(removals=[["c.tmp"]])

        result = WorkflowRuntime(workflow, executor, reviewer=reviewer).run()

        filters = autopilot_db.list_corrections(workflow.id, 1, "output_filter")
        assert result.state["pdfs"] == ["a.pdf", "b.pdf"]
        assert executor.calls[1] == ("summarize", {"files": ["a.pdf", "b.pdf"]})
        assert [c.original_value for c in filters] == ["c.tmp"]
        # Corrected, not approved
        assert autopilot_db.load_steps(workflow.id)[0].confidence == 0.0

    def test_failure_retry_then_success(self, make_workflow, autopilot_db):
        workflow = make_workflow()
        attempts = {"count": 0}

        def run(tool, params):
            if tool == "file_glob":
                attempts["count"] += 1
                if attempts["count"] == 1:
                    raise FileNotFoundError("not mounted")
                return StepResult(success=True, output=["a.pdf"])
            return StepResult(success=True, output="done")

        reviewer = ScriptedReviewer(failures=[FailureDecision.RETRY])

        result = WorkflowRuntime(workflow, CallableExecutor(run), reviewer=reviewer).run()

        assert result.status == RunStatus.COMPLETED
        assert attempts["count"] == 2
        assert [e["event"] for e in result.log][:3] == ["step_start", "failed", "completed"]

    def test_failure_skip_continues(self, make_workflow, autopilot_db):
        workflow = make_workflow()
        executor = tool_outputs({"file_glob": FileNotFoundError("gone"), "summarize": "ok"})
        reviewer = ScriptedReviewer(failures=[FailureDecision.SKIP])

        result = WorkflowRuntime(workflow, executor, reviewer=reviewer, sleep=lambda s: None).run()

        assert result.step_outcomes == {1: "failed", 2: "completed"}
        assert result.status == RunStatus.PARTIAL
        # No penalty for skipping a failed step
        assert autopilot_db.load_steps(workflow.id)[0].confidence == 0.0

    def test_failure_cancel_stops(self, make_workflow, autopilot_db):
        workflow = make_workflow()
        executor = tool_outputs({"file_glob": RuntimeError("boom"), "summarize": "ok"})
        reviewer = ScriptedReviewer(failures=[FailureDecision.CANCEL])

        result = WorkflowRuntime(workflow, executor, reviewer=reviewer).run()

        assert result.status == RunStatus.FAILED
        assert len(executor.calls) == 1

    def test_preview_step(self, make_workflow, autopilot_db, executor):
        workflow = make_workflow()
        runtime = WorkflowRuntime(workflow, executor, reviewer=ScriptedReviewer())

        preview = runtime.preview_step(workflow.steps[1])

        assert preview.startswith("Step 2: Summarize PDFs [summarize]")
        assert "unresolved: $pdfs" in preview
        assert "confidence: 0%" in preview
