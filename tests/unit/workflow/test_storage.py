"""Tests for autopilot/storage.py

Storage owns every table the engine and daemon share. Key functionality:
- Workflow creation with validated triggers and renumbered steps
- Run lifecycle (running -> finished, finished runs are immutable)
- Correction and trigger history logs
- Guarded action transitions
- Idempotent watched-item markers
"""

from datetime import datetime, timedelta

import pytest

from autopilot.automation.models import ActionStatus, WatchSource
from autopilot.errors import InvalidTransitionError
from autopilot.workflow.models import CorrectionType, RunStatus, ScheduleTrigger


# ─────────────────────────────────────────────────────────────────────────────
# Workflow Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestCreateWorkflow:
    """Tests for workflow creation."""

    def test_creates_workflow_with_steps(self, autopilot_db, sample_steps):
        """Should store the workflow and its ordered steps."""
        result = autopilot_db.create_workflow(
            "pdf_digest",
            "Summarize new PDFs",
            {"type": "manual"},
            sample_steps,
        )

        assert result["success"] is True
        assert result["step_count"] == 2
        assert result["trigger_type"] == "manual"

        workflow = autopilot_db.get_workflow(result["workflow_id"])
        assert workflow.name == "pdf_digest"
        assert [s.order for s in workflow.steps] == [1, 2]
        assert workflow.steps[0].tool == "file_glob"
        assert workflow.steps[1].params == {"files": "$pdfs"}

    def test_renumbers_step_order(self, autopilot_db):
        """Should assign contiguous orders 1..n regardless of input."""
        steps = [
            {"order": 10, "tool": "a"},
            {"order": 3, "tool": "b"},
        ]
        result = autopilot_db.create_workflow("renumber", "", None, steps)

        workflow = autopilot_db.get_workflow(result["workflow_id"])
        assert [(s.order, s.tool) for s in workflow.steps] == [(1, "a"), (2, "b")]

    def test_new_steps_start_unconfident(self, autopilot_db, sample_steps):
        """New steps should default to zero confidence."""
        result = autopilot_db.create_workflow("fresh", "", None, sample_steps)

        workflow = autopilot_db.get_workflow(result["workflow_id"])
        assert all(s.confidence == 0.0 for s in workflow.steps)
        assert workflow.overall_confidence == 0.0

    def test_rejects_duplicate_name(self, autopilot_db, sample_steps):
        """Should refuse a second workflow with the same name."""
        autopilot_db.create_workflow("dup", "", None, sample_steps)
        result = autopilot_db.create_workflow("dup", "", None, sample_steps)

        assert result["success"] is False
        assert "already exists" in result["error"]

    def test_rejects_invalid_trigger(self, autopilot_db, sample_steps):
        """Should validate the trigger before inserting."""
        result = autopilot_db.create_workflow(
            "bad_trigger",
            "",
            {"type": "schedule", "frequency": "weekly", "hour": 9},
            sample_steps,
        )

        assert result["success"] is False
        assert "Invalid trigger" in result["error"]
        assert autopilot_db.get_workflow("bad_trigger") is None

    def test_rejects_empty_steps(self, autopilot_db):
        result = autopilot_db.create_workflow("empty", "", None, [])

        assert result["success"] is False

    def test_accepts_trigger_model(self, autopilot_db, sample_steps):
        """Should accept an already-validated trigger model."""
        trigger = ScheduleTrigger(frequency="daily", hour=8, minute=30)
        result = autopilot_db.create_workflow("morning", "", trigger, sample_steps)

        workflow = autopilot_db.get_workflow("morning")
        assert result["trigger_type"] == "schedule"
        assert workflow.trigger == trigger


class TestWorkflowQueries:
    """Tests for workflow lookup, listing and updates."""

    def test_get_by_name_or_id(self, make_workflow, autopilot_db):
        workflow = make_workflow("lookup")

        assert autopilot_db.get_workflow("lookup").id == workflow.id
        assert autopilot_db.get_workflow(workflow.id).name == "lookup"
        assert autopilot_db.get_workflow("missing") is None

    def test_list_filters_enabled_and_trigger_type(self, make_workflow, autopilot_db):
        make_workflow("manual_one")
        make_workflow("disabled_one", enabled=False)
        make_workflow(
            "scheduled",
            trigger={"type": "schedule", "frequency": "daily", "hour": 8},
        )

        enabled = {w.name for w in autopilot_db.list_workflows(enabled=True)}
        scheduled = autopilot_db.list_workflows(trigger_type="schedule")

        assert enabled == {"manual_one", "scheduled"}
        assert [w.name for w in scheduled] == ["scheduled"]

    def test_disable_and_enable(self, make_workflow, autopilot_db):
        workflow = make_workflow("toggle")

        assert autopilot_db.disable_workflow(workflow.id)["success"] is True
        assert autopilot_db.get_workflow(workflow.id).enabled is False

        autopilot_db.enable_workflow(workflow.id)
        assert autopilot_db.get_workflow(workflow.id).enabled is True

    def test_update_trigger_revalidates(self, make_workflow, autopilot_db):
        workflow = make_workflow("retrigger")

        bad = autopilot_db.update_workflow(workflow.id, trigger={"type": "file_watch"})
        good = autopilot_db.update_workflow(
            workflow.id, trigger={"type": "file_watch", "path": "/tmp", "pattern": "*.csv"}
        )

        assert bad["success"] is False
        assert good["success"] is True
        assert autopilot_db.get_workflow(workflow.id).trigger_type == "file_watch"

    def test_update_unknown_workflow(self, autopilot_db):
        result = autopilot_db.update_workflow("nope", enabled=False)
        assert result["success"] is False


class TestConfidencePersistence:
    """Tests for step and workflow confidence storage."""

    def test_step_confidence_is_clamped(self, make_workflow, autopilot_db):
        workflow = make_workflow()

        autopilot_db.update_step_confidence(workflow.id, 1, 1.7)
        autopilot_db.update_step_confidence(workflow.id, 2, -0.4)

        steps = autopilot_db.load_steps(workflow.id)
        assert steps[0].confidence == 1.0
        assert steps[1].confidence == 0.0

    def test_overall_confidence_is_step_mean(self, make_workflow, autopilot_db):
        workflow = make_workflow()
        autopilot_db.update_step_confidence(workflow.id, 1, 0.8)
        autopilot_db.update_step_confidence(workflow.id, 2, 0.4)

        overall = autopilot_db.update_overall_confidence(workflow.id)

        assert overall == pytest.approx(0.6)
        assert autopilot_db.get_workflow(workflow.id).overall_confidence == pytest.approx(0.6)

    def test_increment_run_count(self, make_workflow, autopilot_db):
        workflow = make_workflow()

        autopilot_db.increment_run_count(workflow.id, success=True)
        autopilot_db.increment_run_count(workflow.id, success=False)

        stored = autopilot_db.get_workflow(workflow.id)
        assert stored.run_count == 2
        assert stored.success_count == 1


# ─────────────────────────────────────────────────────────────────────────────
# Run Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestRuns:
    """Tests for run lifecycle persistence."""

    def test_start_run_is_running(self, make_workflow, autopilot_db, fixed_now):
        workflow = make_workflow()

        run_id = autopilot_db.start_run(workflow.id, now=fixed_now)
        run = autopilot_db.get_run(run_id)

        assert run.status == RunStatus.RUNNING
        assert run.started_at == "2026-03-02T08:30:00"
        assert run.finished is False
        assert run.state == {}
        assert run.log == []

    def test_complete_run_stores_state_and_log(self, make_workflow, autopilot_db):
        workflow = make_workflow()
        run_id = autopilot_db.start_run(workflow.id)

        autopilot_db.complete_run(
            run_id,
            RunStatus.COMPLETED,
            {"pdfs": ["a.pdf"]},
            [{"event": "completed", "step": 1}],
        )
        run = autopilot_db.get_run(run_id)

        assert run.status == RunStatus.COMPLETED
        assert run.finished is True
        assert run.state == {"pdfs": ["a.pdf"]}
        assert run.log[0]["event"] == "completed"

    def test_completed_run_is_immutable(self, make_workflow, autopilot_db):
        """A finished run should never be overwritten."""
        workflow = make_workflow()
        run_id = autopilot_db.start_run(workflow.id)
        autopilot_db.complete_run(run_id, RunStatus.COMPLETED, {"a": 1}, [])

        autopilot_db.complete_run(run_id, RunStatus.FAILED, {"b": 2}, [])
        run = autopilot_db.get_run(run_id)

        assert run.status == RunStatus.COMPLETED
        assert run.state == {"a": 1}


# ─────────────────────────────────────────────────────────────────────────────
# Correction and Trigger History Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestCorrections:
    """Tests for the append-only correction log."""

    def test_records_structured_values_as_json(self, make_workflow, autopilot_db):
        workflow = make_workflow()

        autopilot_db.record_correction(
            workflow.id, 1, CorrectionType.PARAM_EDIT, {"b": 1, "a": 2}, {"a": 3}
        )
        correction = autopilot_db.list_corrections(workflow.id, 1)[0]

        assert correction.correction_type == CorrectionType.PARAM_EDIT
        assert correction.original_value == '{"a": 2, "b": 1}'
        assert correction.corrected_value == '{"a": 3}'

    def test_filters_by_type_and_counts(self, make_workflow, autopilot_db):
        workflow = make_workflow()
        autopilot_db.record_correction(workflow.id, 1, "output_filter", "x.tmp", None)
        autopilot_db.record_correction(workflow.id, 1, "param_edit", "a", "b")
        autopilot_db.record_correction(workflow.id, 2, "param_edit", "a", "b")

        filters = autopilot_db.list_corrections(workflow.id, 1, CorrectionType.OUTPUT_FILTER)

        assert len(filters) == 1
        assert filters[0].corrected_value == ""
        assert autopilot_db.count_corrections(workflow.id, 1) == 2


class TestTriggerHistory:
    """Tests for trigger firing records."""

    def test_history_newest_first(self, make_workflow, autopilot_db, fixed_now):
        workflow = make_workflow()
        autopilot_db.record_trigger(workflow.id, "schedule", {"n": 1}, now=fixed_now)
        autopilot_db.record_trigger(
            workflow.id, "schedule", {"n": 2}, now=fixed_now + timedelta(days=1)
        )

        history = autopilot_db.get_trigger_history(workflow.id)

        assert [e.trigger_data["n"] for e in history] == [2, 1]

    def test_history_since(self, make_workflow, autopilot_db, fixed_now):
        workflow = make_workflow()
        autopilot_db.record_trigger(workflow.id, "schedule", now=fixed_now - timedelta(days=40))
        autopilot_db.record_trigger(workflow.id, "schedule", now=fixed_now)

        recent = autopilot_db.get_trigger_history(
            workflow.id, since=fixed_now - timedelta(days=32)
        )

        assert len(recent) == 1


# ─────────────────────────────────────────────────────────────────────────────
# Action Tests
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def pending_action(autopilot_db, fixed_now):
    return autopilot_db.insert_action(
        intent="flight_checkin",
        description="Check in for United UA123",
        source_id="<msg-1>",
        extracted_data={"flight_number": "UA123"},
        action_plan="Complete web check-in",
        confidence=0.95,
        now=fixed_now,
    )


class TestActionTransitions:
    """Tests for guarded action status changes."""

    def test_inserted_action_is_pending(self, autopilot_db, pending_action):
        stored = autopilot_db.get_action(pending_action.id)

        assert stored.status == ActionStatus.PENDING
        assert stored.extracted_data == {"flight_number": "UA123"}
        assert stored.not_before is None

    def test_transition_sets_fields(self, autopilot_db, pending_action, fixed_now):
        moved = autopilot_db.transition_action(
            pending_action.id,
            ActionStatus.PENDING,
            ActionStatus.NOTIFIED,
            not_before=fixed_now + timedelta(seconds=60),
        )

        stored = autopilot_db.get_action(pending_action.id)
        assert moved is True
        assert stored.status == ActionStatus.NOTIFIED
        assert stored.not_before == "2026-03-02T08:31:00"

    def test_stale_current_status_is_not_applied(self, autopilot_db, pending_action):
        """A transition from a status the row no longer has should be a no-op."""
        autopilot_db.transition_action(
            pending_action.id, ActionStatus.PENDING, ActionStatus.CANCELLED
        )

        moved = autopilot_db.transition_action(
            pending_action.id, ActionStatus.PENDING, ActionStatus.NOTIFIED
        )

        assert moved is False
        assert autopilot_db.get_action(pending_action.id).status == ActionStatus.CANCELLED

    @pytest.mark.parametrize(
        "current,target",
        [
            ("pending", "executing"),
            ("pending", "completed"),
            ("executing", "cancelled"),
            ("completed", "failed"),
            ("cancelled", "pending"),
        ],
    )
    def test_illegal_transition_raises(self, autopilot_db, pending_action, current, target):
        with pytest.raises(InvalidTransitionError):
            autopilot_db.transition_action(pending_action.id, current, target)

    def test_unknown_field_rejected(self, autopilot_db, pending_action):
        with pytest.raises(ValueError):
            autopilot_db.transition_action(
                pending_action.id, "pending", "notified", description="changed"
            )

    def test_ready_before_filters_on_countdown(self, autopilot_db, pending_action, fixed_now):
        autopilot_db.transition_action(
            pending_action.id,
            "pending",
            "notified",
            not_before=fixed_now + timedelta(seconds=60),
        )

        early = autopilot_db.list_actions(
            statuses=["notified"], ready_before=fixed_now + timedelta(seconds=30)
        )
        late = autopilot_db.list_actions(
            statuses=["notified"], ready_before=fixed_now + timedelta(seconds=60)
        )

        assert early == []
        assert [a.id for a in late] == [pending_action.id]


# ─────────────────────────────────────────────────────────────────────────────
# Watched Item Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestWatchedItems:
    """Tests for de-duplication markers."""

    def test_mark_seen_is_idempotent(self, autopilot_db, fixed_now):
        first = autopilot_db.mark_seen(WatchSource.MAIL, "<msg-1>", now=fixed_now)
        second = autopilot_db.mark_seen(
            WatchSource.MAIL, "<msg-1>", now=fixed_now + timedelta(hours=1)
        )

        item = autopilot_db.get_watched_item(WatchSource.MAIL, "<msg-1>")
        assert first is True
        assert second is False
        assert item.first_seen_at == "2026-03-02T08:30:00"

    def test_sources_are_independent(self, autopilot_db):
        autopilot_db.mark_seen(WatchSource.MAIL, "same-id")

        assert autopilot_db.is_seen(WatchSource.MAIL, "same-id") is True
        assert autopilot_db.is_seen(WatchSource.FILE, "same-id") is False

    def test_timestamp_format(self, autopilot_db):
        assert autopilot_db.timestamp(datetime(2026, 1, 2, 3, 4, 5, 678)) == "2026-01-02T03:04:05"
