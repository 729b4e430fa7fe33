"""
Workflow Tools - Learned multi-step automations

This package provides the pieces that turn a recorded sequence of tool
calls into a workflow that gradually runs on its own:
- Decide when a workflow should run (schedule, file, message, manual)
- Execute steps in order, threading outputs into later parameters
- Track per-step trust and infer reusable rules from corrections
- Retry transient failures with backoff

Components:
    models.py: Workflow, Step, WorkflowRun, Correction and trigger models
    triggers.py: Trigger evaluation and natural-language trigger parsing
    runtime.py: Supervised and autonomous step execution
    confidence.py: Confidence scoring, graduation and pattern inference
    recovery.py: Error classification and retry with backoff
    tools.py: Step executor protocol and built-in file tools
    history.py: Run history queries and statistics

Usage:
    from autopilot.workflow.runtime import WorkflowRuntime
    from autopilot.workflow.tools import ToolRegistry

    runtime = WorkflowRuntime(workflow, ToolRegistry(), mode="autonomous")
    result = runtime.run()
"""
