"""
Autopilot - Personal automation agent

This package turns repeated multi-step tasks into learned workflows and runs
them from a background daemon:
- Decide when workflows are due (schedule, file events, inbox messages)
- Execute step pipelines with confidence-gated supervision
- Learn per-step trust from approvals, corrections and skips
- Watch an inbox, classify items into intents, and act after a countdown

Components:
    workflow/: models, triggers, runtime, confidence tracking, error recovery
    automation/: action queue, intent classification, inbox, notifications, daemon
    storage.py: SQLite persistence for every entity
    config.py: YAML configuration validated with pydantic

Usage:
    # Start the daemon
    python -m autopilot.automation.runner --start

    # Create a workflow
    from autopilot import storage
    storage.create_workflow("downloads_pdfs", "Collect new PDFs", trigger, steps)

Dependencies:
    - pyyaml (configuration)
    - pydantic (config and trigger validation)
    - structlog (structured logging)
    - httpx (LLM classifier and agent executor)
"""

import os
from pathlib import Path

# Project paths
PROJECT_ROOT = Path(__file__).parent.parent
DB_PATH = Path(os.environ.get("AUTOPILOT_DB_PATH", PROJECT_ROOT / "data" / "autopilot.db"))
CONFIG_PATH = PROJECT_ROOT / "args" / "autopilot.yaml"

__all__ = [
    "PROJECT_ROOT",
    "DB_PATH",
    "CONFIG_PATH",
]
