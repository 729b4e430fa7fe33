"""Shared test fixtures for Autopilot tests.

This module provides common fixtures used across all test modules:
- Database isolation with temporary files
- Workflow and inbox item factories
- A fixed clock

Usage:
    def test_something(autopilot_db):
        # autopilot_db is the storage module bound to a temporary database
        ...
"""

import os
import tempfile
from collections.abc import Generator
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import pytest

from autopilot.automation.models import InboxItem


# ─────────────────────────────────────────────────────────────────────────────
# Database Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def temp_db() -> Generator[Path, None, None]:
    """Create a temporary database file for testing.

    The database file is automatically deleted after the test completes.

    Yields:
        Path to the temporary database file
    """
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    yield db_path

    # Cleanup
    if db_path.exists():
        os.unlink(db_path)


@pytest.fixture
def autopilot_db(temp_db: Path):
    """Patch storage to use the temporary database.

    Yields:
        The autopilot.storage module with tables created
    """
    with patch("autopilot.storage.DB_PATH", temp_db):
        from autopilot import storage

        # Force table creation
        conn = storage.get_connection()
        conn.close()

        yield storage


# ─────────────────────────────────────────────────────────────────────────────
# Workflow Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def sample_steps() -> list[dict]:
    """Two-step pipeline: find PDFs, then read the first one."""
    return [
        {
            "tool": "file_glob",
            "params": {"directory": "~/Downloads", "pattern": "*.pdf"},
            "output_key": "pdfs",
            "description": "Find PDFs",
        },
        {
            "tool": "summarize",
            "params": {"files": "$pdfs"},
            "output_key": "summary",
            "description": "Summarize PDFs",
        },
    ]


@pytest.fixture
def make_workflow(autopilot_db, sample_steps):
    """Factory creating a stored workflow and returning it with its steps."""

    def _make(name="test_workflow", trigger=None, steps=None, enabled=True):
        result = autopilot_db.create_workflow(
            name=name,
            description=f"{name} description",
            trigger=trigger or {"type": "manual"},
            steps=steps or sample_steps,
            enabled=enabled,
        )
        assert result["success"], result
        return autopilot_db.get_workflow(result["workflow_id"])

    return _make


@pytest.fixture
def fixed_now() -> datetime:
    """Monday 2 March 2026, 08:30."""
    return datetime(2026, 3, 2, 8, 30)


# ─────────────────────────────────────────────────────────────────────────────
# Inbox Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def checkin_email() -> InboxItem:
    """Airline email that should classify as a confident flight check-in."""
    return InboxItem(
        id="<checkin-1@united.com>",
        sender="United Airlines <notifications@united.com>",
        subject="Check-in is now open for your flight UA123",
        timestamp="2026-03-02T08:00:00",
        body=(
            "Online check-in is now open for flight UA 123 to Denver.\n"
            "Confirmation number: ABC123\n"
            "Check in here: https://united.com/checkin?ref=ABC123\n"
        ),
    )


@pytest.fixture
def newsletter_email() -> InboxItem:
    """Message with no actionable intent."""
    return InboxItem(
        id="<news-1@example.com>",
        sender="news@example.com",
        subject="Weekly digest",
        timestamp="2026-03-02T07:00:00",
        body="Here is what happened this week.",
    )
