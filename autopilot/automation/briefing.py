"""
Tool: Daily Briefings
Purpose: Morning and evening summaries of the action queue and workflow runs

A briefing is due once per day per mode, during the first minutes of its
configured hour. The daemon remembers the last briefing it sent so a cycle
landing twice in the window does not repeat it.

    morning - actions waiting to run and workflow runs that failed recently
    evening - workflow runs completed today and those that need a retry

Usage:
    from autopilot.automation.briefing import due_briefing, build_briefing

    mode = due_briefing(now, {"morning": 8, "evening": 17})
    if mode:
        title, body = build_briefing(mode, now)
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from autopilot.automation.actions import get_queue_stats, list_actions
from autopilot.workflow import history

DEFAULT_HOURS = {"morning": 8, "evening": 17}
DEFAULT_WINDOW_MINUTES = 35
ATTENTION_LOOKBACK = timedelta(days=3)
NOTIFY_BODY_CHARS = 200

TITLES = {"morning": "Morning Briefing", "evening": "Evening Summary"}


def briefing_key(mode: str, now: datetime) -> str:
    return f"{now.date().isoformat()}-{mode}"


def due_briefing(
    now: datetime,
    hours: dict[str, int] | None = None,
    window_minutes: int = DEFAULT_WINDOW_MINUTES,
    last_key: str | None = None,
) -> str | None:
    """Return the briefing mode due at ``now``, or None."""
    for mode, hour in (hours or DEFAULT_HOURS).items():
        if now.hour != hour or now.minute > window_minutes:
            continue
        if briefing_key(mode, now) == last_key:
            continue
        return mode
    return None


def _short(text: str, width: int = 60) -> str:
    text = " ".join(str(text).split())
    return text if len(text) <= width else text[: width - 3] + "..."


def _run_line(run: dict[str, Any]) -> str:
    errors = [e.get("error") for e in run.get("log", []) if isinstance(e, dict) and e.get("error")]
    line = f"  - {run.get('workflow_name', run['workflow_id'])} ({run['status']})"
    if errors:
        line += f": {_short(errors[-1])}"
    return line


def _morning_sections(now: datetime) -> list[str]:
    sections = []

    active = list_actions(active_only=True)["actions"]
    if active:
        lines = [f"  - {_short(a['description'])} [{a['status']}]" for a in active]
        sections.append("WAITING TO RUN:\n" + "\n".join(lines))

    stats = get_queue_stats()["by_status"]
    if stats.get("failed"):
        sections.append(f"ACTIONS FAILED: {stats['failed']}")

    attention = [
        run
        for run in history.get_all_runs(limit=50, include_log=True, since=now - ATTENTION_LOOKBACK)
        if run["status"] in ("failed", "partial")
    ][:5]
    if attention:
        sections.append("NEEDS ATTENTION:\n" + "\n".join(_run_line(r) for r in attention))

    return sections


def _evening_sections(now: datetime) -> list[str]:
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    runs = history.get_all_runs(limit=100, include_log=True, since=start_of_day)

    sections = []
    completed = [r for r in runs if r["status"] == "completed"]
    if completed:
        sections.append("COMPLETED TODAY:\n" + "\n".join(_run_line(r) for r in completed))

    retry = [r for r in runs if r["status"] in ("failed", "partial")]
    if retry:
        sections.append("NEEDS RETRY:\n" + "\n".join(_run_line(r) for r in retry))

    return sections


def build_briefing(mode: str, now: datetime | None = None) -> tuple[str, str]:
    """Build the (title, body) of a briefing."""
    now = now or datetime.now()

    if mode == "morning":
        sections = _morning_sections(now)
        empty = "Good morning! Nothing urgent on your plate."
        heading = "Good morning! Here's your briefing:"
    elif mode == "evening":
        sections = _evening_sections(now)
        empty = "End of day: no workflow runs recorded today."
        heading = "End of day summary:"
    else:
        raise ValueError(f"Unknown briefing mode: {mode}")

    if not sections:
        return TITLES[mode], empty
    return TITLES[mode], heading + "\n\n" + "\n\n".join(sections)
