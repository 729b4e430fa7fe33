"""
Tool: Trigger Manager
Purpose: Decide which workflows should run for a time, a file, or a message

Trigger types:
- schedule: daily / weekly / monthly at a wall-clock time (+/- 5 minutes)
- file_watch: a file matching a glob appears directly in a directory
- email_match: sender and/or subject contain configured substrings
- manual: never fires on its own

A periodic trigger fires at most once per calendar period (day, year+week,
year+month). Firings are de-duplicated against trigger history only.

Usage:
    from autopilot.workflow.triggers import TriggerManager

    manager = TriggerManager()
    for workflow in manager.due_workflows(datetime.now()):
        manager.record_firing(workflow.id, "schedule", {"time": "..."})
"""

from __future__ import annotations

import fnmatch
import logging
import os
import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from autopilot import storage
from autopilot.automation.models import InboxItem
from autopilot.workflow.models import (
    FileWatchTrigger,
    MessageTrigger,
    ScheduleTrigger,
    TriggerEvent,
    Workflow,
    parse_trigger_config,
    try_parse_trigger_config,
)

logger = logging.getLogger(__name__)

MINUTE_TOLERANCE = 5
PERIOD_LOOKBACK_DAYS = 32
PERIOD_HISTORY_LIMIT = 100

DEFAULT_MORNING_HOUR = 8
DEFAULT_EVENING_HOUR = 17

# datetime.weekday() order
DAY_NAMES = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def period_key(frequency: str, moment: datetime) -> str:
    """Calendar period a moment falls in for a schedule frequency."""
    if frequency == "weekly":
        return moment.strftime("%Y-%W")
    if frequency == "monthly":
        return moment.strftime("%Y-%m")
    return moment.date().isoformat()


def _message_fields(item: InboxItem | dict[str, Any]) -> tuple[str, str]:
    if isinstance(item, InboxItem):
        return item.sender, item.subject
    return str(item.get("from") or item.get("sender") or ""), str(item.get("subject") or "")


# =============================================================================
# Matching strategies
# =============================================================================


class TriggerMatcher(Protocol):
    """Strategy deciding whether a trigger matches a time, file or message."""

    def schedule_matches(self, trigger: ScheduleTrigger, now: datetime) -> bool: ...

    def file_matches(self, trigger: FileWatchTrigger, path: str | Path) -> bool: ...

    def message_matches(self, trigger: MessageTrigger, item: InboxItem | dict[str, Any]) -> bool: ...


class GlobTriggerMatcher:
    """Default matcher: clock window, case-insensitive glob, substring match."""

    def __init__(self, minute_tolerance: int = MINUTE_TOLERANCE):
        self.minute_tolerance = minute_tolerance

    def schedule_matches(self, trigger: ScheduleTrigger, now: datetime) -> bool:
        if now.hour != trigger.hour:
            return False
        if abs(now.minute - trigger.minute) > self.minute_tolerance:
            return False
        if trigger.frequency == "weekly":
            return now.weekday() == trigger.day_of_week
        if trigger.frequency == "monthly":
            return now.day == trigger.day_of_month
        return True

    def file_matches(self, trigger: FileWatchTrigger, path: str | Path) -> bool:
        candidate = Path(path).expanduser()
        watch_dir = Path(trigger.path).expanduser().resolve()
        if candidate.parent.resolve() != watch_dir:
            return False
        return fnmatch.fnmatchcase(candidate.name.lower(), trigger.pattern.lower())

    def message_matches(self, trigger: MessageTrigger, item: InboxItem | dict[str, Any]) -> bool:
        if not (trigger.from_pattern or trigger.subject_pattern):
            return False
        sender, subject = _message_fields(item)
        if trigger.from_pattern and trigger.from_pattern.lower() not in sender.lower():
            return False
        if trigger.subject_pattern and trigger.subject_pattern.lower() not in subject.lower():
            return False
        return True


# =============================================================================
# Trigger manager
# =============================================================================


class TriggerManager:
    """Evaluates workflow triggers against storage and trigger history."""

    def __init__(self, matcher: TriggerMatcher | None = None):
        self.matcher = matcher or GlobTriggerMatcher()

    def is_due(self, workflow: Workflow, now: datetime) -> bool:
        """Whether a scheduled workflow should fire at ``now``."""
        trigger = workflow.trigger
        if not workflow.enabled or not isinstance(trigger, ScheduleTrigger):
            return False
        if not self.matcher.schedule_matches(trigger, now):
            return False
        return not self.fired_this_period(workflow.id, trigger.frequency, now)

    def fired_this_period(self, workflow_id: str, frequency: str, now: datetime) -> bool:
        """Whether any recorded firing falls in the same calendar period as ``now``."""
        current = period_key(frequency, now)
        history = storage.get_trigger_history(
            workflow_id,
            limit=PERIOD_HISTORY_LIMIT,
            since=now - timedelta(days=PERIOD_LOOKBACK_DAYS),
        )
        for event in history:
            try:
                fired_at = datetime.fromisoformat(event.triggered_at)
            except ValueError:
                continue
            if period_key(frequency, fired_at) == current:
                return True
        return False

    def matches_file(self, trigger_config: Any, path: str | Path) -> bool:
        trigger = try_parse_trigger_config(trigger_config)
        if not isinstance(trigger, FileWatchTrigger):
            return False
        return self.matcher.file_matches(trigger, path)

    def matches_message(self, trigger_config: Any, item: InboxItem | dict[str, Any]) -> bool:
        trigger = try_parse_trigger_config(trigger_config)
        if not isinstance(trigger, MessageTrigger):
            return False
        return self.matcher.message_matches(trigger, item)

    def record_firing(
        self,
        workflow_id: str,
        trigger_type: str,
        data: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> int:
        return storage.record_trigger(workflow_id, trigger_type, data, now=now)

    def get_trigger_history(self, workflow_id: str, limit: int = 10) -> list[TriggerEvent]:
        return storage.get_trigger_history(workflow_id, limit=limit)

    def _evaluate(self, trigger_type: str, check) -> list[Workflow]:
        matched = []
        for workflow in storage.list_workflows(enabled=True, trigger_type=trigger_type):
            try:
                if check(workflow):
                    matched.append(workflow)
            except Exception as e:
                logger.warning(f"Skipping trigger evaluation for workflow {workflow.name}: {e}")
        return matched

    def due_workflows(self, now: datetime) -> list[Workflow]:
        return self._evaluate("schedule", lambda wf: self.is_due(wf, now))

    def file_triggered_workflows(self, path: str | Path) -> list[Workflow]:
        return self._evaluate("file_watch", lambda wf: self.matches_file(wf.trigger_config, path))

    def message_triggered_workflows(self, item: InboxItem | dict[str, Any]) -> list[Workflow]:
        return self._evaluate(
            "email_match", lambda wf: self.matches_message(wf.trigger_config, item)
        )

    def watched_directories(self) -> list[Path]:
        """Directories watched by enabled file_watch workflows."""
        directories = set()
        for workflow in storage.list_workflows(enabled=True, trigger_type="file_watch"):
            trigger = workflow.trigger
            if isinstance(trigger, FileWatchTrigger):
                directories.add(Path(trigger.path).expanduser().resolve())
        return sorted(directories)


# =============================================================================
# Natural-language trigger parsing
# =============================================================================

_TIME_RE = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(am|pm)\b|\b(\d{1,2}):(\d{2})\b", re.IGNORECASE)
_DAY_OF_MONTH_RE = re.compile(r"\b(\d{1,2})(?:st|nd|rd|th)\b(?:\s+of)?", re.IGNORECASE)
_PATH_RE = re.compile(r"(?:in|from)\s+([~/][\w/.-]+)")
_FOLDER_RE = re.compile(r"\b(downloads?|documents?|desktop)\b", re.IGNORECASE)
_GLOB_RE = re.compile(r"\*\.(\w+)")
_FILE_TYPE_RE = re.compile(r"\b(pdf|csv|txt|xlsx?|docx?)\s+files?\b", re.IGNORECASE)
_SENDER_RE = re.compile(r"\bfrom\s+([^\s,]+@[^\s,]+|[^\s,]+)", re.IGNORECASE)
_SUBJECT_RE = re.compile(
    r"\b(?:subject|about)\s+(?:contains?\s+)?[\"']?([^\"']+?)[\"']?\s*$", re.IGNORECASE
)


def _parse_time(text: str) -> tuple[int, int] | None:
    match = _TIME_RE.search(text)
    if not match:
        return None
    if match.group(1):
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        period = match.group(3).lower()
        if period == "pm" and hour < 12:
            hour += 12
        elif period == "am" and hour == 12:
            hour = 0
    else:
        hour = int(match.group(4))
        minute = int(match.group(5))
    return hour, minute


def parse_schedule(text: str) -> ScheduleTrigger | None:
    """
    Build a schedule trigger from a phrase like "every monday at 9am".

    Returns:
        ScheduleTrigger, or None when no time of day can be determined
    """
    desc = text.lower()
    config: dict[str, Any] = {"type": "schedule", "frequency": "daily", "minute": 0}

    if "morning" in desc:
        config["hour"] = DEFAULT_MORNING_HOUR
    elif "evening" in desc:
        config["hour"] = DEFAULT_EVENING_HOUR

    for idx, day in enumerate(DAY_NAMES):
        if day in desc:
            config["frequency"] = "weekly"
            config["day_of_week"] = idx
            break

    day_match = _DAY_OF_MONTH_RE.search(desc)
    if day_match or re.search(r"every\s+month", desc):
        config["frequency"] = "monthly"
        config["day_of_month"] = int(day_match.group(1)) if day_match else 1
        config.pop("day_of_week", None)

    parsed_time = _parse_time(desc)
    if parsed_time:
        config["hour"], config["minute"] = parsed_time

    if "hour" not in config:
        return None

    try:
        return parse_trigger_config(config)
    except ValidationError as e:
        logger.debug(f"Could not build schedule from {text!r}: {e.error_count()} errors")
        return None


def parse_file_watch(text: str) -> FileWatchTrigger:
    """Build a file-watch trigger from a phrase like "new pdf files in ~/Downloads"."""
    path_match = _PATH_RE.search(text)
    if path_match:
        path = os.path.expanduser(path_match.group(1))
    else:
        folder_match = _FOLDER_RE.search(text)
        folder = folder_match.group(1).lower() if folder_match else "downloads"
        if folder.startswith("download"):
            folder = "Downloads"
        elif folder.startswith("document"):
            folder = "Documents"
        else:
            folder = "Desktop"
        path = os.path.expanduser(f"~/{folder}")

    pattern = "*"
    glob_match = _GLOB_RE.search(text)
    if glob_match:
        pattern = f"*.{glob_match.group(1)}"
    else:
        type_match = _FILE_TYPE_RE.search(text)
        if type_match:
            pattern = f"*.{type_match.group(1).lower()}"

    return FileWatchTrigger(path=path, pattern=pattern)


def parse_message_trigger(text: str) -> MessageTrigger | None:
    """
    Build a message trigger from a phrase like "from billing@acme.com subject invoice".

    Returns:
        MessageTrigger, or None when neither a sender nor a subject is found
    """
    subject_match = _SUBJECT_RE.search(text)
    subject_pattern = subject_match.group(1).strip() if subject_match else None

    # The subject phrase is removed first so "about X from Y" keeps X intact
    remainder = text[: subject_match.start()] if subject_match else text
    sender_match = _SENDER_RE.search(remainder)
    from_pattern = sender_match.group(1) if sender_match else None

    if not (from_pattern or subject_pattern):
        return None
    return MessageTrigger(from_pattern=from_pattern, subject_pattern=subject_pattern)
