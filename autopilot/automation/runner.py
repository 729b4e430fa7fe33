"""
Tool: Automation Daemon
Purpose: Poll the inbox, run the action queue and fire workflow triggers

Each cycle runs these phases in order:
    1. inbox     - poll for recent messages (with retry)
    2. dedupe    - mark unseen message IDs before anything else touches them
    3. classify  - turn unseen messages into intents (confidence >= threshold)
    4. queue     - insert each intent as a pending action
    5. notify    - start countdowns for pending actions
    6. execute   - run notified actions whose countdown elapsed
    7. workflows - run due schedules, new files and matching messages (autonomous)
    8. briefing  - morning and evening summaries, once per day each

A failing phase is logged and counted; the cycle moves on to the next phase
and the daemon never exits on a cycle error.

Usage:
    python -m autopilot.automation.runner --start
    python -m autopilot.automation.runner --once
    python -m autopilot.automation.runner --stop
    python -m autopilot.automation.runner --status
    python -m autopilot.automation.runner --health
    python -m autopilot.automation.runner --run downloads_pdfs

Dependencies:
    - asyncio (stdlib)
    - pyyaml, pydantic (configuration)
    - structlog (event logging)
    - python-dotenv (secrets from .env)
"""

import argparse
import asyncio
import atexit
import hashlib
import json
import os
import signal
import sys
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from autopilot import PROJECT_ROOT, storage
from autopilot.automation.actions import execute_ready_actions, notify_pending_actions, queue_action
from autopilot.automation.briefing import NOTIFY_BODY_CHARS, briefing_key, build_briefing, due_briefing
from autopilot.automation.executor import ActionExecutor, DryRunExecutor, HttpAgentExecutor
from autopilot.automation.inbox import DirectoryInbox, ImapInbox, Inbox
from autopilot.automation.intents import IntentClassifier, KeywordIntentClassifier, LLMIntentClassifier
from autopilot.automation.llm import ChatClient
from autopilot.automation.models import InboxItem, Intent, WatchSource
from autopilot.automation.notify import DesktopNotifier, LogNotifier, Notifier, safe_notify
from autopilot.config import (
    AppConfig,
    ClassifierConfig,
    ExecutorConfig,
    InboxConfig,
    NotifierConfig,
    get_secret,
    load_config,
)
from autopilot.errors import ConfigurationError, WorkflowNotFoundError
from autopilot.logging_config import get_logger, setup_logging
from autopilot.workflow.recovery import ErrorRecovery
from autopilot.workflow.runtime import RunMode, RunResult, WorkflowRuntime, load_workflow
from autopilot.workflow.tools import StepExecutor, ToolRegistry
from autopilot.workflow.triggers import TriggerManager

logger = get_logger(__name__)

PHASES = ("inbox", "classify", "queue", "notify", "execute", "workflows", "briefing")


# =============================================================================
# Collaborator factories
# =============================================================================


def build_inbox(config: InboxConfig) -> Inbox | None:
    if config.provider == "imap":
        password = get_secret(config.password_env)
        if not config.imap_host or not config.username or not password:
            raise ConfigurationError(
                f"IMAP inbox needs imap_host, username and ${config.password_env}"
            )
        return ImapInbox(
            host=config.imap_host,
            port=config.imap_port,
            username=config.username,
            password=password,
            mailbox=config.mailbox,
            lookback_minutes=config.lookback_minutes,
            max_items=config.max_items,
        )
    if config.provider == "directory":
        return DirectoryInbox(PROJECT_ROOT / config.directory, max_items=config.max_items)
    return None


def build_classifier(config: ClassifierConfig) -> IntentClassifier:
    if config.provider == "llm":
        api_key = get_secret(config.api_key_env)
        if not api_key:
            raise ConfigurationError(f"LLM classifier needs ${config.api_key_env}")
        client = ChatClient(config.endpoint, config.model, api_key, config.timeout_seconds)
        return LLMIntentClassifier(client, max_batch_size=config.max_batch_size)
    return KeywordIntentClassifier()


def build_executor(config: ExecutorConfig) -> ActionExecutor:
    if config.provider == "http":
        api_key = get_secret(config.api_key_env)
        if not api_key:
            raise ConfigurationError(f"HTTP executor needs ${config.api_key_env}")
        return HttpAgentExecutor(
            ChatClient(config.endpoint, config.model, api_key, config.timeout_seconds)
        )
    return DryRunExecutor()


def build_notifier(config: NotifierConfig) -> Notifier:
    if config.provider == "desktop":
        return DesktopNotifier(app_name=config.app_name)
    return LogNotifier()


# =============================================================================
# Daemon
# =============================================================================


class AutomationDaemon:
    """Single-process control loop; one cycle at a time."""

    def __init__(
        self,
        config: AppConfig | None = None,
        inbox: Inbox | None = None,
        classifier: IntentClassifier | None = None,
        executor: ActionExecutor | None = None,
        notifier: Notifier | None = None,
        step_executor: StepExecutor | None = None,
        trigger_manager: TriggerManager | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or load_config()
        daemon_config = self.config.daemon

        self.inbox = inbox if inbox is not None else build_inbox(self.config.inbox)
        self.classifier = classifier or build_classifier(self.config.classifier)
        self.executor = executor or build_executor(self.config.executor)
        self.notifier = notifier or build_notifier(self.config.notifier)
        self.step_executor = step_executor or ToolRegistry(root=self.config.runtime.file_tools_root)
        self.trigger_manager = trigger_manager or TriggerManager()
        self.sleep = sleep

        self.poll_interval = daemon_config.poll_interval_seconds
        self.min_sleep = daemon_config.min_sleep_seconds
        self.countdown = daemon_config.countdown_seconds
        self.threshold = daemon_config.intent_confidence_threshold

        self.pid_file = PROJECT_ROOT / daemon_config.pid_file
        self.status_file = PROJECT_ROOT / daemon_config.status_file

        self.running = False
        self.start_time: datetime | None = None
        self.cycle_count = 0
        self.last_file_scan: datetime | None = None
        self.last_briefing_key: str | None = None
        self._stop_event: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

        self.phase_status = {
            phase: {"last_run": None, "errors": 0, "last_error": None} for phase in PHASES
        }

    # -------------------------------------------------------------------------
    # Cycle phases
    # -------------------------------------------------------------------------

    def poll_inbox(self, now: datetime) -> list[InboxItem]:
        """Poll the inbox and return only items never seen before."""
        if self.inbox is None:
            return []

        recovery = ErrorRecovery(
            max_retries=self.config.daemon.poll_max_retries,
            sleep=self.sleep,
        )
        items = recovery.call(self.inbox.poll_new_items)

        new_items = []
        for item in items:
            if storage.mark_seen(WatchSource.MAIL, item.id, now=now):
                new_items.append(item)
        if new_items:
            logger.info("inbox_polled", total=len(items), new=len(new_items))
        return new_items

    def classify_items(self, items: list[InboxItem]) -> list[Intent]:
        if not items:
            return []
        intents = self.classifier.classify(items)
        accepted = [i for i in intents if i.confidence >= self.threshold]
        if intents:
            logger.info("items_classified", intents=len(intents), accepted=len(accepted))
        return accepted

    def scan_files(self, now: datetime) -> list[Path]:
        """New files in watched directories, each reported once."""
        window = timedelta(seconds=self.poll_interval)
        if self.last_file_scan is not None:
            window = max(window, now - self.last_file_scan)
        cutoff = (now - window).timestamp()
        self.last_file_scan = now

        new_files = []
        for directory in self.trigger_manager.watched_directories():
            if not directory.is_dir():
                continue
            for entry in sorted(directory.iterdir()):
                if not entry.is_file() or entry.stat().st_mtime < cutoff:
                    continue
                key = hashlib.sha256(str(entry.resolve()).encode()).hexdigest()
                if storage.mark_seen(WatchSource.FILE, key, now=now):
                    new_files.append(entry)
        return new_files

    def run_workflow(
        self,
        workflow,
        trigger_type: str,
        data: dict[str, Any],
        now: datetime,
        state: dict[str, Any] | None = None,
    ) -> RunResult | None:
        """Record the firing, then run the workflow autonomously."""
        self.trigger_manager.record_firing(workflow.id, trigger_type, data, now=now)
        try:
            runtime = WorkflowRuntime(
                workflow,
                self.step_executor,
                mode=RunMode.AUTONOMOUS,
                threshold=self.config.runtime.autonomy_threshold,
                sleep=self.sleep,
                state=state,
            )
            result = runtime.run(now=now)
        except Exception as e:
            logger.error("workflow_error", workflow=workflow.name, error=str(e))
            return None

        logger.info(
            "workflow_run",
            workflow=workflow.name,
            trigger=trigger_type,
            run_id=result.run_id,
            status=result.status.value,
        )
        return result

    def run_manual(self, workflow_id_or_name: str, now: datetime | None = None) -> RunResult | None:
        """Run one workflow now, whatever its trigger.

        Raises:
            WorkflowNotFoundError: if no such workflow exists
        """
        now = now or datetime.now()
        workflow = load_workflow(workflow_id_or_name)
        return self.run_workflow(workflow, "manual", {"requested_at": storage.timestamp(now)}, now)

    def run_workflows(self, now: datetime, new_items: list[InboxItem]) -> list[RunResult]:
        results = []

        for workflow in self.trigger_manager.due_workflows(now):
            results.append(
                self.run_workflow(workflow, "schedule", {"time": now.isoformat(timespec="seconds")}, now)
            )

        for path in self.scan_files(now):
            for workflow in self.trigger_manager.file_triggered_workflows(path):
                results.append(
                    self.run_workflow(
                        workflow,
                        "file_watch",
                        {"path": str(path)},
                        now,
                        state={"trigger_file": str(path)},
                    )
                )

        for item in new_items:
            for workflow in self.trigger_manager.message_triggered_workflows(item):
                results.append(
                    self.run_workflow(
                        workflow,
                        "email_match",
                        {"email_id": item.id, "from": item.sender, "subject": item.subject},
                        now,
                        state={"trigger_message": item.to_dict()},
                    )
                )

        return [r for r in results if r is not None]

    def run_briefing(self, now: datetime) -> str | None:
        """Send the morning or evening briefing if one is due; return its mode."""
        config = self.config.briefing
        if not config.enabled:
            return None

        mode = due_briefing(
            now,
            {"morning": config.morning_hour, "evening": config.evening_hour},
            window_minutes=config.window_minutes,
            last_key=self.last_briefing_key,
        )
        if mode is None:
            return None

        # Marked before building so a failing briefing is not retried every cycle
        self.last_briefing_key = briefing_key(mode, now)
        logger.info("briefing_triggered", mode=mode)

        title, body = build_briefing(mode, now)
        safe_notify(self.notifier, title, body[:NOTIFY_BODY_CHARS])
        return mode

    def _phase(
        self,
        name: str,
        fn: Callable[..., Any],
        *args: Any,
        default: Any = None,
        now: datetime | None = None,
    ) -> Any:
        try:
            result = fn(*args)
        except Exception as e:
            status = self.phase_status[name]
            status["errors"] += 1
            status["last_error"] = str(e)
            logger.error("cycle_error", phase=name, error=str(e), exc_info=True)
            return default
        self.phase_status[name]["last_run"] = storage.timestamp(now)
        return result

    def run_cycle(self, now: datetime | None = None) -> dict[str, Any]:
        """Run every phase once. Never raises."""
        now = now or datetime.now()

        new_items = self._phase("inbox", self.poll_inbox, now, default=[], now=now)
        intents = self._phase("classify", self.classify_items, new_items, default=[], now=now)
        queued = self._phase(
            "queue", lambda: [queue_action(i, now=now) for i in intents], default=[], now=now
        )
        notified = self._phase(
            "notify",
            notify_pending_actions,
            self.notifier,
            self.countdown,
            now,
            default=[],
            now=now,
        )
        executed = self._phase(
            "execute", execute_ready_actions, self.executor, self.notifier, now, default=[], now=now
        )
        runs = self._phase("workflows", self.run_workflows, now, new_items, default=[], now=now)
        briefing = self._phase("briefing", self.run_briefing, now, now=now)

        self.cycle_count += 1
        summary = {
            "cycle": self.cycle_count,
            "new_items": len(new_items),
            "queued": len(queued),
            "notified": len(notified),
            "executed": len(executed),
            "workflow_runs": len(runs),
            "briefing": briefing,
        }
        logger.debug("cycle_complete", **summary)
        return summary

    def next_sleep(self, elapsed: float) -> float:
        return max(self.poll_interval - elapsed, self.min_sleep)

    # -------------------------------------------------------------------------
    # Process management
    # -------------------------------------------------------------------------

    def _ensure_dirs(self):
        """Ensure required directories exist."""
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.status_file.parent.mkdir(parents=True, exist_ok=True)

    def _write_pid(self):
        self._ensure_dirs()
        with open(self.pid_file, "w") as f:
            f.write(str(os.getpid()))

    def _remove_pid(self):
        if self.pid_file.exists():
            self.pid_file.unlink()

    def _read_pid(self) -> int | None:
        if not self.pid_file.exists():
            return None
        try:
            with open(self.pid_file) as f:
                return int(f.read().strip())
        except (OSError, ValueError):
            return None

    def _is_running(self) -> bool:
        """Check if another instance is running."""
        pid = self._read_pid()
        if pid is None:
            return False

        try:
            os.kill(pid, 0)
            return True
        except OSError:
            # Stale PID file
            self._remove_pid()
            return False

    def _write_status(self):
        status = {
            "running": self.running,
            "pid": os.getpid() if self.running else None,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "uptime_seconds": (datetime.now() - self.start_time).total_seconds()
            if self.start_time
            else 0,
            "cycles": self.cycle_count,
            "phases": self.phase_status,
            "updated_at": datetime.now().isoformat(),
        }

        self._ensure_dirs()
        with open(self.status_file, "w") as f:
            json.dump(status, f, indent=2)

    def _read_status(self) -> dict[str, Any]:
        if not self.status_file.exists():
            return {"running": False}
        try:
            with open(self.status_file) as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError):
            return {"running": False}

    def request_stop(self) -> None:
        """Ask the loop to exit after the current cycle."""
        self.running = False
        if self._stop_event is not None:
            self._stop_event.set()

    def _setup_signal_handlers(self):
        """SIGTERM/SIGINT wake the sleeping loop; a running cycle is finished first."""
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                self._loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                signal.signal(
                    sig,
                    lambda signum, frame: self._loop.call_soon_threadsafe(self._on_signal, signum),
                )

    def _on_signal(self, signum: int) -> None:
        logger.info("shutdown_requested", signal=int(signum))
        self.request_stop()

    async def start(self) -> bool:
        """Run cycles until a shutdown signal arrives."""
        if self._is_running():
            print(f"Error: Autopilot daemon already running (PID: {self._read_pid()})")
            return False

        self.running = True
        self.start_time = datetime.now()
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()

        self._write_pid()
        atexit.register(self._remove_pid)
        self._setup_signal_handlers()

        logger.info("daemon_started", pid=os.getpid(), poll_interval=self.poll_interval)
        self._write_status()

        while self.running:
            started = time.monotonic()
            try:
                self.run_cycle()
            except Exception as e:
                logger.error("cycle_error", phase="cycle", error=str(e), exc_info=True)
            self._write_status()

            if not self.running:
                break

            delay = self.next_sleep(time.monotonic() - started)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        self.running = False
        self._write_status()
        self._remove_pid()
        logger.info("daemon_stopped", cycles=self.cycle_count)
        return True

    def stop(self) -> dict[str, Any]:
        """Stop the running daemon."""
        pid = self._read_pid()
        if pid is None:
            return {"success": False, "error": "Daemon not running"}

        try:
            os.kill(pid, signal.SIGTERM)
            return {"success": True, "pid": pid, "message": f"Sent SIGTERM to PID {pid}"}
        except OSError as e:
            return {"success": False, "error": str(e)}

    def get_status(self) -> dict[str, Any]:
        status = self._read_status()
        pid = self._read_pid()

        if pid:
            try:
                os.kill(pid, 0)
                status["actually_running"] = True
            except OSError:
                status["actually_running"] = False
        else:
            status["actually_running"] = False

        status["pid_file"] = str(self.pid_file)
        status["status_file"] = str(self.status_file)
        return status

    def health_check(self) -> dict[str, Any]:
        status = self.get_status()

        health = {"healthy": status.get("actually_running", False), "phases": {}}

        for name, phase in (status.get("phases") or {}).items():
            health["phases"][name] = {
                "last_run": phase.get("last_run"),
                "errors": phase.get("errors", 0),
                "healthy": phase.get("errors", 0) < 10,
            }

        total_errors = sum(p.get("errors", 0) for p in (status.get("phases") or {}).values())
        health["total_errors"] = total_errors
        health["healthy"] = health["healthy"] and total_errors < 50
        return health


def main():
    parser = argparse.ArgumentParser(description="Autopilot Daemon")
    parser.add_argument("--start", action="store_true", help="Start the daemon")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--stop", action="store_true", help="Stop the daemon")
    parser.add_argument("--status", action="store_true", help="Show daemon status")
    parser.add_argument("--health", action="store_true", help="Health check")
    parser.add_argument("--run", metavar="WORKFLOW", help="Run one workflow by ID or name and exit")
    parser.add_argument("--config", type=Path, help="Path to autopilot.yaml")

    args = parser.parse_args()

    if not (args.start or args.once or args.stop or args.status or args.health or args.run):
        parser.print_help()
        sys.exit(0)

    load_dotenv(PROJECT_ROOT / ".env")
    config = load_config(args.config)

    if args.start or args.once or args.run:
        log_file = config.daemon.log_file
        setup_logging(log_file=PROJECT_ROOT / log_file if log_file else None)

    try:
        daemon = AutomationDaemon(config)
    except ConfigurationError as e:
        print(f"ERROR {e}")
        sys.exit(1)

    if args.start:
        success = asyncio.run(daemon.start())
        result = {"success": success}
    elif args.once:
        result = {"success": True, "cycle": daemon.run_cycle()}
    elif args.run:
        try:
            run = daemon.run_manual(args.run)
        except WorkflowNotFoundError as e:
            print(f"ERROR {e}")
            sys.exit(1)
        if run is None:
            result = {"success": False, "error": f"Workflow '{args.run}' could not be run"}
        else:
            result = {"success": True, "message": f"Run {run.status.value}", "run": run.to_dict()}
    elif args.stop:
        result = daemon.stop()
    elif args.status:
        result = {"success": True, "status": daemon.get_status()}
    else:
        result = {"success": True, "health": daemon.health_check()}

    if result.get("success"):
        print(f"OK {result.get('message', 'Success')}")
    else:
        print(f"ERROR {result.get('error')}")
        sys.exit(1)

    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
