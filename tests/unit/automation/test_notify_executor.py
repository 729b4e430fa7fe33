"""Tests for autopilot/automation/notify.py and autopilot/automation/executor.py"""

import json
import subprocess
from unittest.mock import patch

import httpx
import pytest

from autopilot.automation.executor import DryRunExecutor, HttpAgentExecutor
from autopilot.automation.llm import ChatClient, extract_json_object
from autopilot.automation.notify import DesktopNotifier, LogNotifier, safe_notify


# ─────────────────────────────────────────────────────────────────────────────
# Notifier Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestDesktopNotifier:
    def test_macos_command(self):
        command = DesktopNotifier(app_name="Autopilot", system="Darwin").command("Title", 'Say "hi"')

        assert command[:2] == ["osascript", "-e"]
        assert 'display notification "Say \\"hi\\""' in command[2]

    def test_linux_command(self):
        with patch("autopilot.automation.notify.shutil.which", return_value="/usr/bin/notify-send"):
            command = DesktopNotifier(system="Linux").command("Title", "Body")

        assert command == ["notify-send", "--app-name", "Autopilot", "Title", "Body"]

    def test_missing_notify_send(self):
        with patch("autopilot.automation.notify.shutil.which", return_value=None):
            with pytest.raises(FileNotFoundError):
                DesktopNotifier(system="Linux").command("Title", "Body")

    def test_notify_runs_command(self):
        with (
            patch("autopilot.automation.notify.shutil.which", return_value="/usr/bin/notify-send"),
            patch("autopilot.automation.notify.subprocess.run") as run,
        ):
            DesktopNotifier(system="Linux").notify("Title", "Body")

        assert run.call_args.kwargs["check"] is True


class TestSafeNotify:
    def test_success(self):
        assert safe_notify(LogNotifier(), "Title", "Body") is True

    def test_failure_is_swallowed(self):
        notifier = DesktopNotifier(system="Linux")
        with (
            patch("autopilot.automation.notify.shutil.which", return_value="/usr/bin/notify-send"),
            patch(
                "autopilot.automation.notify.subprocess.run",
                side_effect=subprocess.CalledProcessError(1, "notify-send"),
            ),
        ):
            assert safe_notify(notifier, "Title", "Body") is False


# ─────────────────────────────────────────────────────────────────────────────
# Executor Tests
# ─────────────────────────────────────────────────────────────────────────────


def agent(handler):
    return HttpAgentExecutor(
        ChatClient("https://agent.test/v1/chat/completions", "agent-model", transport=httpx.MockTransport(handler))
    )


def reply(content):
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


class TestHttpAgentExecutor:
    def test_sends_policy_as_system_message(self):
        seen = []

        def handler(request):
            seen.append(request)
            return reply("Checked in; boarding pass saved.")

        outcome = agent(handler).run_autonomous("Check in for UA123", "POLICY TEXT")

        messages = json.loads(seen[0].content)["messages"]
        assert messages[0] == {"role": "system", "content": "POLICY TEXT"}
        assert messages[1] == {"role": "user", "content": "Check in for UA123"}
        assert outcome.success is True
        assert outcome.tools_used == ["agent"]

    def test_stop_reply_is_failure(self):
        outcome = agent(lambda r: reply("STOP: the check-in requires payment")).run_autonomous("p", "s")

        assert outcome.success is False
        assert outcome.text.startswith("STOP")

    def test_http_error_is_failure(self):
        outcome = agent(lambda r: httpx.Response(500)).run_autonomous("p", "s")

        assert outcome.success is False
        assert outcome.text == "Agent returned HTTP 500"

    def test_empty_reply_is_failure(self):
        outcome = agent(lambda r: reply("   ")).run_autonomous("p", "s")

        assert outcome.success is False

    def test_transport_error_propagates(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        with pytest.raises(httpx.ConnectError):
            agent(handler).run_autonomous("p", "s")


class TestDryRunExecutor:
    def test_records_and_succeeds(self):
        executor = DryRunExecutor()

        outcome = executor.run_autonomous("Open the tracking page\nmore", "policy")

        assert outcome.success is True
        assert outcome.text == "Dry run: would execute 'Open the tracking page'"
        assert executor.requests == [("Open the tracking page\nmore", "policy")]


class TestExtractJsonObject:
    def test_embedded_object(self):
        assert extract_json_object('Sure! {"items": []} Done.') == {"items": []}

    def test_no_object(self):
        assert extract_json_object("[1, 2]") is None
        assert extract_json_object("") is None
