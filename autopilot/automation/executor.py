"""
Tool: Action Executors
Purpose: Carry out a queued action under its safety policy

Executors:
    HttpAgentExecutor - sends the policy and plan to a chat-completions agent
    DryRunExecutor    - records what would have been done without acting
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from autopilot.automation.llm import ChatClient
from autopilot.automation.models import ExecutionOutcome

logger = logging.getLogger(__name__)


class ActionExecutor(Protocol):
    def run_autonomous(self, prompt: str, safety_policy: str) -> ExecutionOutcome: ...


class HttpAgentExecutor:
    """Runs an action by asking a remote agent to carry out the plan."""

    def __init__(self, client: ChatClient):
        self.client = client

    def run_autonomous(self, prompt: str, safety_policy: str) -> ExecutionOutcome:
        messages = [
            {"role": "system", "content": safety_policy},
            {"role": "user", "content": prompt},
        ]
        try:
            text = self.client.complete_text(messages)
        except httpx.HTTPStatusError as e:
            logger.warning(f"Agent request rejected: {e.response.status_code}")
            return ExecutionOutcome(
                success=False, text=f"Agent returned HTTP {e.response.status_code}"
            )

        if not text.strip():
            return ExecutionOutcome(success=False, text="Agent returned an empty response")

        # The policy asks the agent to STOP and report when it cannot act safely
        stopped = text.lstrip().upper().startswith("STOP")
        return ExecutionOutcome(success=not stopped, text=text, tools_used=["agent"])


class DryRunExecutor:
    """Executor that never acts; useful until a real agent is configured."""

    def __init__(self):
        self.requests: list[tuple[str, str]] = []

    def run_autonomous(self, prompt: str, safety_policy: str) -> ExecutionOutcome:
        self.requests.append((prompt, safety_policy))
        first_line = prompt.strip().splitlines()[0] if prompt.strip() else ""
        return ExecutionOutcome(success=True, text=f"Dry run: would execute '{first_line}'")
