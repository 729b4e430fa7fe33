"""
Tool: Step Tools
Purpose: Step executor protocol and the built-in file tools

A workflow step names a tool by ID; the runtime hands the resolved
parameters to a StepExecutor and treats the result as opaque. ToolRegistry
is the default executor: a mapping of tool IDs to plain functions.

Built-in tools:
    file_glob  - files in a directory matching a glob pattern
    file_list  - entries directly inside a directory
    file_read  - text content of a file

Usage:
    from autopilot.workflow.tools import ToolRegistry

    registry = ToolRegistry(root="~/Documents")
    result = registry.execute("file_glob", {"directory": "~/Downloads", "pattern": "*.pdf"})
"""

from __future__ import annotations

import fnmatch
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

MAX_READ_CHARS = 100_000


@dataclass
class StepResult:
    """Outcome of executing one step."""

    success: bool
    output: Any = None
    summary: str = ""
    error: str | None = None
    attempts: int = 1
    recoverable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "summary": self.summary,
            "error": self.error,
            "attempts": self.attempts,
            "recoverable": self.recoverable,
        }


@runtime_checkable
class StepExecutor(Protocol):
    """Executes a tool by ID. Transient failures should be raised, not returned."""

    def execute(self, tool_id: str, params: dict[str, Any]) -> StepResult: ...


ToolFunction = Callable[..., StepResult]


class ToolRegistry:
    """StepExecutor backed by a dict of tool functions.

    Args:
        root: Optional directory the built-in file tools are confined to.
        include_builtins: Register file_glob, file_list and file_read.
    """

    def __init__(self, root: str | Path | None = None, include_builtins: bool = True):
        self.root = Path(root).expanduser().resolve() if root else None
        self._tools: dict[str, ToolFunction] = {}
        if include_builtins:
            self.register("file_glob", self._file_glob)
            self.register("file_list", self._file_list)
            self.register("file_read", self._file_read)

    def register(self, tool_id: str, fn: ToolFunction) -> None:
        self._tools[tool_id] = fn

    def tools(self) -> list[str]:
        return sorted(self._tools)

    def execute(self, tool_id: str, params: dict[str, Any]) -> StepResult:
        fn = self._tools.get(tool_id)
        if fn is None:
            raise ValueError(f"Unknown tool: {tool_id}")
        logger.debug(f"Executing tool {tool_id} with {sorted(params)}")
        return fn(**params)

    # -------------------------------------------------------------------------
    # Built-in file tools
    # -------------------------------------------------------------------------

    def _resolve(self, path: str | Path) -> Path:
        resolved = Path(path).expanduser().resolve()
        if self.root and not resolved.is_relative_to(self.root):
            raise PermissionError(f"{resolved} is outside {self.root}")
        return resolved

    def _file_glob(self, directory: str = ".", pattern: str = "*", **_: Any) -> StepResult:
        base = self._resolve(directory)
        if not base.is_dir():
            raise FileNotFoundError(f"Directory not found: {base}")
        matches = sorted(
            str(p)
            for p in base.iterdir()
            if p.is_file() and fnmatch.fnmatch(p.name.lower(), pattern.lower())
        )
        return StepResult(
            success=True,
            output=matches,
            summary=f"Found {len(matches)} files matching {pattern} in {base}",
        )

    def _file_list(self, directory: str = ".", **_: Any) -> StepResult:
        base = self._resolve(directory)
        if not base.is_dir():
            raise FileNotFoundError(f"Directory not found: {base}")
        entries = sorted(p.name for p in base.iterdir())
        return StepResult(success=True, output=entries, summary=f"{len(entries)} entries in {base}")

    def _file_read(self, path: str, max_chars: int = MAX_READ_CHARS, **_: Any) -> StepResult:
        target = self._resolve(path)
        text = target.read_text(errors="replace")
        truncated = len(text) > max_chars
        return StepResult(
            success=True,
            output=text[:max_chars],
            summary=f"Read {min(len(text), max_chars)} chars from {target.name}"
            + (" (truncated)" if truncated else ""),
        )


@dataclass
class CallableExecutor:
    """StepExecutor wrapping a single function ``fn(tool_id, params)``."""

    fn: Callable[[str, dict[str, Any]], StepResult]
    calls: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    def execute(self, tool_id: str, params: dict[str, Any]) -> StepResult:
        self.calls.append((tool_id, params))
        return self.fn(tool_id, params)
