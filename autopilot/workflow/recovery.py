"""
Error Recovery for Workflow Steps

Classifies failures and retries the transient ones with backoff.

Categories:
    retryable    - network and timeout failures, retried with backoff
    non_critical - missing resource, permission, bad argument; no retry,
                   the caller continues with a warning
    critical     - anything unrecognized; no retry, the caller stops

Usage:
    from autopilot.workflow.recovery import ErrorRecovery

    recovery = ErrorRecovery(max_retries=3, backoff="exponential", base_delay=1.0)
    data = recovery.call(fetch_page, url)

    # Per-tool defaults
    result = ErrorRecovery.for_tool(step.tool).execute_with_recovery(step, params, executor)
"""

from __future__ import annotations

import errno
import imaplib
import logging
import socket
import ssl
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, TypeVar

import httpx

from autopilot.workflow.models import Step
from autopilot.workflow.tools import StepExecutor, StepResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0
MAX_DELAY = 30.0


class ErrorCategory(StrEnum):
    RETRYABLE = "retryable"
    NON_CRITICAL = "non_critical"
    CRITICAL = "critical"


class Backoff(StrEnum):
    CONSTANT = "constant"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    socket.gaierror,
    ssl.SSLError,
    imaplib.IMAP4.abort,
    httpx.TransportError,
)

RETRYABLE_ERRNOS = frozenset(
    {errno.EHOSTUNREACH, errno.ENETUNREACH, errno.ENETDOWN, errno.ECONNABORTED, errno.ETIMEDOUT}
)

NON_CRITICAL_ERRORS: tuple[type[BaseException], ...] = (
    FileNotFoundError,
    PermissionError,
    ValueError,
    TypeError,
)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff: Backoff = Backoff.EXPONENTIAL
    base_delay: float = DEFAULT_BASE_DELAY


# Network-backed tools get more retries and longer delays than local file tools
_FILE_POLICY = RetryPolicy(max_retries=2, backoff=Backoff.LINEAR, base_delay=1.0)

TOOL_POLICIES: dict[str, RetryPolicy] = {
    "browser": RetryPolicy(max_retries=4, backoff=Backoff.EXPONENTIAL, base_delay=2.0),
    "browser_form": RetryPolicy(max_retries=4, backoff=Backoff.EXPONENTIAL, base_delay=2.0),
    "email_send": RetryPolicy(max_retries=3, backoff=Backoff.EXPONENTIAL, base_delay=5.0),
    "file_glob": _FILE_POLICY,
    "file_list": _FILE_POLICY,
    "file_read": _FILE_POLICY,
    "csv_read": _FILE_POLICY,
    "pdf_extract": _FILE_POLICY,
}


def classify_error(error: BaseException) -> ErrorCategory:
    """Map an exception to its recovery category."""
    # TimeoutError is an OSError subclass, so check retryable first
    if isinstance(error, RETRYABLE_ERRORS):
        return ErrorCategory.RETRYABLE
    if isinstance(error, NON_CRITICAL_ERRORS):
        return ErrorCategory.NON_CRITICAL
    # Unreachable host or network surfaces as a bare OSError
    if isinstance(error, OSError) and error.errno in RETRYABLE_ERRNOS:
        return ErrorCategory.RETRYABLE
    return ErrorCategory.CRITICAL


def describe_error(error: BaseException) -> str:
    """Human-readable description of a failure, prefixed by its category."""
    category = classify_error(error)
    message = str(error) or type(error).__name__
    if category == ErrorCategory.RETRYABLE:
        return f"Temporary error: {message}"
    if category == ErrorCategory.NON_CRITICAL:
        return f"Non-critical error (continuing): {message}"
    return f"Critical error: {message}"


class ErrorRecovery:
    """Retry wrapper for arbitrary callables.

    Args:
        max_retries: Retries after the first attempt for retryable errors.
        backoff: "constant", "linear" (base*attempt) or "exponential" (base*2^(attempt-1)).
        base_delay: Base delay in seconds.
        max_delay: Upper bound for any single delay.
        sleep: Sleep function, replaceable for tests.
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff: Backoff | str = Backoff.EXPONENTIAL,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = MAX_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_retries = max(0, max_retries)
        self.backoff = Backoff(backoff)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.sleep = sleep
        self.attempts = 0
        self.last_error: BaseException | None = None

    @classmethod
    def for_tool(cls, tool_id: str, sleep: Callable[[float], None] = time.sleep) -> ErrorRecovery:
        policy = TOOL_POLICIES.get(tool_id, RetryPolicy())
        return cls(
            max_retries=policy.max_retries,
            backoff=policy.backoff,
            base_delay=policy.base_delay,
            sleep=sleep,
        )

    classify_error = staticmethod(classify_error)
    describe_error = staticmethod(describe_error)

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry that follows failed attempt number ``attempt``."""
        if self.backoff == Backoff.EXPONENTIAL:
            delay = self.base_delay * (2 ** (attempt - 1))
        elif self.backoff == Backoff.LINEAR:
            delay = self.base_delay * attempt
        else:
            delay = self.base_delay
        return min(delay, self.max_delay)

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call ``fn``, retrying retryable errors. Re-raises the last error."""
        self.attempts = 0
        self.last_error = None

        while True:
            self.attempts += 1
            try:
                return fn(*args, **kwargs)
            except Exception as e:
                self.last_error = e
                category = classify_error(e)
                if category != ErrorCategory.RETRYABLE or self.attempts > self.max_retries:
                    raise

                delay = self.delay_for(self.attempts)
                logger.warning(
                    f"Attempt {self.attempts} failed ({e}); retrying in {delay:.1f}s"
                )
                if delay > 0:
                    self.sleep(delay)

    def execute_with_recovery(
        self,
        step: Step,
        params: dict[str, Any],
        executor: StepExecutor,
    ) -> StepResult:
        """Execute a step through ``executor``, converting exhausted failures to a StepResult."""
        try:
            result = self.call(executor.execute, step.tool, params)
        except Exception as e:
            category = classify_error(e)
            log = logger.error if category == ErrorCategory.CRITICAL else logger.warning
            log(f"Step {step.order} ({step.tool}) failed after {self.attempts} attempts: {e}")
            return StepResult(
                success=False,
                error=describe_error(e),
                attempts=self.attempts,
                recoverable=category != ErrorCategory.CRITICAL,
            )

        result.attempts = self.attempts
        return result
