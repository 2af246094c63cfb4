"""
Error Handling Module
---------------------
Typed failure kinds for tool invocation and the sanitizing error handler.

Callers only ever see the sanitized message for a kind. Full detail
(exception text, stack trace) goes to server-side logging and the audit log.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import logging
import traceback


class ErrorKind(str, Enum):
    """Failure kinds surfaced by the invocation engine."""
    VALIDATION_ERROR = "validation_error"          # Caller-fixable, field detail is safe
    NOT_FOUND = "not_found"                        # Unknown tool name
    CONFIRMATION_REQUIRED = "confirmation_required"  # Gated tool on the unconfirmed path
    POLICY_BLOCKED = "policy_blocked"              # Wrong path for this tool
    RATE_LIMITED = "rate_limited"                  # Transient, remaining/reset are safe
    TIMEOUT = "timeout"                            # Deadline fired before the handler finished
    EXECUTION_FAILED = "execution_failed"          # Catch-all

    @property
    def public_kind(self) -> "ErrorKind":
        """Kind as reported to callers. Timeouts look like any other failure."""
        if self is ErrorKind.TIMEOUT:
            return ErrorKind.EXECUTION_FAILED
        return self

    @property
    def is_policy(self) -> bool:
        return self in (ErrorKind.CONFIRMATION_REQUIRED, ErrorKind.POLICY_BLOCKED)


@dataclass(frozen=True)
class FieldError:
    """One schema violation: dotted location plus message."""
    path: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "message": self.message}


class ToolgateError(Exception):
    """Base class for engine errors."""

    kind: ErrorKind = ErrorKind.EXECUTION_FAILED

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class InputValidationError(ToolgateError):
    """Raw input did not match the tool's input schema."""

    kind = ErrorKind.VALIDATION_ERROR

    def __init__(self, field_errors: List[FieldError]):
        self.field_errors = list(field_errors)
        summary = "; ".join(f"{e.path or '<root>'}: {e.message}" for e in self.field_errors)
        super().__init__(f"Invalid input: {summary}" if summary else "Invalid input")


class ToolTimeoutError(ToolgateError):
    """An attempt did not finish before its deadline."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, tool_name: str, timeout_seconds: float):
        super().__init__(f"{tool_name} timed out after {timeout_seconds}s")
        self.tool_name = tool_name
        self.timeout_seconds = timeout_seconds


class HandlerMissingError(ToolgateError):
    """Descriptor has no handler that can serve this call."""

    def __init__(self, tool_name: str):
        super().__init__(f"No handler registered for tool: {tool_name}")
        self.tool_name = tool_name


class InvalidTransitionError(ToolgateError):
    """Illegal proposal state change."""

    kind = ErrorKind.POLICY_BLOCKED


class AuthenticationError(ToolgateError):
    """The auth resolver rejected the request. Never reaches the engine."""


@dataclass
class ToolFailure:
    """
    Structured failure record.

    Kept by the ErrorHandler for stats; never serialized to callers.
    """
    kind: ErrorKind
    message: str
    tool_name: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    stack_trace: Optional[str] = None

    @classmethod
    def from_exception(
        cls,
        exception: BaseException,
        kind: Optional[ErrorKind] = None,
        tool_name: Optional[str] = None,
        details: Optional[Dict] = None
    ) -> "ToolFailure":
        """Create a failure from an exception."""
        if kind is None:
            kind = getattr(exception, "kind", ErrorKind.EXECUTION_FAILED)
        return cls(
            kind=kind,
            message=f"{type(exception).__name__}: {exception}",
            tool_name=tool_name,
            details=details,
            stack_trace="".join(traceback.format_exception(
                type(exception), exception, exception.__traceback__
            )),
        )

    def __repr__(self) -> str:
        return f"ToolFailure({self.kind.value}: {self.message})"


# Messages safe to return to any caller
PUBLIC_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.VALIDATION_ERROR: "Invalid input",
    ErrorKind.NOT_FOUND: "Tool not found",
    ErrorKind.CONFIRMATION_REQUIRED: (
        "This tool requires confirmation. Use the confirmed execution path."
    ),
    ErrorKind.POLICY_BLOCKED: (
        "This tool does not require confirmation. Use the unconfirmed execution path instead."
    ),
    ErrorKind.RATE_LIMITED: "Rate limit exceeded",
    ErrorKind.TIMEOUT: "Tool execution failed",
    ErrorKind.EXECUTION_FAILED: "Tool execution failed",
}


def public_message(kind: ErrorKind) -> str:
    return PUBLIC_MESSAGES.get(kind, "Tool execution failed")


class ErrorHandler:
    """
    Central error handler with logging and sanitization.
    """

    LEVELS: Dict[ErrorKind, int] = {
        ErrorKind.VALIDATION_ERROR: logging.INFO,
        ErrorKind.NOT_FOUND: logging.INFO,
        ErrorKind.RATE_LIMITED: logging.INFO,
        ErrorKind.CONFIRMATION_REQUIRED: logging.WARNING,
        ErrorKind.POLICY_BLOCKED: logging.WARNING,
        ErrorKind.TIMEOUT: logging.ERROR,
        ErrorKind.EXECUTION_FAILED: logging.ERROR,
    }

    def __init__(self, max_history: int = 100):
        self._logger = logging.getLogger("toolgate.errors")
        self._history: List[ToolFailure] = []
        self._max_history = max_history

    def handle(self, failure: ToolFailure) -> str:
        """
        Log a failure and return the message the caller may see.
        """
        self._log_failure(failure)

        self._history.append(failure)
        if len(self._history) > self._max_history:
            self._history.pop(0)

        return public_message(failure.kind)

    def _log_failure(self, failure: ToolFailure) -> None:
        level = self.LEVELS.get(failure.kind, logging.ERROR)
        tool = failure.tool_name or "-"

        self._logger.log(
            level,
            f"{failure.kind.value} [{tool}]: {failure.message}",
            extra={"tool_name": failure.tool_name, "details": failure.details}
        )

        if failure.stack_trace and level >= logging.ERROR:
            self._logger.debug(f"Stack trace:\n{failure.stack_trace}")

    def get_error_stats(self) -> Dict[str, int]:
        """Count failures by kind."""
        stats: Dict[str, int] = {}
        for failure in self._history:
            key = failure.kind.value
            stats[key] = stats.get(key, 0) + 1
        return stats

    def clear_history(self) -> None:
        self._history.clear()
