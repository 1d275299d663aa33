"""
Navigator Error Types

Every failure the navigation stack raises derives from NavigatorError so the
controller can turn it into a failed NavigationResult with a readable message.
"""
from __future__ import annotations

from typing import Any, Dict, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from navigation_types import TokenUsage


class NavigatorError(Exception):
    """Base class for navigation errors."""

    def __init__(self, message: str, code: str = "NAVIGATOR_ERROR", context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.context = context or {}


class ConfigurationError(NavigatorError, ValueError):
    """Raised when guardrails or settings hold invalid values."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIG_INVALID", context)


class BudgetExceededError(NavigatorError):
    """Raised when the step deadline, run deadline or cost cap is exceeded."""


class ForbiddenActionError(NavigatorError):
    """Raised when the planner proposes an action containing a forbidden keyword."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, "FORBIDDEN_ACTION", context)


class MaxActionsExceededError(NavigatorError):
    """Raised when the action budget is used up without reaching the goal."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, "MAX_STEPS_EXCEEDED", context)


class BackendError(NavigatorError):
    """Raised when the automation server rejects or fails a tool call."""

    def __init__(self, message: str, tool: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, "BACKEND_CALL_FAILED", {"tool": tool, "status_code": status_code})
        self.tool = tool
        self.status_code = status_code


class MalformedResponseError(NavigatorError):
    """Raised when a planner reply cannot be parsed into the expected shape.

    The tokens spent on the reply are kept on ``usage`` so they can still be
    charged to the cost ledger.
    """

    def __init__(self, message: str, usage: Optional["TokenUsage"] = None, raw: Any = None):
        super().__init__(message, "MALFORMED_RESPONSE", {"raw": raw})
        self.usage = usage
        self.raw = raw


class InvocationError(NavigatorError):
    """Raised by ResilientInvoker once a call has failed for the last time."""

    def __init__(self, name: str, attempts: int, last_error: BaseException):
        attempt_word = "attempt" if attempts == 1 else "attempts"
        message = f"{name} failed after {attempts} {attempt_word}: {last_error}"
        super().__init__(message, "RETRIES_EXHAUSTED", {"name": name, "attempts": attempts})
        self.name = name
        self.attempts = attempts
        self.last_error = last_error
