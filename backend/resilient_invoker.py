"""
Resilient Invoker

Wraps a single outbound call (automation server tool, Bedrock model call) with
bounded retries.

Two modes:
- call(): exponential backoff, delay = base_delay * multiplier ** attempt.
- call_extended(): cold-start warm-up. Long linear delay,
  delay = extended_base_delay * (attempt + 1), and only while the failure
  message says the UI driver is not ready yet. Any other failure fails fast.

Retries block the calling thread. When the last attempt fails, InvocationError
is raised naming the call and the attempt count, chained to the last error.
"""
from __future__ import annotations

import time
from typing import Any, Callable, Iterable, Optional, Tuple, TypeVar

from errors import InvocationError
from logging_utils import safe_print

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_EXTENDED_MAX_ATTEMPTS = 5
DEFAULT_EXTENDED_BASE_DELAY = 10.0

# Failure messages seen while WebDriverAgent / UiAutomator2 is still starting.
NOT_READY_SIGNATURES: Tuple[str, ...] = (
    "timed out waiting for webdriveragent",
    "instrumentation process is not running",
    "cannot be proxied to uiautomator2",
    "session is not ready",
)


def is_not_ready_error(error: BaseException, signatures: Iterable[str] = NOT_READY_SIGNATURES) -> bool:
    message = str(error).lower()
    return any(signature.lower() in message for signature in signatures)


class ResilientInvoker:
    """Bounded retry with backoff around one outbound call."""

    def __init__(self,
                 max_attempts: int = DEFAULT_MAX_ATTEMPTS,
                 base_delay: float = DEFAULT_BASE_DELAY,
                 backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
                 max_delay: Optional[float] = None,
                 extended_max_attempts: int = DEFAULT_EXTENDED_MAX_ATTEMPTS,
                 extended_base_delay: float = DEFAULT_EXTENDED_BASE_DELAY,
                 sleep: Callable[[float], None] = time.sleep):
        if max_attempts < 1 or extended_max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if base_delay < 0 or extended_base_delay < 0:
            raise ValueError("retry delays must not be negative")
        if backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.backoff_multiplier = backoff_multiplier
        self.max_delay = max_delay
        self.extended_max_attempts = extended_max_attempts
        self.extended_base_delay = extended_base_delay
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Delay after failed attempt ``attempt`` (0-based) in standard mode."""
        delay = self.base_delay * (self.backoff_multiplier ** attempt)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def extended_delay(self, attempt: int) -> float:
        return self.extended_base_delay * (attempt + 1)

    def call(self,
             name: str,
             func: Callable[..., T],
             *args: Any,
             should_retry: Optional[Callable[[BaseException], bool]] = None,
             **kwargs: Any) -> T:
        """Run ``func`` with exponential backoff between failed attempts."""
        for attempt in range(self.max_attempts):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                attempts_made = attempt + 1
                if should_retry is not None and not should_retry(e):
                    safe_print(f"[ERROR] {name}: non-retryable error: {type(e).__name__}: {e}")
                    raise InvocationError(name, attempts_made, e) from e
                if attempts_made >= self.max_attempts:
                    safe_print(f"[ERROR] {name}: max attempts ({self.max_attempts}) reached")
                    raise InvocationError(name, attempts_made, e) from e
                delay = self.backoff_delay(attempt)
                safe_print(f"[WARN]  {name} failed (attempt {attempts_made}/{self.max_attempts}): {e}")
                safe_print(f"[WAIT] Retrying in {delay:g} seconds...")
                self._sleep(delay)
        raise AssertionError("unreachable: retry loop exited without result")

    def call_extended(self,
                      name: str,
                      func: Callable[..., T],
                      *args: Any,
                      ready_signatures: Iterable[str] = NOT_READY_SIGNATURES,
                      **kwargs: Any) -> T:
        """Run ``func`` while the UI driver warms up.

        Retries only failures whose message matches one of ``ready_signatures``.
        """
        signatures = tuple(ready_signatures)
        for attempt in range(self.extended_max_attempts):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                attempts_made = attempt + 1
                if not is_not_ready_error(e, signatures):
                    safe_print(f"[ERROR] {name}: failed during warm-up: {type(e).__name__}: {e}")
                    raise InvocationError(name, attempts_made, e) from e
                if attempts_made >= self.extended_max_attempts:
                    safe_print(f"[ERROR] {name}: driver still not ready after {attempts_made} attempts")
                    raise InvocationError(name, attempts_made, e) from e
                delay = self.extended_delay(attempt)
                safe_print(f"[WAIT] {name}: driver not ready (attempt {attempts_made}/{self.extended_max_attempts}), "
                           f"waiting {delay:g} seconds...")
                self._sleep(delay)
        raise AssertionError("unreachable: warm-up loop exited without result")
