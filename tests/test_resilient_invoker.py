import pytest

from errors import InvocationError
from resilient_invoker import ResilientInvoker, is_not_ready_error


class Flaky:
    """Fails ``failures`` times with ``error``, then returns ``value``."""

    def __init__(self, failures, error=None, value="ok"):
        self.failures = failures
        self.error = error or ConnectionError("connection reset")
        self.value = value
        self.calls = 0

    def __call__(self, *args, **kwargs):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


def test_succeeds_on_last_attempt_after_backoff(sleep):
    invoker = ResilientInvoker(max_attempts=3, base_delay=1.0, backoff_multiplier=2.0, sleep=sleep)
    func = Flaky(failures=2)
    assert invoker.call("observe", func) == "ok"
    assert func.calls == 3
    assert sleep.calls == [1.0, 2.0]
    assert sum(sleep.calls) >= sum(1.0 * 2.0 ** i for i in range(2))


def test_first_try_success_does_not_sleep(sleep):
    invoker = ResilientInvoker(sleep=sleep)
    assert invoker.call("observe", lambda: 42) == 42
    assert sleep.calls == []


def test_passes_arguments_through(sleep):
    invoker = ResilientInvoker(sleep=sleep)
    assert invoker.call("add", lambda a, b=0: a + b, 2, b=3) == 5


def test_exhausted_retries_raise_invocation_error_naming_the_call(sleep):
    invoker = ResilientInvoker(max_attempts=3, sleep=sleep)
    func = Flaky(failures=10)
    with pytest.raises(InvocationError) as excinfo:
        invoker.call("execute", func)
    err = excinfo.value
    assert err.name == "execute"
    assert err.attempts == 3
    assert err.code == "RETRIES_EXHAUSTED"
    assert isinstance(err.__cause__, ConnectionError)
    assert "execute failed after 3 attempts" in str(err)
    assert func.calls == 3
    assert len(sleep.calls) == 2


def test_non_retryable_error_fails_immediately(sleep):
    invoker = ResilientInvoker(max_attempts=5, sleep=sleep)
    func = Flaky(failures=10, error=PermissionError("denied"))
    with pytest.raises(InvocationError) as excinfo:
        invoker.call("plan", func, should_retry=lambda e: not isinstance(e, PermissionError))
    assert excinfo.value.attempts == 1
    assert "1 attempt:" in str(excinfo.value)
    assert sleep.calls == []


def test_max_delay_caps_backoff():
    invoker = ResilientInvoker(base_delay=1.0, backoff_multiplier=10.0, max_delay=5.0)
    assert [invoker.backoff_delay(i) for i in range(3)] == [1.0, 5.0, 5.0]


def test_extended_mode_waits_linearly_while_driver_not_ready(sleep):
    invoker = ResilientInvoker(extended_max_attempts=5, extended_base_delay=10.0, sleep=sleep)
    func = Flaky(failures=3, error=RuntimeError("Timed out waiting for WebDriverAgent"))
    assert invoker.call_extended("observe (warm-up)", func) == "ok"
    assert sleep.calls == [10.0, 20.0, 30.0]


def test_extended_mode_fails_fast_on_unrelated_error(sleep):
    invoker = ResilientInvoker(sleep=sleep)
    func = Flaky(failures=3, error=RuntimeError("element not found"))
    with pytest.raises(InvocationError) as excinfo:
        invoker.call_extended("observe (warm-up)", func)
    assert excinfo.value.attempts == 1
    assert func.calls == 1
    assert sleep.calls == []


def test_extended_mode_gives_up_after_its_attempt_limit(sleep):
    invoker = ResilientInvoker(extended_max_attempts=2, extended_base_delay=1.0, sleep=sleep)
    func = Flaky(failures=10, error=RuntimeError("instrumentation process is not running"))
    with pytest.raises(InvocationError) as excinfo:
        invoker.call_extended("observe (warm-up)", func)
    assert excinfo.value.attempts == 2
    assert sleep.calls == [1.0]


def test_not_ready_signature_match_is_case_insensitive():
    assert is_not_ready_error(RuntimeError("Could not proxy: CANNOT BE PROXIED TO UIAUTOMATOR2 server"))
    assert not is_not_ready_error(RuntimeError("socket hang up"))


@pytest.mark.parametrize("kwargs", [
    {"max_attempts": 0},
    {"base_delay": -1},
    {"backoff_multiplier": 0.5},
    {"extended_max_attempts": 0},
])
def test_invalid_settings_are_rejected(kwargs):
    with pytest.raises(ValueError):
        ResilientInvoker(**kwargs)
