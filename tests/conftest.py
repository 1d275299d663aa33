import sys
from pathlib import Path
from typing import List

import pytest


# backend/ modules import each other by top-level name
_BACKEND = Path(__file__).resolve().parents[1] / "backend"
if str(_BACKEND) not in sys.path:
    sys.path.insert(0, str(_BACKEND))

from navigation_types import (  # noqa: E402
    PlannedAction,
    TapElement,
    TokenUsage,
    UiNode,
    UiSnapshot,
    Verification,
)
from planning_service import PlanningService  # noqa: E402
from automation_backend import AutomationBackend  # noqa: E402


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self, clock: FakeClock = None):
        self.calls: List[float] = []
        self._clock = clock

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self._clock is not None:
            self._clock.advance(seconds)


class StubBackend(AutomationBackend):
    """Returns a fixed login screen and records executed actions."""

    def __init__(self, execute_results=None, observe_error=None):
        self.executed = []
        self.observe_calls = 0
        self.closed = False
        self._execute_results = list(execute_results or [])
        self._observe_error = observe_error

    def observe(self):
        self.observe_calls += 1
        if self._observe_error is not None:
            raise self._observe_error
        return UiSnapshot(root=UiNode(role="Window", children=(
            UiNode(role="Button", label="Login", identifier="login_button"),
        )))

    def execute(self, action):
        self.executed.append(action)
        if self._execute_results:
            result = self._execute_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return True

    def close(self):
        self.closed = True


class StubPlanner(PlanningService):
    """Proposes the same action every time; reaches the goal after ``reach_after`` verifies."""

    def __init__(self, action=None, reach_after=None, usage=TokenUsage(100, 50)):
        self.action = action or TapElement(element_id="login_button", reasoning="open login")
        self.reach_after = reach_after
        self.usage = usage
        self.plan_models: List[str] = []
        self.verify_models: List[str] = []

    def plan(self, goal, snapshot, history, model):
        self.plan_models.append(model)
        return PlannedAction(action=self.action, usage=self.usage)

    def verify(self, goal, snapshot, history, model):
        self.verify_models.append(model)
        reached = self.reach_after is not None and len(self.verify_models) >= self.reach_after
        return Verification(goal_reached=reached, reasoning="checked", usage=self.usage)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep(clock):
    return RecordingSleep(clock)


@pytest.fixture
def login_snapshot():
    return StubBackend().observe()
