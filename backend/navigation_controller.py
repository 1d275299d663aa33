"""
Navigation Controller

Drives the app toward a natural-language goal with an
observe -> plan -> act -> verify loop:

    budget check -> OBSERVE -> PLAN -> forbidden check -> ACT -> RECORD
        -> SETTLE -> VERIFY -> goal reached | escalate model | out of actions | loop

Every outbound call goes through a ResilientInvoker. Every exit path returns
a complete NavigationResult; nothing raised inside the loop reaches the caller.
Deadlines are checked once per iteration, so a call already in flight may
overrun them. navigate_with_run_deadline() adds a hard bound around a run.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from automation_backend import AutomationBackend
from cost_ledger import CostLedger
from errors import (
    BudgetExceededError,
    ForbiddenActionError,
    InvocationError,
    MalformedResponseError,
    MaxActionsExceededError,
)
from guardrails import GuardrailPolicy
from logging_utils import log_event, safe_print
from navigation_types import ActionRecord, NavigationResult, PlannedAction, UiSnapshot
from planning_service import PlanningService, is_retryable_planner_error
from resilient_invoker import ResilientInvoker

DEFAULT_MODEL = "anthropic.claude-3-haiku-20240307-v1:0"
ESCALATION_MODEL = "anthropic.claude-3-5-sonnet-20240620-v1:0"
# Time for the UI to react before it is observed again.
SETTLE_DELAY_SECONDS = 0.75


@dataclass
class _RunState:
    """Mutable state of one navigate() call, never shared between calls."""
    model: str
    started_at: float
    actions_executed: int = 0
    escalated: bool = False


class NavigationController:
    """Runs the navigation loop for one goal at a time per call.

    The controller holds no per-run state, so one instance can serve
    several concurrent navigate() calls on different threads.
    """

    def __init__(self,
                 planner: PlanningService,
                 default_model: str = DEFAULT_MODEL,
                 escalation_model: str = ESCALATION_MODEL,
                 invoker: Optional[ResilientInvoker] = None,
                 settle_delay: float = SETTLE_DELAY_SECONDS,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.planner = planner
        self.default_model = default_model
        self.escalation_model = escalation_model
        self.invoker = invoker or ResilientInvoker(sleep=sleep)
        self.settle_delay = settle_delay
        self._sleep = sleep
        self._clock = clock

    def navigate(self,
                 goal: str,
                 backend: AutomationBackend,
                 ledger: CostLedger,
                 guardrails: GuardrailPolicy,
                 history: Optional[List[ActionRecord]] = None,
                 cancel_event: Optional[threading.Event] = None) -> NavigationResult:
        """Navigate toward ``goal`` and return the outcome.

        Args:
            goal: What the app should end up showing, in plain language.
            backend: Where actions are observed and executed.
            ledger: Cost ledger, usually shared by every step of a flow.
            guardrails: Bounds for this call.
            history: Optional list to append ActionRecords to as they happen.
            cancel_event: Once set, the run stops before its next backend call.
        """
        history = history if history is not None else []
        state = _RunState(model=self.default_model, started_at=self._clock())
        log_event("GOAL", goal)
        try:
            return self._run(goal, backend, ledger, guardrails, history, state, cancel_event)
        except Exception as e:
            error = str(e) or type(e).__name__
            log_event("FAIL", error)
            return self._result(False, state, ledger, history, error)

    def _run(self, goal, backend, ledger, guardrails, history, state, cancel_event) -> NavigationResult:
        while True:
            self._check_budget(state, ledger, guardrails, cancel_event)

            step = state.actions_executed + 1
            snapshot = self.invoker.call("observe", backend.observe)
            log_event("OBSERVE", f"Step {step}: {snapshot.element_count()} elements on screen")

            planned = self.invoker.call(
                "plan", self._plan, goal, snapshot, history, state.model, ledger,
                should_retry=is_retryable_planner_error,
            )
            action = planned.action
            log_event("PLAN", f"[{state.model}] {action.describe()}"
                      + (f" - {action.reasoning}" if action.reasoning else ""))

            matched = guardrails.matched_keywords(action.serialize().lower())
            if matched:
                raise ForbiddenActionError(
                    f"Forbidden action blocked: {action.describe()} matches {', '.join(sorted(matched))}",
                    {"action": action.action, "keywords": sorted(matched)},
                )

            self._check_cancelled(cancel_event)
            try:
                success = bool(self.invoker.call("execute", backend.execute, action))
            except InvocationError as e:
                safe_print(f"--- [WARN] Action failed: {e}")
                success = False
            log_event("ACT", f"{action.action} -> {'OK' if success else 'FAILED'}")

            history.append(ActionRecord.from_action(action, success))
            state.actions_executed += 1

            self._sleep(self.settle_delay)

            self._check_cancelled(cancel_event)
            snapshot = self.invoker.call("observe", backend.observe)
            verification = self.invoker.call(
                "verify", self._verify, goal, snapshot, history, state.model, ledger,
                should_retry=is_retryable_planner_error,
            )
            log_event("VERIFY", f"goal_reached={verification.goal_reached}"
                      + (f" - {verification.reasoning}" if verification.reasoning else ""))

            if verification.goal_reached:
                log_event("OK", f"Goal reached after {state.actions_executed} action(s), "
                                f"cost so far {ledger.formatted_cost()}")
                return self._result(True, state, ledger, history)

            if (not state.escalated
                    and state.actions_executed >= guardrails.escalate_after_attempts
                    and self.escalation_model != self.default_model):
                state.model = self.escalation_model
                state.escalated = True
                log_event("ESCALATE", f"Switching planner to {self.escalation_model} "
                                      f"after {state.actions_executed} action(s)")

            if state.actions_executed >= guardrails.max_actions_per_step:
                raise MaxActionsExceededError(
                    f"Max actions ({guardrails.max_actions_per_step}) reached without achieving goal",
                    {"actions_executed": state.actions_executed},
                )

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise BudgetExceededError("Run cancelled", "RUN_TIMEOUT_EXCEEDED")

    def _check_budget(self, state, ledger, guardrails, cancel_event) -> None:
        self._check_cancelled(cancel_event)
        elapsed = self._clock() - state.started_at
        if elapsed > guardrails.step_deadline:
            raise BudgetExceededError(
                f"Step deadline exceeded ({elapsed:.1f}s > {guardrails.step_deadline:g}s)",
                "STEP_TIMEOUT",
                {"elapsed": elapsed},
            )
        if ledger.is_over_budget(guardrails.cost_cap_usd):
            raise BudgetExceededError(
                f"Cost cap exceeded ({ledger.formatted_cost()} > ${guardrails.cost_cap_usd:.2f})",
                "COST_CAP_EXCEEDED",
                {"total_cost": ledger.total_cost()},
            )

    def _plan(self, goal: str, snapshot: UiSnapshot, history, model: str, ledger: CostLedger) -> PlannedAction:
        try:
            planned = self.planner.plan(goal, snapshot, tuple(history), model)
        except MalformedResponseError as e:
            # Tokens of an unusable reply are still paid for.
            if e.usage is not None:
                ledger.record(model, e.usage.prompt_tokens, e.usage.completion_tokens)
            raise
        ledger.record(model, planned.usage.prompt_tokens, planned.usage.completion_tokens)
        return planned

    def _verify(self, goal: str, snapshot: UiSnapshot, history, model: str, ledger: CostLedger):
        try:
            verification = self.planner.verify(goal, snapshot, tuple(history), model)
        except MalformedResponseError as e:
            if e.usage is not None:
                ledger.record(model, e.usage.prompt_tokens, e.usage.completion_tokens)
            raise
        ledger.record(model, verification.usage.prompt_tokens, verification.usage.completion_tokens)
        return verification

    @staticmethod
    def _result(success: bool, state: _RunState, ledger: CostLedger, history: List[ActionRecord],
                error: Optional[str] = None) -> NavigationResult:
        return NavigationResult(
            success=success,
            actions_executed=state.actions_executed,
            total_tokens=ledger.total_tokens(),
            estimated_cost=ledger.total_cost(),
            action_history=tuple(history),
            error=error,
        )


def navigate_with_run_deadline(controller: NavigationController,
                               goal: str,
                               backend: AutomationBackend,
                               ledger: CostLedger,
                               guardrails: GuardrailPolicy,
                               run_deadline: Optional[float] = None) -> NavigationResult:
    """Run navigate() with a hard wall-clock bound.

    The run executes on a daemon worker thread. If it has not finished within
    ``run_deadline`` seconds (default ``guardrails.run_deadline``) the backend
    connection is closed, the worker is told to stop and abandoned, and a
    failed result is built from the actions recorded so far.
    """
    deadline = guardrails.run_deadline if run_deadline is None else run_deadline
    history: List[ActionRecord] = []
    cancel_event = threading.Event()
    outcome: List[NavigationResult] = []

    def _worker():
        outcome.append(controller.navigate(goal, backend, ledger, guardrails, history, cancel_event))

    worker = threading.Thread(target=_worker, name="navigate-worker", daemon=True)
    worker.start()
    worker.join(deadline)
    if outcome:
        return outcome[0]

    cancel_event.set()
    error = f"Run deadline exceeded ({deadline:g}s)"
    log_event("TIMEOUT", f"{error}; closing backend connection")
    try:
        backend.close()
    except Exception as e:
        safe_print(f"--- [WARN] Closing backend after timeout failed: {e}")
    recorded = tuple(history)
    return NavigationResult(
        success=False,
        actions_executed=len(recorded),
        total_tokens=ledger.total_tokens(),
        estimated_cost=ledger.total_cost(),
        action_history=recorded,
        error=error,
    )
