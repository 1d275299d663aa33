"""
Guardrail Policy

Immutable bounds the navigation controller enforces during one navigate() call.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable

from errors import ConfigurationError

DEFAULT_MAX_ACTIONS_PER_STEP = 50
DEFAULT_STEP_DEADLINE_SECONDS = 10.0
DEFAULT_RUN_DEADLINE_SECONDS = 300.0
DEFAULT_COST_CAP_USD = 1.0
DEFAULT_ESCALATE_AFTER_ATTEMPTS = 5


def normalize_keywords(keywords: Iterable[str]) -> FrozenSet[str]:
    # One keyword, not its characters
    if isinstance(keywords, str):
        keywords = (keywords,)
    return frozenset(k.strip().lower() for k in keywords if k and k.strip())


@dataclass(frozen=True)
class GuardrailPolicy:
    """Bounds for one navigation step.

    Deadlines are in seconds. ``run_deadline`` is informational for the
    controller itself; it is enforced around the whole run by
    ``navigate_with_run_deadline``.
    """
    max_actions_per_step: int = DEFAULT_MAX_ACTIONS_PER_STEP
    step_deadline: float = DEFAULT_STEP_DEADLINE_SECONDS
    run_deadline: float = DEFAULT_RUN_DEADLINE_SECONDS
    cost_cap_usd: float = DEFAULT_COST_CAP_USD
    forbidden_actions: FrozenSet[str] = field(default_factory=frozenset)
    escalate_after_attempts: int = DEFAULT_ESCALATE_AFTER_ATTEMPTS

    def __post_init__(self) -> None:
        if not isinstance(self.max_actions_per_step, int) or self.max_actions_per_step <= 0:
            raise ConfigurationError(f"max_actions_per_step must be a positive integer, got {self.max_actions_per_step!r}")
        if not isinstance(self.escalate_after_attempts, int) or self.escalate_after_attempts <= 0:
            raise ConfigurationError(f"escalate_after_attempts must be a positive integer, got {self.escalate_after_attempts!r}")
        if self.step_deadline <= 0:
            raise ConfigurationError(f"step_deadline must be positive, got {self.step_deadline!r}")
        if self.run_deadline <= 0:
            raise ConfigurationError(f"run_deadline must be positive, got {self.run_deadline!r}")
        if self.cost_cap_usd < 0:
            raise ConfigurationError(f"cost_cap_usd must not be negative, got {self.cost_cap_usd!r}")
        # Lower-cased once here so matching in the loop is a plain substring test.
        object.__setattr__(self, "forbidden_actions", normalize_keywords(self.forbidden_actions))

    def is_forbidden(self, lowered_text: str) -> bool:
        """True if any forbidden keyword occurs in the already lower-cased text."""
        return any(keyword in lowered_text for keyword in self.forbidden_actions)

    def matched_keywords(self, lowered_text: str) -> FrozenSet[str]:
        return frozenset(keyword for keyword in self.forbidden_actions if keyword in lowered_text)
