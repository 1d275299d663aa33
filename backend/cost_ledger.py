"""
Cost Ledger

Accumulates token usage from planning-service calls and derives the dollar
cost of each call from a static per-token price table. The ledger is shared
across the navigate() calls of one run, so the budget covers the whole run.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from logging_utils import safe_print

_PER_MILLION = 1_000_000


@dataclass(frozen=True)
class ModelPricing:
    """Dollar cost per single token."""
    prompt: float
    completion: float


# Bedrock Anthropic models plus the OpenAI ids the navigator was first tuned on.
MODEL_PRICING: Dict[str, ModelPricing] = {
    "anthropic.claude-3-haiku-20240307-v1:0": ModelPricing(0.25 / _PER_MILLION, 1.25 / _PER_MILLION),
    "anthropic.claude-3-5-haiku-20241022-v1:0": ModelPricing(0.80 / _PER_MILLION, 4.00 / _PER_MILLION),
    "anthropic.claude-3-5-sonnet-20240620-v1:0": ModelPricing(3.00 / _PER_MILLION, 15.00 / _PER_MILLION),
    "anthropic.claude-3-5-sonnet-20241022-v2:0": ModelPricing(3.00 / _PER_MILLION, 15.00 / _PER_MILLION),
    "anthropic.claude-3-opus-20240229-v1:0": ModelPricing(15.00 / _PER_MILLION, 75.00 / _PER_MILLION),
    "gpt-4o": ModelPricing(2.50 / _PER_MILLION, 10.00 / _PER_MILLION),
    "gpt-4o-mini": ModelPricing(0.15 / _PER_MILLION, 0.60 / _PER_MILLION),
    "gpt-4": ModelPricing(30.00 / _PER_MILLION, 60.00 / _PER_MILLION),
    "gpt-3.5-turbo": ModelPricing(0.50 / _PER_MILLION, 1.50 / _PER_MILLION),
}
FALLBACK_MODEL = "anthropic.claude-3-haiku-20240307-v1:0"


@dataclass(frozen=True)
class UsageRecord:
    model: str
    prompt_tokens: int
    completion_tokens: int
    cost: float
    # Pricing entry actually applied; differs from ``model`` for unknown models.
    priced_as: str = ""

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class ModelUsage:
    model: str
    calls: int
    tokens: int
    cost: float


@dataclass(frozen=True)
class CostSummary:
    total_cost: float
    breakdown: List[ModelUsage] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "total_cost": self.total_cost,
            "breakdown": [
                {"model": m.model, "calls": m.calls, "tokens": m.tokens, "cost": m.cost}
                for m in self.breakdown
            ],
        }


def _token_count(value) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError, OverflowError):
        safe_print(f"[WARN]  Ignoring unusable token count {value!r}")
        return 0


class CostLedger:
    """Thread-safe, append-only record of planner token usage."""

    def __init__(self,
                 pricing: Optional[Mapping[str, ModelPricing]] = None,
                 fallback_model: str = FALLBACK_MODEL):
        self._pricing: Dict[str, ModelPricing] = dict(pricing if pricing is not None else MODEL_PRICING)
        if fallback_model not in self._pricing:
            raise ValueError(f"Fallback model {fallback_model!r} has no pricing entry")
        self._fallback_model = fallback_model
        self._records: List[UsageRecord] = []
        self._lock = threading.Lock()

    @property
    def fallback_model(self) -> str:
        return self._fallback_model

    def _pricing_for(self, model: str) -> Tuple[str, ModelPricing]:
        pricing = self._pricing.get(model)
        if pricing is None:
            return self._fallback_model, self._pricing[self._fallback_model]
        return model, pricing

    def record(self, model: str, prompt_tokens: int, completion_tokens: int) -> UsageRecord:
        """Append one call's usage. Never raises: accounting must not stop a run."""
        prompt_tokens = _token_count(prompt_tokens)
        completion_tokens = _token_count(completion_tokens)
        priced_as, pricing = self._pricing_for(model)
        if priced_as != model:
            safe_print(f"[WARN]  Unknown model '{model}' - using {priced_as} pricing as fallback")
        cost = pricing.prompt * prompt_tokens + pricing.completion * completion_tokens
        usage = UsageRecord(
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost=cost,
            priced_as=priced_as,
        )
        with self._lock:
            self._records.append(usage)
        return usage

    def records(self) -> List[UsageRecord]:
        with self._lock:
            return list(self._records)

    def total_cost(self) -> float:
        return sum(r.cost for r in self.records())

    def token_totals(self) -> Tuple[int, int]:
        """(prompt tokens, completion tokens) across all calls."""
        records = self.records()
        return sum(r.prompt_tokens for r in records), sum(r.completion_tokens for r in records)

    def total_tokens(self) -> int:
        prompt, completion = self.token_totals()
        return prompt + completion

    def is_over_budget(self, cap_usd: float) -> bool:
        # Strict: landing exactly on the cap is still within budget.
        return self.total_cost() > cap_usd

    def summary(self) -> CostSummary:
        """Per-model breakdown, in the order models were first used."""
        by_model: Dict[str, List[float]] = {}
        records = self.records()
        for r in records:
            calls, tokens, cost = by_model.get(r.model, [0, 0, 0.0])
            by_model[r.model] = [calls + 1, tokens + r.total_tokens, cost + r.cost]
        breakdown = [
            ModelUsage(model=model, calls=int(calls), tokens=int(tokens), cost=cost)
            for model, (calls, tokens, cost) in by_model.items()
        ]
        return CostSummary(total_cost=sum(r.cost for r in records), breakdown=breakdown)

    def formatted_cost(self) -> str:
        return f"${self.total_cost():.4f}"

    def reset(self) -> None:
        """Drop all history. Only between independent, unrelated runs."""
        with self._lock:
            self._records.clear()

    @staticmethod
    def estimate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
        pricing = MODEL_PRICING.get(model) or MODEL_PRICING[FALLBACK_MODEL]
        return pricing.prompt * prompt_tokens + pricing.completion * completion_tokens
