import threading

import pytest

from cost_ledger import FALLBACK_MODEL, MODEL_PRICING, CostLedger, ModelPricing


def _ledger_with_model_a():
    pricing = {
        "model-A": ModelPricing(prompt=0.0000025, completion=0.00001),
        "fallback": ModelPricing(prompt=0.000001, completion=0.000002),
    }
    return CostLedger(pricing=pricing, fallback_model="fallback")


def test_record_prices_prompt_and_completion_tokens():
    ledger = _ledger_with_model_a()
    usage = ledger.record("model-A", 1000, 500)
    assert usage.cost == pytest.approx(0.0075)
    assert usage.priced_as == "model-A"
    assert ledger.total_cost() == pytest.approx(0.0075)
    assert ledger.formatted_cost() == "$0.0075"


def test_total_cost_never_decreases_and_equals_sum_of_records():
    ledger = _ledger_with_model_a()
    calls = [("model-A", 10, 0), ("model-A", 0, 10), ("model-A", 1234, 567), ("fallback", 5, 5)]
    previous = 0.0
    for model, prompt, completion in calls:
        ledger.record(model, prompt, completion)
        current = ledger.total_cost()
        assert current >= previous
        previous = current
    assert ledger.total_cost() == pytest.approx(sum(r.cost for r in ledger.records()))


def test_unknown_model_uses_fallback_rates_without_raising(capsys):
    ledger = CostLedger()
    usage = ledger.record("unknown-model-xyz", 10, 10)
    fallback = MODEL_PRICING[FALLBACK_MODEL]
    assert usage.cost == pytest.approx(fallback.prompt * 10 + fallback.completion * 10)
    assert usage.model == "unknown-model-xyz"
    assert usage.priced_as == FALLBACK_MODEL
    assert "Unknown model 'unknown-model-xyz'" in capsys.readouterr().out


def test_bad_token_counts_are_clamped_not_raised():
    ledger = _ledger_with_model_a()
    usage = ledger.record("model-A", -5, "lots")
    assert usage.prompt_tokens == 0
    assert usage.completion_tokens == 0
    assert usage.cost == 0


def test_non_finite_token_counts_are_ignored():
    ledger = _ledger_with_model_a()
    usage = ledger.record("model-A", float("inf"), 1)
    assert usage.prompt_tokens == 0
    assert usage.completion_tokens == 1
    assert ledger.record("model-A", float("nan"), 0).prompt_tokens == 0


def test_is_over_budget_is_strict():
    ledger = _ledger_with_model_a()
    ledger.record("model-A", 1000, 500)
    assert not ledger.is_over_budget(0.0075)
    assert ledger.is_over_budget(0.007)


def test_summary_groups_by_model_in_first_seen_order():
    ledger = _ledger_with_model_a()
    ledger.record("model-A", 100, 50)
    ledger.record("fallback", 10, 10)
    ledger.record("model-A", 100, 50)
    summary = ledger.summary()
    assert [m.model for m in summary.breakdown] == ["model-A", "fallback"]
    assert summary.breakdown[0].calls == 2
    assert summary.breakdown[0].tokens == 300
    assert summary.total_cost == pytest.approx(ledger.total_cost())
    assert summary.to_dict()["breakdown"][1]["calls"] == 1


def test_token_totals_and_reset():
    ledger = _ledger_with_model_a()
    ledger.record("model-A", 100, 50)
    ledger.record("model-A", 1, 2)
    assert ledger.token_totals() == (101, 52)
    assert ledger.total_tokens() == 153
    ledger.reset()
    assert ledger.records() == []
    assert ledger.total_cost() == 0


def test_fallback_model_must_be_priced():
    with pytest.raises(ValueError):
        CostLedger(pricing={"a": ModelPricing(1, 1)}, fallback_model="b")


def test_estimate_cost_does_not_record():
    cost = CostLedger.estimate_cost("gpt-4o", 1000, 500)
    assert cost == pytest.approx(1000 * 2.5e-6 + 500 * 10e-6)


def test_concurrent_records_are_all_kept():
    ledger = _ledger_with_model_a()

    def _worker():
        for _ in range(200):
            ledger.record("model-A", 1, 1)

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(ledger.records()) == 1600
    assert ledger.total_tokens() == 3200
