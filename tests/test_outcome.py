import pytest

from streamstress.core.contracts import AttemptResult, FailureIndicator
from streamstress.core.errors import StreamStressError
from streamstress.core.outcome import AttemptRecord, BudgetExhausted, OutcomeAggregator, RetryBudget


def _record(ordinal: int, result: AttemptResult, eom: bool = False, duration_ms: float = 1.0) -> AttemptRecord:
    return AttemptRecord(ordinal=ordinal, stream_type="mintest", result=result, eom_seen=eom, duration_ms=duration_ms)


def test_budget_hands_out_ordinals_until_spent() -> None:
    budget = RetryBudget(2)

    assert budget.consume() == 0
    assert budget.consume() == 1
    assert budget.remaining == 0
    assert budget.spent == 2
    with pytest.raises(BudgetExhausted):
        budget.consume()


def test_indicator_starts_below_pass_limit() -> None:
    aggregator = OutcomeAggregator(RetryBudget(1), pass_limit=0)

    assert aggregator.indicator == FailureIndicator.BELOW_PASS_LIMIT
    verdict = aggregator.final_verdict(expected_exit=1)
    assert verdict.exit_code == 0
    assert verdict.indicator == 1


def test_eom_then_success_is_good() -> None:
    aggregator = OutcomeAggregator(RetryBudget(1), pass_limit=1)
    aggregator.record(_record(0, AttemptResult.ACKED_SUCCESS, eom=True))

    verdict = aggregator.final_verdict()
    assert verdict.good is True
    assert verdict.exit_code == 0
    assert verdict.tally_line == "  good: 1 / 1 budget, pass limit 1"
    assert verdict.completion_line == "Completed: OK (seen expected 0)"


def test_last_failure_kind_sets_indicator() -> None:
    aggregator = OutcomeAggregator(RetryBudget(3), pass_limit=0)
    aggregator.record(_record(0, AttemptResult.ACKED_SUCCESS, eom=True))
    aggregator.record(_record(1, AttemptResult.RETRIES_EXHAUSTED))
    assert aggregator.indicator == FailureIndicator.RETRIES_EXHAUSTED

    aggregator.record(_record(2, AttemptResult.TIMED_OUT))
    verdict = aggregator.final_verdict(expected_exit=3)
    assert verdict.indicator == 3
    assert verdict.exit_code == 0


def test_tally_below_pass_limit_forces_indicator() -> None:
    aggregator = OutcomeAggregator(RetryBudget(3), pass_limit=2)
    aggregator.record(_record(0, AttemptResult.ACKED_SUCCESS, eom=True))
    aggregator.record(_record(1, AttemptResult.TIMED_OUT))

    verdict = aggregator.final_verdict()
    assert verdict.indicator == 1
    assert verdict.exit_code == 1
    assert verdict.good is False
    assert verdict.completion_line == "Completed: failed: exit 1, expected 0"


def test_duplicate_ordinal_is_counted_once() -> None:
    aggregator = OutcomeAggregator(RetryBudget(2), pass_limit=1)

    assert aggregator.record(_record(0, AttemptResult.ACKED_SUCCESS, eom=True)) is True
    assert aggregator.record(_record(0, AttemptResult.ACKED_SUCCESS, eom=True)) is False
    assert aggregator.success_count == 1
    assert len(aggregator.records) == 1


def test_successes_cannot_exceed_budget() -> None:
    aggregator = OutcomeAggregator(RetryBudget(1), pass_limit=1)
    aggregator.record_success()

    with pytest.raises(StreamStressError):
        aggregator.record_success()


def test_summary_counts_and_latency() -> None:
    aggregator = OutcomeAggregator(RetryBudget(3), pass_limit=1)
    aggregator.record(_record(0, AttemptResult.ACKED_SUCCESS, eom=True, duration_ms=10.0))
    aggregator.record(_record(1, AttemptResult.NACKED_FAILURE, eom=True, duration_ms=20.0))
    aggregator.record(_record(2, AttemptResult.ACKED_SUCCESS, eom=True, duration_ms=30.0))

    summary = aggregator.summary("ctx0", aggregator.final_verdict())
    payload = summary.to_dict()
    assert payload["results"] == {"acked_success": 2, "nacked_failure": 1}
    assert payload["successes"] == 2
    assert payload["p50_attempt_ms"] == 20.0
    assert payload["max_attempt_ms"] == 30.0
    assert payload["watchdog_fired"] is False
