from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any

from streamstress.core.contracts import AttemptResult, FailureIndicator
from streamstress.core.errors import StreamStressError


class BudgetExhausted(StreamStressError):
    """No attempt slot is left."""


class RetryBudget:
    def __init__(self, original: int) -> None:
        if original < 0:
            raise ValueError(f"budget must not be negative, got {original}")
        self._original = original
        self._remaining = original

    @property
    def original(self) -> int:
        return self._original

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def spent(self) -> int:
        return self._original - self._remaining

    def consume(self) -> int:
        """Spend one slot and return the ordinal of the attempt it pays for."""
        if self._remaining <= 0:
            raise BudgetExhausted(f"retry budget of {self._original} exhausted")
        self._remaining -= 1
        return self._original - self._remaining - 1


@dataclass(frozen=True)
class AttemptRecord:
    ordinal: int
    stream_type: str
    result: AttemptResult
    bytes_received: int = 0
    eom_seen: bool = False
    duration_ms: float = 0.0


@dataclass(frozen=True)
class Verdict:
    exit_code: int
    indicator: int
    observed_successes: int
    original_budget: int
    expected_pass_limit: int
    expected_exit: int

    @property
    def good(self) -> bool:
        return self.observed_successes >= self.expected_pass_limit

    @property
    def tally_line(self) -> str:
        return (
            f"  good: {self.observed_successes} / {self.original_budget} budget, "
            f"pass limit {self.expected_pass_limit}"
        )

    @property
    def completion_line(self) -> str:
        if self.exit_code == 0:
            return f"Completed: OK (seen expected {self.expected_exit})"
        return f"Completed: failed: exit {self.indicator}, expected {self.expected_exit}"


@dataclass
class RunSummary:
    name: str
    budget: int
    attempts: int
    successes: int
    pass_limit: int
    indicator: int
    expected_exit: int
    exit_code: int
    results: dict[str, int] = field(default_factory=dict)
    p50_attempt_ms: float = 0.0
    p95_attempt_ms: float = 0.0
    max_attempt_ms: float = 0.0
    watchdog_fired: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _percentile(values: list[float], percentile: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    index = int(round((len(ordered) - 1) * percentile))
    return ordered[max(0, min(index, len(ordered) - 1))]


class OutcomeAggregator:
    """Tallies attempt outcomes and resolves the process verdict."""

    def __init__(self, budget: RetryBudget, pass_limit: int) -> None:
        self._budget = budget
        self._pass_limit = pass_limit
        self._success_count = 0
        self._indicator = FailureIndicator.BELOW_PASS_LIMIT
        self._records: list[AttemptRecord] = []
        self._recorded: set[int] = set()

    @property
    def success_count(self) -> int:
        return self._success_count

    @property
    def pass_limit(self) -> int:
        return self._pass_limit

    @property
    def indicator(self) -> FailureIndicator:
        return self._indicator

    @property
    def records(self) -> list[AttemptRecord]:
        return list(self._records)

    def record_success(self) -> None:
        if self._success_count >= self._budget.original:
            raise StreamStressError("success count cannot exceed the original budget")
        self._success_count += 1

    def record(self, record: AttemptRecord) -> bool:
        """Record one attempt's terminal outcome; repeats for an ordinal are ignored."""
        if record.ordinal in self._recorded:
            return False
        self._recorded.add(record.ordinal)
        self._records.append(record)

        if record.eom_seen:
            self._indicator = FailureIndicator.NONE
        if record.result == AttemptResult.ACKED_SUCCESS:
            self.record_success()
        elif record.result == AttemptResult.RETRIES_EXHAUSTED:
            self._indicator = FailureIndicator.RETRIES_EXHAUSTED
        elif record.result == AttemptResult.TIMED_OUT:
            self._indicator = FailureIndicator.TIMED_OUT
        return True

    def final_verdict(self, expected_exit: int = 0) -> Verdict:
        indicator = int(self._indicator)
        if self._success_count < self._pass_limit:
            indicator = int(FailureIndicator.BELOW_PASS_LIMIT)
        return Verdict(
            exit_code=0 if indicator == expected_exit else 1,
            indicator=indicator,
            observed_successes=self._success_count,
            original_budget=self._budget.original,
            expected_pass_limit=self._pass_limit,
            expected_exit=expected_exit,
        )

    def summary(self, name: str, verdict: Verdict, watchdog_fired: bool = False) -> RunSummary:
        durations = [record.duration_ms for record in self._records]
        return RunSummary(
            name=name,
            budget=self._budget.original,
            attempts=len(self._records),
            successes=self._success_count,
            pass_limit=self._pass_limit,
            indicator=verdict.indicator,
            expected_exit=verdict.expected_exit,
            exit_code=verdict.exit_code,
            results=dict(Counter(record.result.value for record in self._records)),
            p50_attempt_ms=_percentile(durations, 0.50),
            p95_attempt_ms=_percentile(durations, 0.95),
            max_attempt_ms=max(durations) if durations else 0.0,
            watchdog_fired=watchdog_fired,
        )
