import asyncio
import json
from dataclasses import fields, replace

import pytest

from streamstress import cli
from streamstress.core.config import HarnessConfig
from streamstress.core.contracts import AttemptResult
from streamstress.core.errors import ConfigurationError, WatchdogExpired
from streamstress.core.instance import StressContext, StressInstance
from streamstress.core.policy import CAPTIVE_PORTAL_DETECT
from streamstress.core.system_state import AUTH_IDX_ROOT, BlobType
from streamstress.core.watchdog import WATCHDOG_EXIT_CODE

from conftest import HANG_SCRIPT, SUCCESS_SCRIPT, TIMEOUT_SCRIPT, ScriptedTransport


@pytest.mark.asyncio
async def test_single_successful_attempt_is_good(harness_config: HarnessConfig) -> None:
    transport = ScriptedTransport(SUCCESS_SCRIPT)
    instance = StressInstance(replace(harness_config, budget=1, pass_limit=1), transport_factory=lambda _: transport)

    verdict = await instance.run()

    assert verdict.exit_code == 0
    assert verdict.observed_successes == 1
    assert verdict.indicator == 0
    assert transport.closed is True
    assert instance.watchdog.cancelled is True
    assert instance.watchdog.fired is False
    assert instance.context.blobs.get(BlobType.DEVICE_TYPE) == b"spacerocket"
    assert instance.context.blobs.size(BlobType.AUTH, AUTH_IDX_ROOT) > 0

    log_text = harness_config.log_path.read_text(encoding="utf-8")
    assert "good: 1 / 1 budget, pass limit 1" in log_text
    assert "Completed: OK (seen expected 0)" in log_text


@pytest.mark.asyncio
async def test_always_timing_out_spends_budget_without_watchdog(harness_config: HarnessConfig) -> None:
    transport = ScriptedTransport(TIMEOUT_SCRIPT)
    config = replace(harness_config, budget=3, pass_limit=1, timeout_ms=1_000)
    instance = StressInstance(config, transport_factory=lambda _: transport)

    verdict = await instance.run()

    assert transport.creations == 3
    assert verdict.observed_successes == 0
    assert verdict.good is False
    assert verdict.exit_code == 1
    assert instance.watchdog.fired is False
    assert instance.summary.results == {AttemptResult.TIMED_OUT.value: 3}

    log_text = config.log_path.read_text(encoding="utf-8")
    assert "Completed: failed: exit 1, expected 0" in log_text


@pytest.mark.asyncio
async def test_expected_failure_exit_counts_as_pass(harness_config: HarnessConfig) -> None:
    transport = ScriptedTransport(TIMEOUT_SCRIPT)
    config = replace(harness_config, budget=2, pass_limit=0, timeout_ms=1_000, expected_exit=3)

    verdict = await StressInstance(config, transport_factory=lambda _: transport).run()

    assert verdict.indicator == 3
    assert verdict.exit_code == 0


@pytest.mark.asyncio
async def test_portal_overlay_applies_once_before_first_attempt(harness_config: HarnessConfig) -> None:
    transport = ScriptedTransport(SUCCESS_SCRIPT)

    def factory(context):
        transport.observe = lambda: (
            context.policy.overlay_count,
            context.policy.stream_type(CAPTIVE_PORTAL_DETECT).endpoint,
        )
        return transport

    instance = StressInstance(replace(harness_config, budget=2, force_portal=True), transport_factory=factory)
    verdict = await instance.run()

    assert transport.observations == [(1, "google.com"), (1, "google.com")]
    assert instance.context.policy.overlay_count == 1
    assert verdict.exit_code == 0

    instance.state.renotify()
    assert instance.context.policy.overlay_count == 1
    assert transport.creations == 2


@pytest.mark.asyncio
async def test_hanging_transport_ends_through_watchdog(harness_config: HarnessConfig) -> None:
    transport = ScriptedTransport(HANG_SCRIPT)
    config = replace(harness_config, budget=2, timeout_ms=25)
    instance = StressInstance(config, transport_factory=lambda _: transport)

    with pytest.raises(WatchdogExpired) as excinfo:
        await instance.run()

    assert excinfo.value.deadline_ms == 50
    assert instance.watchdog.fired is True
    assert instance.summary.watchdog_fired is True
    assert transport.creations == 1
    assert transport.streams[0].closed is True
    assert transport.closed is True
    assert "process timed out after 50 ms" in config.log_path.read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_interrupt_ends_run_through_verdict(harness_config: HarnessConfig) -> None:
    transport = ScriptedTransport(HANG_SCRIPT)
    instance = StressInstance(replace(harness_config, budget=3), transport_factory=lambda _: transport)
    asyncio.get_running_loop().call_later(0.02, instance.interrupt)

    verdict = await instance.run()

    assert instance.context.interrupted is True
    assert transport.creations == 1
    assert verdict.exit_code == 1
    assert instance.watchdog.fired is False


@pytest.mark.asyncio
async def test_invalid_config_fails_before_any_attempt(harness_config: HarnessConfig) -> None:
    transport = ScriptedTransport(SUCCESS_SCRIPT)
    config = replace(harness_config, force_portal=True, force_no_internet=True)

    with pytest.raises(ConfigurationError):
        await StressInstance(config, transport_factory=lambda _: transport).run()
    assert transport.creations == 0


def test_execute_writes_summary(harness_config: HarnessConfig, monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(
        cli,
        "StressInstance",
        lambda config: StressInstance(config, transport_factory=lambda _: ScriptedTransport(SUCCESS_SCRIPT)),
    )
    output = tmp_path / "summary.json"

    code = cli.execute(replace(harness_config, budget=2), output=str(output))

    payload = json.loads(output.read_text(encoding="utf-8"))
    assert code == 0
    assert payload["successes"] == 2
    assert payload["results"] == {"acked_success": 2}


def test_execute_maps_watchdog_to_distinct_exit(harness_config: HarnessConfig, monkeypatch) -> None:
    monkeypatch.setattr(
        cli,
        "StressInstance",
        lambda config: StressInstance(config, transport_factory=lambda _: ScriptedTransport(HANG_SCRIPT)),
    )

    assert cli.execute(replace(harness_config, timeout_ms=20)) == WATCHDOG_EXIT_CODE


def test_context_holds_only_per_instance_state(harness_config: HarnessConfig) -> None:
    first = StressContext.create(harness_config)
    second = StressContext.create(harness_config.for_instance(0))

    assert [item.name for item in fields(StressContext)] == [
        "config",
        "policy",
        "blobs",
        "budget",
        "aggregator",
        "logger",
        "interrupted",
    ]
    assert first.blobs is not second.blobs
    assert first.budget is not second.budget
    assert first.policy is not second.policy
