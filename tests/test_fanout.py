import asyncio
import multiprocessing
from dataclasses import replace

import pytest

from streamstress.core.config import HarnessConfig
from streamstress.core.errors import ConfigurationError
from streamstress.core.fanout import FanoutHarness
from streamstress.core.instance import StressInstance

from conftest import SUCCESS_SCRIPT, TIMEOUT_SCRIPT, ScriptedTransport

needs_fork = pytest.mark.skipif(
    "fork" not in multiprocessing.get_all_start_methods(),
    reason="fork start method unavailable",
)


def _scripted_target(config: HarnessConfig) -> int:
    # Odd ordinals always time out so verdicts differ per instance.
    transport = ScriptedTransport(SUCCESS_SCRIPT if config.ordinal % 2 == 0 else TIMEOUT_SCRIPT)
    verdict = asyncio.run(StressInstance(config, transport_factory=lambda _: transport).run())
    return verdict.exit_code


@needs_fork
def test_four_instances_spawn_three_isolated_children(harness_config: HarnessConfig) -> None:
    config = replace(harness_config, concurrency=4, budget=2)
    harness = FanoutHarness(config, _scripted_target, mp_context=multiprocessing.get_context("fork"))

    children = harness.spawn()
    parent_code = _scripted_target(config.for_instance(0))
    results = harness.join(timeout=30)

    assert [child.ordinal for child in children] == [1, 2, 3]
    assert [child.name for child in children] == ["ctx1", "ctx2", "ctx3"]
    assert len({child.log_path for child in children} | {config.log_path}) == 4
    assert parent_code == 0
    assert results == {1: 1, 2: 0, 3: 1}
    for child in children:
        log_text = child.log_path.read_text(encoding="utf-8")
        assert f"instance {child.name} starting" in log_text
        assert "Completed:" in log_text
    assert "instance ctx1" not in config.log_path.read_text(encoding="utf-8")


def test_single_instance_spawns_no_children(harness_config: HarnessConfig) -> None:
    harness = FanoutHarness(harness_config, _scripted_target)

    assert harness.spawn(1) == []
    assert harness.join() == {}


@pytest.mark.parametrize("count", [0, 101])
def test_spawn_rejects_out_of_range_concurrency(harness_config: HarnessConfig, count: int) -> None:
    harness = FanoutHarness(harness_config, _scripted_target)

    with pytest.raises(ConfigurationError):
        harness.spawn(count)
