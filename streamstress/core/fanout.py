"""Multi-process fan-out.

The parent runs instance 0 itself and forks ``concurrency - 1`` children
before it touches the event loop. Each child builds its own instance from
a copy of the configuration with its own ordinal, so no state is shared.
Children are never reaped early; the parent's exit status is its own
verdict.
"""

from __future__ import annotations

import logging
import multiprocessing
import sys
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable

from streamstress.core.config import MAX_CONCURRENCY, HarnessConfig
from streamstress.core.errors import ConfigurationError

logger = logging.getLogger("streamstress.fanout")

InstanceTarget = Callable[[HarnessConfig], int]

SPAWN_STAGGER_S = 0.001


def _child_main(target: InstanceTarget, config: HarnessConfig) -> None:
    """Entry point inside a child process; must stay top-level to pickle."""
    sys.exit(target(config))


def _default_context() -> multiprocessing.context.BaseContext:
    methods = multiprocessing.get_all_start_methods()
    return multiprocessing.get_context("fork" if "fork" in methods else "spawn")


@dataclass
class InstanceHandle:
    ordinal: int
    name: str
    log_path: Path
    process: multiprocessing.process.BaseProcess

    @property
    def exitcode(self) -> int | None:
        return self.process.exitcode


class FanoutHarness:
    def __init__(
        self,
        config: HarnessConfig,
        target: InstanceTarget,
        mp_context: multiprocessing.context.BaseContext | None = None,
        stagger_s: float = SPAWN_STAGGER_S,
    ) -> None:
        self._config = config
        self._target = target
        self._mp_context = mp_context or _default_context()
        self._stagger_s = stagger_s
        self._children: list[InstanceHandle] = []

    @property
    def children(self) -> list[InstanceHandle]:
        return list(self._children)

    def spawn(self, n: int | None = None) -> list[InstanceHandle]:
        """Start children 1..n-1; the caller runs instance 0 in-process."""
        count = self._config.concurrency if n is None else n
        if not 1 <= count <= MAX_CONCURRENCY:
            raise ConfigurationError(f"concurrency must be in 1..{MAX_CONCURRENCY}, got {count}")
        if self._children:
            raise RuntimeError("children already spawned")

        base = replace(self._config, concurrency=count)
        for ordinal in range(1, count):
            child_config = base.for_instance(ordinal)
            process = self._mp_context.Process(
                target=_child_main,
                args=(self._target, child_config),
                name=child_config.instance_name,
            )
            process.start()
            handle = InstanceHandle(
                ordinal=ordinal,
                name=child_config.instance_name,
                log_path=child_config.log_path,
                process=process,
            )
            self._children.append(handle)
            logger.info("spawned %s (pid %s), logging to %s", handle.name, process.pid, handle.log_path)
            if self._stagger_s:
                time.sleep(self._stagger_s)
        return self.children

    def join(self, timeout: float | None = None) -> dict[int, int | None]:
        results: dict[int, int | None] = {}
        for handle in self._children:
            handle.process.join(timeout)
            results[handle.ordinal] = handle.exitcode
            if handle.exitcode not in (None, 0):
                logger.warning("%s exited with %s", handle.name, handle.exitcode)
        return results

