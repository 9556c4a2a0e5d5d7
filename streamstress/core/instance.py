from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from streamstress.core.config import DeviceIdentity, HarnessConfig
from streamstress.core.controller import RetryController
from streamstress.core.errors import WatchdogExpired
from streamstress.core.log_sink import InstanceSink, attach_instance_sink, instance_logger
from streamstress.core.outcome import OutcomeAggregator, RetryBudget, RunSummary, Verdict
from streamstress.core.policy import PolicyDocument, load_policy
from streamstress.core.readiness import ReadinessGate
from streamstress.core.system_state import BlobType, LifecycleStage, SystemBlobStore, SystemStateManager
from streamstress.core.transport import AiohttpStreamTransport, StreamTransport
from streamstress.core.watchdog import Watchdog


@dataclass
class StressContext:
    """Everything one instance mutates; nothing here is shared between instances."""

    config: HarnessConfig
    policy: PolicyDocument
    blobs: SystemBlobStore
    budget: RetryBudget
    aggregator: OutcomeAggregator
    logger: logging.Logger
    interrupted: bool = False

    @classmethod
    def create(cls, config: HarnessConfig, policy: PolicyDocument | None = None) -> "StressContext":
        budget = RetryBudget(config.budget)
        return cls(
            config=config,
            policy=policy if policy is not None else load_policy(config.policy_path),
            blobs=SystemBlobStore(),
            budget=budget,
            aggregator=OutcomeAggregator(budget, config.effective_pass_limit),
            logger=instance_logger(config.instance_name),
        )

    @property
    def name(self) -> str:
        return self.config.instance_name

    def component_logger(self, component: str) -> logging.Logger:
        return instance_logger(self.name, component)


TransportFactory = Callable[[StressContext], StreamTransport]


def default_transport_factory(context: StressContext) -> StreamTransport:
    return AiohttpStreamTransport(context.policy, context.blobs, logger=context.component_logger("transport"))


def seed_device_identity(blobs: SystemBlobStore, device: DeviceIdentity) -> None:
    blobs.direct_set(BlobType.DEVICE_SERIAL, device.serial.encode("utf-8"))
    blobs.direct_set(BlobType.DEVICE_FW_VERSION, device.firmware_version.encode("utf-8"))
    blobs.heap_append(BlobType.DEVICE_TYPE, device.device_type.encode("utf-8"))


class StressInstance:
    """One isolated orchestrator: gate, controller, watchdog and tally."""

    def __init__(
        self,
        config: HarnessConfig,
        transport_factory: TransportFactory = default_transport_factory,
        policy: PolicyDocument | None = None,
        attach_sink: bool = True,
    ) -> None:
        self._config = config
        self._transport_factory = transport_factory
        self._policy = policy
        self._attach_sink = attach_sink
        self.context: StressContext | None = None
        self.controller: RetryController | None = None
        self.gate: ReadinessGate | None = None
        self.state: SystemStateManager | None = None
        self.watchdog: Watchdog | None = None
        self.summary: RunSummary | None = None
        self._run_task: asyncio.Task[Verdict] | None = None

    @property
    def name(self) -> str:
        return self._config.instance_name

    def interrupt(self) -> None:
        if self.context is not None:
            self.context.interrupted = True
        if self.controller is not None:
            self.controller.interrupt()

    async def run(self) -> Verdict:
        self._config.validate()
        sink: InstanceSink | None = None
        if self._attach_sink:
            sink = attach_instance_sink(
                self.name,
                self._config.log_dir,
                level=getattr(logging, self._config.log_level, logging.INFO),
            )
        try:
            return await self._run()
        finally:
            if sink is not None:
                sink.close()

    async def _run(self) -> Verdict:
        config = self._config
        context = self.context = StressContext.create(config, self._policy)
        context.logger.info("stream stress instance %s starting (budget %d)", self.name, config.budget)
        seed_device_identity(context.blobs, config.device)

        transport = self._transport_factory(context)
        self.controller = RetryController(
            transport=transport,
            budget=context.budget,
            aggregator=context.aggregator,
            stream_type=config.stream_type.value,
            timeout_ms=config.timeout_ms,
            metadata_tags=config.metadata_tags,
            logger=context.component_logger("controller"),
        )
        self.gate = ReadinessGate(
            policy=context.policy,
            blobs=context.blobs,
            on_operational=self.controller.start,
            force_portal=config.force_portal,
            force_no_internet=config.force_no_internet,
            logger=context.component_logger("gate"),
        )
        self.state = SystemStateManager(logger=context.component_logger("system_state"))
        self.state.register(self.gate)

        self._run_task = asyncio.current_task()
        self.watchdog = Watchdog(self._on_watchdog, logger=context.component_logger("watchdog"))
        self.watchdog.schedule(config.watchdog_deadline_ms)
        try:
            if not self.state.advance_to(LifecycleStage.OPERATIONAL):
                context.logger.warning("system never became operational (stuck at %s)", self.state.current.name)
            await self.controller.wait()
        except asyncio.CancelledError:
            if self.watchdog.fired:
                self.summary = context.aggregator.summary(
                    self.name, context.aggregator.final_verdict(config.expected_exit), watchdog_fired=True
                )
                raise WatchdogExpired(self.name, config.watchdog_deadline_ms) from None
            raise
        finally:
            self.watchdog.cancel()
            await transport.close()

        verdict = context.aggregator.final_verdict(config.expected_exit)
        self.summary = context.aggregator.summary(self.name, verdict)
        context.logger.info(verdict.tally_line)
        if verdict.exit_code == 0:
            context.logger.info(verdict.completion_line)
        else:
            context.logger.error(verdict.completion_line)
        return verdict

    def _on_watchdog(self) -> None:
        # Cancelling the run task cancels the controller task it awaits.
        if self._run_task is not None and not self._run_task.done():
            self._run_task.cancel()
