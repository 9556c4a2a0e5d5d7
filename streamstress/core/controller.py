"""Retry controller: one attempt at a time until the budget is spent.

Each ``Attempt`` is a small state machine fed through ``handle()``; the
controller owns the loop that drives attempts back to back, so a large
budget never grows the call stack.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from streamstress.core.contracts import AttemptAction, AttemptResult, AttemptState, StreamEvent, StreamSignal
from streamstress.core.errors import AttemptCreationError, MetadataError, TransportError
from streamstress.core.log_sink import hexdump
from streamstress.core.outcome import AttemptRecord, OutcomeAggregator, RetryBudget
from streamstress.core.transport import StreamHandle, StreamTransport

_TERMINAL_RESULTS = {
    StreamSignal.QOS_ACK_REMOTE: AttemptResult.ACKED_SUCCESS,
    StreamSignal.QOS_NACK_REMOTE: AttemptResult.NACKED_FAILURE,
    StreamSignal.TIMEOUT: AttemptResult.TIMED_OUT,
    StreamSignal.ALL_RETRIES_FAILED: AttemptResult.RETRIES_EXHAUSTED,
    StreamSignal.DISCONNECTED: AttemptResult.OTHER,
}

# Signals after which the stream itself will still report DISCONNECTED.
_AWAIT_DISCONNECT = {StreamSignal.QOS_ACK_REMOTE, StreamSignal.QOS_NACK_REMOTE}


class Attempt:
    def __init__(self, ordinal: int, stream_type: str, stream: StreamHandle | None = None) -> None:
        self.ordinal = ordinal
        self.stream_type = stream_type
        self.stream = stream
        self.state = AttemptState.CREATING
        self.result: AttemptResult | None = None
        self.bytes_received = 0
        self.eom_seen = False
        self.teardown_requested = False
        self.started = time.perf_counter()
        self.finished: float | None = None

    @property
    def terminal(self) -> bool:
        return self.state == AttemptState.TERMINAL

    def _terminate(self, result: AttemptResult) -> None:
        self.state = AttemptState.TERMINAL
        self.result = result
        self.finished = time.perf_counter()

    def _teardown(self) -> AttemptAction:
        if self.teardown_requested:
            return AttemptAction.IGNORE
        self.teardown_requested = True
        return AttemptAction.TEARDOWN

    def fail(self) -> AttemptAction:
        """Immediate local failure: creation, connect request or tagging."""
        if not self.terminal:
            self._terminate(AttemptResult.OTHER)
        return self._teardown()

    def handle(self, signal: StreamSignal) -> AttemptAction:
        if self.terminal:
            # First terminal signal wins; later ones may only release the
            # stream if nothing has torn it down yet.
            if signal in (StreamSignal.DISCONNECTED, StreamSignal.TIMEOUT):
                return self._teardown()
            return AttemptAction.IGNORE

        if signal == StreamSignal.CREATING:
            return AttemptAction.CONNECT if self.state == AttemptState.CREATING else AttemptAction.IGNORE
        if signal == StreamSignal.CONNECTING:
            # Every connection try gets a fresh timeout.
            if self.state == AttemptState.CREATING:
                self.state = AttemptState.CONNECTING
            return AttemptAction.ARM_TIMEOUT
        if signal == StreamSignal.CONNECTED:
            self.state = AttemptState.CONNECTED
            return AttemptAction.CONTINUE

        result = _TERMINAL_RESULTS.get(signal)
        if result is None:
            return AttemptAction.CONTINUE
        self._terminate(result)
        if signal in _AWAIT_DISCONNECT:
            return AttemptAction.AWAIT_DISCONNECT
        return self._teardown()

    def on_rx(self, data: bytes, eom: bool) -> None:
        if self.terminal:
            return
        self.bytes_received += len(data)
        if eom:
            self.eom_seen = True
            if self.state == AttemptState.CONNECTED:
                self.state = AttemptState.ACK_PENDING

    def record(self) -> AttemptRecord:
        finished = self.finished if self.finished is not None else time.perf_counter()
        return AttemptRecord(
            ordinal=self.ordinal,
            stream_type=self.stream_type,
            result=self.result or AttemptResult.OTHER,
            bytes_received=self.bytes_received,
            eom_seen=self.eom_seen,
            duration_ms=(finished - self.started) * 1000,
        )


class RetryController:
    def __init__(
        self,
        transport: StreamTransport,
        budget: RetryBudget,
        aggregator: OutcomeAggregator,
        stream_type: str,
        timeout_ms: int,
        metadata_tags: tuple[tuple[str, str], ...] = (),
        logger: logging.Logger | None = None,
        on_finished: Callable[[], None] | None = None,
    ) -> None:
        self._transport = transport
        self._budget = budget
        self._aggregator = aggregator
        self._stream_type = stream_type
        self._timeout_ms = timeout_ms
        self._metadata_tags = metadata_tags
        self._logger = logger or logging.getLogger("streamstress.controller")
        self._on_finished = on_finished
        self._task: asyncio.Task[None] | None = None
        self._interrupted = False
        self._attempts_created = 0
        self._current: Attempt | None = None

    @property
    def started(self) -> bool:
        return self._task is not None

    @property
    def attempts_created(self) -> int:
        return self._attempts_created

    @property
    def task(self) -> asyncio.Task[None] | None:
        return self._task

    def start(self) -> bool:
        if self._task is not None:
            return False
        self._task = asyncio.get_running_loop().create_task(self._run())
        return True

    def interrupt(self) -> None:
        self._interrupted = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._interrupted:
                raise

    def create_attempt(self) -> Attempt:
        """Spend one budget slot, then ask the transport for a stream.

        The slot stays spent when creation fails; the failed attempt is
        recorded as Terminal(Other) with no teardown round-trip.
        """
        ordinal = self._budget.consume()
        self._attempts_created += 1
        self._logger.info("starting attempt %d (%d left)", ordinal, self._budget.remaining)
        attempt = Attempt(ordinal=ordinal, stream_type=self._stream_type)
        try:
            attempt.stream = self._transport.create_stream(self._stream_type)
        except AttemptCreationError as exc:
            self._logger.error("failed to create stream: %s (%s)", exc, exc.reason)
            attempt.fail()
            self._aggregator.record(attempt.record())
            raise
        self._logger.info("started attempt %d", ordinal)
        return attempt

    async def _run(self) -> None:
        try:
            while not self._interrupted and self._budget.remaining > 0:
                try:
                    attempt = self.create_attempt()
                except AttemptCreationError:
                    continue
                self._current = attempt
                await self._drive(attempt)
            self._current = None
            if self._budget.remaining == 0:
                self._logger.info("retry budget of %d spent", self._budget.original)
        finally:
            if self._current is not None:
                await self._release(self._current)
                self._current = None
            if self._on_finished is not None:
                self._on_finished()

    async def _drive(self, attempt: Attempt) -> None:
        stream = attempt.stream
        if stream is None:
            raise TransportError(f"attempt {attempt.ordinal} has no stream to drive")
        while True:
            event = await stream.next_event()
            if event.is_rx:
                self._on_rx(attempt, event)
                continue
            action = attempt.handle(event.signal)
            self._logger.debug(
                "attempt %d: %s -> %s (%s)", attempt.ordinal, event.signal.value, attempt.state.value, action.value
            )
            if event.signal == StreamSignal.USER_STATE:
                self._logger.info("attempt %d: user state %d", attempt.ordinal, event.value)
            elif event.signal == StreamSignal.UNREACHABLE:
                self._logger.info("attempt %d: endpoint unreachable, transport retrying", attempt.ordinal)
            elif event.signal in (StreamSignal.QOS_ACK_REMOTE, StreamSignal.QOS_NACK_REMOTE):
                self._logger.info("attempt %d: %s", attempt.ordinal, event.signal.name)
            elif event.signal == StreamSignal.TIMEOUT:
                self._logger.warning("attempt %d: timed out", attempt.ordinal)

            if action == AttemptAction.CONNECT:
                action = await self._request_connect(attempt)
            elif action == AttemptAction.ARM_TIMEOUT:
                action = self._arm(attempt)
            if action == AttemptAction.TEARDOWN:
                await self._release(attempt)
                return

    async def _request_connect(self, attempt: Attempt) -> AttemptAction:
        try:
            await attempt.stream.connect()
        except TransportError as exc:
            self._logger.error("attempt %d: connect refused: %s", attempt.ordinal, exc)
            return attempt.fail()
        return AttemptAction.CONTINUE

    def _arm(self, attempt: Attempt) -> AttemptAction:
        stream = attempt.stream
        stream.start_timeout(self._timeout_ms)
        for name, value in self._metadata_tags:
            try:
                stream.set_metadata(name, value)
            except MetadataError as exc:
                self._logger.error("attempt %d: %s", attempt.ordinal, exc)
                return attempt.fail()
        return AttemptAction.CONTINUE

    def _on_rx(self, attempt: Attempt, event: StreamEvent) -> None:
        attempt.on_rx(event.data, event.eom)
        stream = attempt.stream
        self._logger.info(
            "attempt %d: rx len %d, eom %s, srv: %s, test: %s",
            attempt.ordinal,
            len(event.data),
            event.eom,
            stream.get_metadata("srv") or "not set",
            stream.get_metadata("test") or "not set",
        )
        if event.data and self._logger.isEnabledFor(logging.DEBUG):
            self._logger.debug("\n%s", hexdump(event.data))

    async def _release(self, attempt: Attempt) -> None:
        if attempt.stream is not None:
            await attempt.stream.close()
        if attempt.result is not None and self._aggregator.record(attempt.record()):
            self._logger.info("attempt %d finished: %s", attempt.ordinal, attempt.result.value)
