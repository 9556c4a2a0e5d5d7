from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable

import pytest

from streamstress.core.config import HarnessConfig
from streamstress.core.contracts import StreamEvent, StreamSignal
from streamstress.core.errors import AttemptCreationError
from streamstress.core.transport import StreamHandle

HANG = "hang"


@dataclass(frozen=True)
class Pause:
    seconds: float


SUCCESS_SCRIPT = [
    StreamEvent.state(StreamSignal.CONNECTING),
    StreamEvent.state(StreamSignal.CONNECTED),
    StreamEvent.rx(b"hello", eom=True),
    StreamEvent.state(StreamSignal.QOS_ACK_REMOTE),
    StreamEvent.state(StreamSignal.DISCONNECTED),
]

NACK_SCRIPT = [
    StreamEvent.state(StreamSignal.CONNECTING),
    StreamEvent.state(StreamSignal.CONNECTED),
    StreamEvent.rx(b"nope", eom=True),
    StreamEvent.state(StreamSignal.QOS_NACK_REMOTE),
    StreamEvent.state(StreamSignal.DISCONNECTED),
]

TIMEOUT_SCRIPT = [
    StreamEvent.state(StreamSignal.CONNECTING),
    StreamEvent.state(StreamSignal.TIMEOUT),
]

RETRIES_SCRIPT = [
    StreamEvent.state(StreamSignal.CONNECTING),
    StreamEvent.state(StreamSignal.UNREACHABLE),
    StreamEvent.state(StreamSignal.CONNECTING),
    StreamEvent.state(StreamSignal.UNREACHABLE),
    StreamEvent.state(StreamSignal.ALL_RETRIES_FAILED),
]

HANG_SCRIPT: list[Any] = [HANG]


class ScriptedStream(StreamHandle):
    def __init__(self, stream_type: str, script: list[Any], metadata_names: tuple[str, ...] | None = None) -> None:
        super().__init__(stream_type, metadata_names=metadata_names)
        self.script = script
        self.connect_calls = 0
        self.shutdowns = 0
        self._task: asyncio.Task[None] | None = None

    async def connect(self) -> None:
        self.connect_calls += 1
        self._task = asyncio.create_task(self._play())

    async def _play(self) -> None:
        for step in self.script:
            await asyncio.sleep(0)
            if step == HANG:
                await asyncio.Event().wait()
            if isinstance(step, Pause):
                await asyncio.sleep(step.seconds)
                continue
            self.emit(step)

    async def _shutdown(self) -> None:
        self.shutdowns += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)


@dataclass
class ScriptedTransport:
    script: list[Any]
    fail_creations: int = 0
    metadata_names: tuple[str, ...] | None = ("uptag", "ctype", "srv", "test")
    observe: Callable[[], Any] | None = None
    streams: list[ScriptedStream] = field(default_factory=list)
    observations: list[Any] = field(default_factory=list)
    creations: int = 0
    closed: bool = False

    def create_stream(self, stream_type: str) -> ScriptedStream:
        self.creations += 1
        if self.observe is not None:
            self.observations.append(self.observe())
        if self.creations <= self.fail_creations:
            raise AttemptCreationError()
        stream = ScriptedStream(stream_type, list(self.script), metadata_names=self.metadata_names)
        self.streams.append(stream)
        return stream

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def harness_config(tmp_path) -> HarnessConfig:
    return HarnessConfig(log_dir=str(tmp_path), policy_path=None, log_level="DEBUG")
