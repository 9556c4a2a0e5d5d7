from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum


class StreamSignal(str, Enum):
    CREATING = "creating"
    CONNECTING = "connecting"
    UNREACHABLE = "unreachable"
    CONNECTED = "connected"
    QOS_ACK_REMOTE = "qos_ack_remote"
    QOS_NACK_REMOTE = "qos_nack_remote"
    DISCONNECTED = "disconnected"
    TIMEOUT = "timeout"
    ALL_RETRIES_FAILED = "all_retries_failed"
    USER_STATE = "user_state"


class StreamType(str, Enum):
    MINTEST = "mintest"
    MINTEST_OTS = "mintest-ots"
    RESPMAP = "respmap"


class AttemptState(str, Enum):
    CREATING = "creating"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ACK_PENDING = "ack_pending"
    TERMINAL = "terminal"


class AttemptResult(str, Enum):
    ACKED_SUCCESS = "acked_success"
    NACKED_FAILURE = "nacked_failure"
    TIMED_OUT = "timed_out"
    RETRIES_EXHAUSTED = "retries_exhausted"
    OTHER = "other"


class AttemptAction(str, Enum):
    CONNECT = "connect"
    ARM_TIMEOUT = "arm_timeout"
    CONTINUE = "continue"
    AWAIT_DISCONNECT = "await_disconnect"
    TEARDOWN = "teardown"
    IGNORE = "ignore"


class FailureIndicator(IntEnum):
    """Numeric "bad" value compared against the expected exit value."""

    NONE = 0
    BELOW_PASS_LIMIT = 1
    RETRIES_EXHAUSTED = 2
    TIMED_OUT = 3


@dataclass(frozen=True)
class StreamEvent:
    """One item delivered by a stream: a lifecycle signal or an RX chunk."""

    signal: StreamSignal | None = None
    data: bytes = b""
    eom: bool = False
    value: int = 0

    @property
    def is_rx(self) -> bool:
        return self.signal is None

    @classmethod
    def state(cls, signal: StreamSignal, value: int = 0) -> "StreamEvent":
        return cls(signal=signal, value=value)

    @classmethod
    def rx(cls, data: bytes, eom: bool = False) -> "StreamEvent":
        return cls(signal=None, data=data, eom=eom)
