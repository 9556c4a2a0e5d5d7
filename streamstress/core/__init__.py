"""Stress orchestration core: lifecycle gate, retry controller, watchdog, tally."""

from streamstress.core.config import DeviceIdentity, HarnessConfig
from streamstress.core.contracts import (
    AttemptAction,
    AttemptResult,
    AttemptState,
    FailureIndicator,
    StreamEvent,
    StreamSignal,
    StreamType,
)
from streamstress.core.controller import Attempt, RetryController
from streamstress.core.errors import (
    AttemptCreationError,
    ConfigurationError,
    MetadataError,
    PolicyError,
    StreamStressError,
    TransportError,
    WatchdogExpired,
)
from streamstress.core.fanout import FanoutHarness, InstanceHandle
from streamstress.core.instance import StressContext, StressInstance
from streamstress.core.outcome import AttemptRecord, OutcomeAggregator, RetryBudget, RunSummary, Verdict
from streamstress.core.policy import PolicyDocument, load_policy
from streamstress.core.readiness import ReadinessGate
from streamstress.core.system_state import LifecycleStage, SystemBlobStore, SystemStateManager
from streamstress.core.transport import AiohttpStreamTransport, StreamHandle, StreamTransport
from streamstress.core.watchdog import WATCHDOG_EXIT_CODE, Watchdog

__all__ = [
    "AiohttpStreamTransport",
    "Attempt",
    "AttemptAction",
    "AttemptCreationError",
    "AttemptRecord",
    "AttemptResult",
    "AttemptState",
    "ConfigurationError",
    "DeviceIdentity",
    "FailureIndicator",
    "FanoutHarness",
    "HarnessConfig",
    "InstanceHandle",
    "LifecycleStage",
    "MetadataError",
    "OutcomeAggregator",
    "PolicyDocument",
    "PolicyError",
    "ReadinessGate",
    "RetryBudget",
    "RetryController",
    "RunSummary",
    "StreamEvent",
    "StreamHandle",
    "StreamSignal",
    "StreamStressError",
    "StreamTransport",
    "StreamType",
    "StressContext",
    "StressInstance",
    "SystemBlobStore",
    "SystemStateManager",
    "TransportError",
    "Verdict",
    "WATCHDOG_EXIT_CODE",
    "Watchdog",
    "WatchdogExpired",
    "load_policy",
]
