"""Exception hierarchy for the stress harness.

Per-attempt errors are absorbed by the retry controller; only configuration
and policy errors (startup) and watchdog expiry escape an instance.
"""

from __future__ import annotations


class StreamStressError(Exception):
    """Base exception for all harness errors."""


class ConfigurationError(StreamStressError):
    """Invalid startup configuration."""


class PolicyError(StreamStressError):
    """Malformed policy document or unknown stream type."""


class AttemptCreationError(StreamStressError):
    """The transport could not create a stream for an attempt."""

    def __init__(self, message: str = "failed to create stream", reason: str = "resource_exhausted") -> None:
        self.reason = reason
        super().__init__(message)


class MetadataError(StreamStressError):
    """A metadata tag was rejected by the stream."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"stream type has no metadata named {name!r}")


class TransportError(StreamStressError):
    """The transport refused a connect request synchronously."""


class WatchdogExpired(StreamStressError):
    """The per-process deadline passed before the run finished."""

    def __init__(self, instance_name: str, deadline_ms: int) -> None:
        self.instance_name = instance_name
        self.deadline_ms = deadline_ms
        super().__init__(f"{instance_name}: process timed out after {deadline_ms} ms")
