from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path

from streamstress.core.contracts import StreamType
from streamstress.core.errors import ConfigurationError

MAX_CONCURRENCY = 100
DEFAULT_TIMEOUT_MS = 8_000


def _default_log_dir() -> str:
    return os.getenv("STREAMSTRESS_LOG_DIR", tempfile.gettempdir())


def _default_policy_path() -> str | None:
    return os.getenv("STREAMSTRESS_POLICY") or None


def _default_log_level() -> str:
    return os.getenv("LOG_LEVEL", "INFO").upper()


@dataclass(frozen=True)
class DeviceIdentity:
    serial: str = "SN12345678"
    firmware_version: str = "v0.01"
    device_type: str = "spacerocket"


@dataclass(frozen=True)
class HarnessConfig:
    concurrency: int = 1
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    budget: int = 1
    pass_limit: int | None = None
    force_portal: bool = False
    force_no_internet: bool = False
    stream_type: StreamType = StreamType.MINTEST
    expected_exit: int = 0
    policy_path: str | None = field(default_factory=_default_policy_path)
    log_dir: str = field(default_factory=_default_log_dir)
    log_level: str = field(default_factory=_default_log_level)
    metadata_tags: tuple[tuple[str, str], ...] = (("uptag", "myuptag123"), ("ctype", "myctype"))
    device: DeviceIdentity = field(default_factory=DeviceIdentity)
    ordinal: int = 0

    @property
    def effective_pass_limit(self) -> int:
        return self.budget if self.pass_limit is None else self.pass_limit

    @property
    def instance_name(self) -> str:
        return f"ctx{self.ordinal}"

    @property
    def log_path(self) -> Path:
        return Path(self.log_dir) / f"{self.instance_name}.log"

    @property
    def watchdog_deadline_ms(self) -> int:
        return self.budget * self.timeout_ms

    def for_instance(self, ordinal: int) -> "HarnessConfig":
        return replace(self, ordinal=ordinal)

    def validate(self) -> None:
        if self.force_portal and self.force_no_internet:
            raise ConfigurationError("--force-portal and --force-no-internet are mutually exclusive")
        if not 1 <= self.concurrency <= MAX_CONCURRENCY:
            raise ConfigurationError(f"concurrency must be in 1..{MAX_CONCURRENCY}, got {self.concurrency}")
        if self.budget < 1:
            raise ConfigurationError(f"budget must be at least 1, got {self.budget}")
        if self.timeout_ms < 1:
            raise ConfigurationError(f"timeout_ms must be positive, got {self.timeout_ms}")
        if self.effective_pass_limit < 0:
            raise ConfigurationError(f"pass limit must not be negative, got {self.effective_pass_limit}")
        if not 0 <= self.ordinal < self.concurrency:
            raise ConfigurationError(f"instance ordinal {self.ordinal} outside concurrency {self.concurrency}")
