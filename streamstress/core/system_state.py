from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Protocol


class LifecycleStage(IntEnum):
    CONTEXT_CREATED = 0
    INITIALIZED = 1
    POLICY_VALID = 2
    REGISTERED = 3
    OPERATIONAL = 4


@dataclass(frozen=True)
class GateDecision:
    proceed: bool = True
    side_effect_applied: bool = False
    detail: str = ""


class StateNotifier(Protocol):
    name: str

    def on_stage_transition(self, current: LifecycleStage, target: LifecycleStage) -> GateDecision: ...


@dataclass(frozen=True)
class TransitionRecord:
    notifier: str
    current: LifecycleStage
    target: LifecycleStage
    decision: GateDecision


class SystemStateManager:
    """Ordered lifecycle; notifiers run synchronously on every step.

    Each step is reported twice: once as ``(current, target)`` while
    attempting it, then as ``(target, target)`` once arrived.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._current = LifecycleStage.CONTEXT_CREATED
        self._notifiers: list[StateNotifier] = []
        self._history: list[TransitionRecord] = []
        self._logger = logger or logging.getLogger("streamstress.system_state")

    @property
    def current(self) -> LifecycleStage:
        return self._current

    @property
    def history(self) -> list[TransitionRecord]:
        return list(self._history)

    def register(self, notifier: StateNotifier) -> None:
        self._notifiers.append(notifier)

    def _notify(self, current: LifecycleStage, target: LifecycleStage) -> bool:
        proceed = True
        for notifier in self._notifiers:
            decision = notifier.on_stage_transition(current, target)
            self._history.append(TransitionRecord(notifier.name, current, target, decision))
            if not decision.proceed:
                self._logger.warning(
                    "notifier %s held %s -> %s: %s", notifier.name, current.name, target.name, decision.detail
                )
                proceed = False
        return proceed

    def advance_to(self, target: LifecycleStage) -> bool:
        while self._current < target:
            step = LifecycleStage(self._current + 1)
            if not self._notify(self._current, step):
                return False
            self._current = step
            self._logger.debug("system state %s", step.name)
            if not self._notify(step, step):
                return False
        return self._current >= target

    def renotify(self) -> bool:
        return self._notify(self._current, self._current)


class BlobType(str, Enum):
    AUTH = "auth"
    DEVICE_SERIAL = "device_serial"
    DEVICE_FW_VERSION = "device_fw_version"
    DEVICE_TYPE = "device_type"


AUTH_IDX_ROOT = 1


class SystemBlobStore:
    """Small opaque key/value store shared by the instance and its transport."""

    def __init__(self) -> None:
        self._direct: dict[tuple[BlobType, int], bytes] = {}
        self._heap: dict[tuple[BlobType, int], list[bytes]] = defaultdict(list)

    def direct_set(self, blob_type: BlobType, payload: bytes, index: int = 0) -> None:
        key = (blob_type, index)
        self._heap.pop(key, None)
        self._direct[key] = bytes(payload)

    def heap_append(self, blob_type: BlobType, payload: bytes, index: int = 0) -> None:
        key = (blob_type, index)
        self._direct.pop(key, None)
        self._heap[key].append(bytes(payload))

    def heap_empty(self, blob_type: BlobType, index: int = 0) -> None:
        self._heap.pop((blob_type, index), None)

    def get(self, blob_type: BlobType, index: int = 0) -> bytes:
        key = (blob_type, index)
        if key in self._direct:
            return self._direct[key]
        return b"".join(self._heap.get(key, ()))

    def size(self, blob_type: BlobType, index: int = 0) -> int:
        return len(self.get(blob_type, index))
