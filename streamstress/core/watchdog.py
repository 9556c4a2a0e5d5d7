from __future__ import annotations

import asyncio
import logging
from typing import Callable

WATCHDOG_EXIT_CODE = 124


class Watchdog:
    """Single-shot deadline for a whole instance.

    Cancellation is best-effort up to the moment the expiry callback is
    dequeued by the loop; once fired it stays fired.
    """

    def __init__(
        self,
        on_expire: Callable[[], None],
        loop: asyncio.AbstractEventLoop | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._on_expire = on_expire
        self._loop = loop
        self._logger = logger or logging.getLogger("streamstress.watchdog")
        self._handle: asyncio.TimerHandle | None = None
        self._deadline_ms = 0
        self._fired = False
        self._cancelled = False

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def deadline_ms(self) -> int:
        return self._deadline_ms

    @property
    def scheduled(self) -> bool:
        return self._handle is not None

    def schedule(self, deadline_ms: int) -> None:
        if self._handle is not None:
            raise RuntimeError("watchdog already scheduled")
        loop = self._loop or asyncio.get_running_loop()
        self._deadline_ms = deadline_ms
        self._handle = loop.call_at(loop.time() + deadline_ms / 1000.0, self._expire)
        self._logger.debug("watchdog armed for %d ms", deadline_ms)

    def cancel(self) -> bool:
        if self._handle is None or self._fired or self._cancelled:
            return False
        self._handle.cancel()
        self._cancelled = True
        return True

    def _expire(self) -> None:
        if self._cancelled:
            return
        self._fired = True
        self._logger.error("process timed out after %d ms", self._deadline_ms)
        self._on_expire()
