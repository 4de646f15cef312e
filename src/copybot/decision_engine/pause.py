from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass


@dataclass
class PauseState:
    active: bool = False
    reason: str = ""


class CopyPauseSwitch:
    """Shared flag the redemption sweep raises to stop trades being copied.

    The trade monitor wraps each copy in ``copying()`` so a sweep can wait for
    the in-flight copy to settle before it reads the ledger.
    """

    def __init__(self) -> None:
        self._state = PauseState()
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    def pause(self, reason: str) -> None:
        self._state.active = True
        self._state.reason = reason

    def resume(self) -> None:
        self._state.active = False
        self._state.reason = ""

    def check(self) -> PauseState:
        return PauseState(active=self._state.active, reason=self._state.reason)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @asynccontextmanager
    async def copying(self) -> AsyncIterator[None]:
        self._in_flight += 1
        self._idle.clear()
        try:
            yield
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.set()

    async def wait_idle(self) -> None:
        await self._idle.wait()
