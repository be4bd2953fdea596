"""Execution pump: runs a scheduling pass on demand and on a timer."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 1.0


class ExecutionPump:
    """Calls *callback* whenever :meth:`wake` is called and every *interval* seconds.

    Passes never overlap. A failing pass is logged and the pump keeps going.
    """

    def __init__(self, callback: Callable[[], Awaitable[None]], interval: float = DEFAULT_INTERVAL) -> None:
        self._callback = callback
        self._interval = interval
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run())

    def wake(self) -> None:
        self._wake.set()

    async def stop(self) -> None:
        self._stopping = True
        self._wake.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def _run(self) -> None:
        while not self._stopping:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            if self._stopping:
                break
            try:
                await self._callback()
            except Exception:
                logger.exception("execution pump pass failed")
