from __future__ import annotations

import asyncio
from contextlib import suppress
import logging
from typing import Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)


class WindowAccessError(Exception):
    """Raised by a handle that cannot inspect the payment page right now."""


class WindowHandle(Protocol):
    def is_closed(self) -> bool:
        ...


class ManualWindowHandle:
    def __init__(self) -> None:
        self._closed = False

    def mark_closed(self) -> None:
        self._closed = True

    def is_closed(self) -> bool:
        return self._closed


class WindowObserver:
    def __init__(
        self,
        handle: WindowHandle,
        on_closed: Callable[[], Awaitable[None]],
        interval: float = 1.0,
    ):
        self._handle = handle
        self._on_closed = on_closed
        self._interval = interval
        self._task: asyncio.Task | None = None
        self._signalled = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def signalled(self) -> bool:
        return self._signalled

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._watch())
        return self._task

    async def stop(self) -> None:
        task = self._task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    def _closed(self) -> bool:
        try:
            return bool(self._handle.is_closed())
        except WindowAccessError:
            return False

    async def _watch(self) -> None:
        while not self._closed():
            await asyncio.sleep(self._interval)
        self._signalled = True
        logger.info("Payment window closed")
        await self._on_closed()
