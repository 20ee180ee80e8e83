from __future__ import annotations

import asyncio
import inspect
import logging
import signal
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

CleanupCallback = Callable[[], Awaitable[None] | None]
ExitFn = Callable[[int], None]

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownController:
    """Cooperative shutdown: a flag for the run loop plus LIFO cleanup callbacks.

    The first SIGINT/SIGTERM flips ``is_shutting_down``, notifies the owner, runs
    the cleanups newest-first and finally calls ``exit_fn(0)`` when one was given.
    Later signals are ignored.
    """

    def __init__(self) -> None:
        self._shutting_down = False
        self._cleanups: list[CleanupCallback] = []
        self._on_shutdown_requested: Callable[[], None] | None = None
        self._exit_fn: ExitFn | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._signal_task: asyncio.Task[None] | None = None

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def installed(self) -> bool:
        return self._loop is not None

    def register(self, callback: CleanupCallback) -> None:
        self._cleanups.append(callback)

    def install(
        self,
        on_shutdown_requested: Callable[[], None],
        exit_fn: ExitFn | None = None,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._on_shutdown_requested = on_shutdown_requested
        self._exit_fn = exit_fn
        self._loop = loop or asyncio.get_running_loop()
        for signum in HANDLED_SIGNALS:
            self._loop.add_signal_handler(signum, self._on_signal, signum)

    def uninstall(self) -> None:
        if self._loop is None:
            return
        for signum in HANDLED_SIGNALS:
            self._loop.remove_signal_handler(signum)
        self._loop = None

    def _on_signal(self, signum: int) -> None:
        if self._shutting_down or self._loop is None:
            return
        logger.info(
            "Received %s; finishing the current step before stopping",
            signal.Signals(signum).name,
        )
        self._signal_task = self._loop.create_task(self.trigger())

    async def trigger(self) -> None:
        if self._shutting_down:
            return
        self._shutting_down = True
        if self._on_shutdown_requested is not None:
            self._on_shutdown_requested()

        for callback in reversed(self._cleanups):
            try:
                outcome = callback()
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Shutdown cleanup callback failed")

        if self._exit_fn is not None:
            self._exit_fn(0)
