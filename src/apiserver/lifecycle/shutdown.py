"""Graceful shutdown coordinator.

Hooks run once, in registration order, one at a time. A failing hook is
logged and the next one still runs: shutdown is best-effort complete, not
atomic.
"""

from __future__ import annotations

import asyncio
import inspect
import signal
from typing import Any, Awaitable, Callable

from ..observability.logger import get_logger

logger = get_logger(__name__)

ShutdownHook = Callable[[], Awaitable[Any]]

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class GracefulShutdownHandler:
    def __init__(self) -> None:
        self._hooks: list[ShutdownHook] = []
        self._task: asyncio.Task | None = None
        self._completed = asyncio.Event()

    @property
    def started(self) -> bool:
        return self._task is not None

    @property
    def completed(self) -> bool:
        return self._completed.is_set()

    @property
    def hook_count(self) -> int:
        return len(self._hooks)

    def on_shutdown(self, hook: ShutdownHook) -> Callable[[], None]:
        """Register ``hook``; the returned callable unregisters it before shutdown starts."""
        self._hooks.append(hook)

        def cancel() -> None:
            if self._task is None and hook in self._hooks:
                self._hooks.remove(hook)

        return cancel

    async def shutdown(self, reason: str = "requested") -> None:
        """Run all hooks (once). Concurrent or repeated calls await the same run."""
        if self._task is None:
            self._task = asyncio.ensure_future(self._run_hooks(reason))
        await asyncio.shield(self._task)

    async def wait(self) -> None:
        await self._completed.wait()

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except NotImplementedError:
                # Windows event loops: fall back to plain signal handlers
                signal.signal(sig, lambda signum, _frame: loop.call_soon_threadsafe(self._on_signal, signum))

    def _on_signal(self, sig: int) -> None:
        name = signal.Signals(sig).name
        if self._task is not None:
            logger.info("shutdown_already_in_progress", signal=name)
            return
        logger.info("shutdown_signal_received", signal=name)
        self._task = asyncio.ensure_future(self._run_hooks(name))

    async def _run_hooks(self, reason: str) -> None:
        hooks = list(self._hooks)
        logger.info("shutdown_started", reason=reason, hooks=len(hooks))
        failures = 0
        for index, hook in enumerate(hooks):
            try:
                result = hook()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                failures += 1
                logger.exception("shutdown_hook_failed", hook=index)
        self._completed.set()
        logger.info("shutdown_complete", hooks=len(hooks), failures=failures)
