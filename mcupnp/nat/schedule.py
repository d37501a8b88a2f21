"""Cancellable fixed-rate background task."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

RefreshCallback = Callable[[], Awaitable[Any]]


class RefreshSchedule:
    """Runs ``callback`` every ``interval_seconds`` on a single asyncio task.

    The first run happens one full interval after :meth:`start`. Cancelling
    stops future runs but lets a run that is already executing finish;
    :meth:`shutdown` waits a bounded time for that run before force-cancelling.
    """

    def __init__(
        self,
        callback: RefreshCallback,
        interval_seconds: float,
        name: str = "upnp-refresh",
    ) -> None:
        """Initialize schedule.

        Args:
            callback: Coroutine function invoked on every tick
            interval_seconds: Period between the starts of consecutive runs
            name: Task name, shown in debugging output

        """
        if interval_seconds <= 0:
            msg = f"interval_seconds must be positive, got {interval_seconds}"
            raise ValueError(msg)
        self.callback = callback
        self.interval_seconds = interval_seconds
        self.name = name
        self.runs = 0
        self._task: asyncio.Task | None = None
        self._cancelled = asyncio.Event()
        self._in_flight = False

    @property
    def active(self) -> bool:
        """True while the background task exists and has not finished."""
        return self._task is not None and not self._task.done()

    @property
    def in_flight(self) -> bool:
        """True while a callback run is executing."""
        return self._in_flight

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def start(self) -> None:
        """Arm the schedule."""
        if self._task is not None:
            msg = f"Schedule {self.name} already started"
            raise RuntimeError(msg)
        self._task = asyncio.create_task(self._run(), name=self.name)

    def cancel(self) -> None:
        """Prevent any future run; an executing run is not interrupted."""
        self._cancelled.set()

    async def shutdown(self, grace: float) -> bool:
        """Cancel and wait up to ``grace`` seconds for the task to end.

        Returns:
            True if the task ended within the grace period, False if it had
            to be force-cancelled

        """
        self.cancel()
        task = self._task
        if task is None or task.done():
            return True

        done, _ = await asyncio.wait({task}, timeout=grace)
        if done:
            return True

        logger.warning(
            "%s still running after %.1fs grace period, cancelling it",
            self.name,
            grace,
        )
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        return False

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_run = loop.time() + self.interval_seconds
        while not self._cancelled.is_set():
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    self._cancelled.wait(), timeout=max(0.0, next_run - loop.time())
                )
            if self._cancelled.is_set():
                break

            self._in_flight = True
            try:
                await self.callback()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error in %s run", self.name)
            finally:
                self._in_flight = False
                self.runs += 1

            # Fixed rate: skip ticks missed while the callback was running
            next_run += self.interval_seconds
            now = loop.time()
            while next_run <= now:
                next_run += self.interval_seconds
        logger.debug("%s stopped after %d run(s)", self.name, self.runs)
