"""Periodic background jobs.

Each job runs its coroutine, logs any failure and tries again after the
interval. Components never retry on their own; this loop is the retry.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

from indexer.logging import bind_job_context, clear_job_context, get_logger

logger = get_logger(__name__)


class PeriodicJob:
    """Runs ``job`` every ``interval`` seconds until stopped.

    Args:
        name: Job name, bound to every log line emitted while it runs.
        job: Zero-argument coroutine function.
        interval: Seconds between the end of one run and the start of the next.
    """

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[object]],
        interval: float,
    ) -> None:
        self.name = name
        self._job = job
        self._interval = interval
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self.runs = 0
        self.failures = 0
        self.last_run_at: float | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Begin running the job in the background."""
        if self._running:
            logger.warning("job_already_running", job=self.name)
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=f"job:{self.name}")
        logger.info("job_started", job=self.name, interval=self._interval)

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("job_stopped", job=self.name, runs=self.runs, failures=self.failures)

    async def run_once(self) -> object:
        """Run the job a single time. Exceptions propagate to the caller."""
        bind_job_context(job=self.name)
        try:
            started = time.monotonic()
            outcome = await self._job()
            self.runs += 1
            self.last_run_at = time.time()
            logger.debug("job_run_complete", duration=round(time.monotonic() - started, 3))
            return outcome
        finally:
            clear_job_context()

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failures += 1
                logger.warning("job_run_failed", job=self.name, exc_info=True)
            if self._running:
                await asyncio.sleep(self._interval)
