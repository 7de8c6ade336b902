"""Background task that runs a full sync on a fixed interval."""

import asyncio
import logging
from typing import Optional

from reflective.core.sync import SyncEngine, SyncReport

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 300.0


class PeriodicSync:
    """
    Runs ``engine.sync_all()`` every ``interval_seconds`` until stopped.

    The first run happens as soon as the task starts unless
    ``run_immediately`` is False. Each run is shielded, so stopping (or
    cancelling) the loop never interrupts a sync halfway through a merge.
    """

    def __init__(
        self,
        engine: SyncEngine,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        run_immediately: bool = True,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately

        self.runs: int = 0
        self.last_report: Optional[SyncReport] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Future] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Start the loop on the running event loop. Starting twice is a no-op."""
        if self.running:
            return self._task
        self._shutdown_event = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Periodic sync started (every {self.interval_seconds:g}s)")
        return self._task

    async def _run(self) -> None:
        if not self.run_immediately and await self._wait():
            return
        while not self._shutdown_event.is_set():
            try:
                self._current = asyncio.ensure_future(self.engine.sync_all())
                self.last_report = await asyncio.shield(self._current)
                self.runs += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in periodic sync: {e}")

            if await self._wait():
                break

    async def _wait(self) -> bool:
        """Sleep one interval. Returns True when shutdown was requested."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.interval_seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def stop(self) -> None:
        """Signal shutdown and wait for the loop and any in-flight sync to finish."""
        if self._task is None:
            return
        self._shutdown_event.set()
        try:
            await self._task
        except asyncio.CancelledError:
            logger.debug("Periodic sync task was cancelled")
        finally:
            self._task = None

        if self._current is not None and not self._current.done():
            await self._current
        logger.info(f"Periodic sync stopped after {self.runs} runs")

    async def __aenter__(self) -> "PeriodicSync":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
