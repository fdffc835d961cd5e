"""Background loop that drains the delivery queue."""

from __future__ import annotations

import asyncio
from typing import Any

from webhook_relay.logging import get_logger

from .processor import DeliveryProcessor

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 5.0


class DeliveryWorker:
    """Runs processing passes until stopped.

    After each pass the worker either runs again immediately (the pass
    claimed a full batch, so more work is probably waiting) or sleeps until
    ``kick()`` is called or the poll interval elapses. A failing pass is
    logged and the loop keeps going.

    Example:
        ```python
        async with DeliveryWorker(processor, interval_seconds=5.0) as worker:
            ...
            worker.kick()  # after enqueueing deliveries
        ```
    """

    def __init__(
        self,
        processor: DeliveryProcessor,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        self._processor = processor
        self._interval = interval_seconds
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the loop on the running event loop. No-op if already running."""
        if self.running:
            return
        self._wakeup.clear()
        self._task = asyncio.create_task(self._run(), name="webhook-delivery-worker")
        logger.info("Delivery worker started", interval_seconds=self._interval)

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Delivery worker stopped")

    def kick(self) -> None:
        """Wake the loop so the next pass starts without waiting."""
        self._wakeup.set()

    async def run_once(self) -> int:
        """Run a single pass. Returns the number of deliveries processed."""
        return await self._processor.process_due()

    async def _run(self) -> None:
        while True:
            self._wakeup.clear()
            try:
                processed = await self.run_once()
            except Exception:
                logger.exception("Delivery pass failed")
                processed = 0

            if processed >= self._processor.batch_size:
                continue

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._interval)
            except TimeoutError:
                pass

    async def __aenter__(self) -> DeliveryWorker:
        self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()
