"""Tests for the background delivery worker."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import SCOPE_ID

from webhook_relay.models import DeliveryStatus, WebhookEvent
from webhook_relay.webhooks import DeliveryProcessor, DeliveryWorker


def fake_processor(results, batch_size: int = 10) -> MagicMock:
    """Processor stub returning (or raising) the given pass results, then 0."""
    queue = list(results)

    async def process_due() -> int:
        if not queue:
            return 0
        result = queue.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    processor = MagicMock(spec=DeliveryProcessor)
    processor.batch_size = batch_size
    processor.process_due = AsyncMock(side_effect=process_due)
    return processor


async def wait_for_calls(mock: AsyncMock, count: int, timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while mock.await_count < count:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


class TestDeliveryWorker:
    """Tests for DeliveryWorker."""

    @pytest.mark.asyncio
    async def test_run_once_delegates(self) -> None:
        processor = fake_processor([4])
        worker = DeliveryWorker(processor)
        assert await worker.run_once() == 4

    @pytest.mark.asyncio
    async def test_start_and_stop(self) -> None:
        worker = DeliveryWorker(fake_processor([]), interval_seconds=0.01)
        assert not worker.running

        worker.start()
        worker.start()
        assert worker.running

        await worker.stop()
        assert not worker.running
        await worker.stop()

    @pytest.mark.asyncio
    async def test_polls_on_interval(self) -> None:
        processor = fake_processor([])
        async with DeliveryWorker(processor, interval_seconds=0.01):
            await wait_for_calls(processor.process_due, 3)

    @pytest.mark.asyncio
    async def test_kick_wakes_idle_loop(self) -> None:
        processor = fake_processor([])
        async with DeliveryWorker(processor, interval_seconds=60) as worker:
            await wait_for_calls(processor.process_due, 1)
            worker.kick()
            await wait_for_calls(processor.process_due, 2)

    @pytest.mark.asyncio
    async def test_full_batch_runs_again_immediately(self) -> None:
        """A pass that fills the batch is followed by another pass without waiting."""
        processor = fake_processor([10, 10, 3], batch_size=10)
        async with DeliveryWorker(processor, interval_seconds=60):
            await wait_for_calls(processor.process_due, 3)

    @pytest.mark.asyncio
    async def test_failing_pass_keeps_loop_alive(self) -> None:
        processor = fake_processor([RuntimeError("store unavailable")])
        async with DeliveryWorker(processor, interval_seconds=0.01) as worker:
            await wait_for_calls(processor.process_due, 3)
            assert worker.running

    @pytest.mark.asyncio
    async def test_delivers_queued_work(
        self, make_endpoint, dispatcher, processor, deliveries, receiver
    ) -> None:
        await make_endpoint()
        async with DeliveryWorker(processor, interval_seconds=60) as worker:
            [queued] = await dispatcher.trigger(SCOPE_ID, WebhookEvent.RESERVATION_CREATED, {})
            worker.kick()

            for _ in range(200):
                if (await deliveries.get(queued.id)).status == DeliveryStatus.DELIVERED:
                    break
                await asyncio.sleep(0.005)

        assert (await deliveries.get(queued.id)).status == DeliveryStatus.DELIVERED
        assert receiver.calls == 1
