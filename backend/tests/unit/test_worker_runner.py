"""
Unit tests for the queue worker loop and the scan scheduler.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from billing_engine.infrastructure.exceptions import QueueError
from billing_engine.infrastructure.queue.work_queue import (
    InMemoryWorkQueue,
    Job,
    RedisWorkQueue,
    TOPIC_PAYMENT_RETRY,
    TOPIC_RENEW,
)
from billing_engine.jobs.scheduler import LifecycleScheduler, ScheduledScan
from billing_engine.jobs.workers import WorkerRunner


class TestWorkerRunner:
    """Tests for WorkerRunner.run_once."""

    async def test_dispatches_payload_to_handler(self):
        queue = InMemoryWorkQueue()
        handler = AsyncMock(return_value="invoiced")
        runner = WorkerRunner({TOPIC_RENEW: handler}, queue=queue, max_attempts=3, poll_timeout=0.01)

        await queue.enqueue(TOPIC_RENEW, {"subscription_id": 7})
        job = await runner.run_once()

        handler.assert_awaited_once_with({"subscription_id": 7})
        assert job.attempts == 0
        assert queue.pending(TOPIC_RENEW) == []

    async def test_failed_job_is_requeued_until_max_attempts(self):
        queue = InMemoryWorkQueue()
        handler = AsyncMock(side_effect=RuntimeError("boom"))
        runner = WorkerRunner({TOPIC_RENEW: handler}, queue=queue, max_attempts=2, poll_timeout=0.01)

        await queue.enqueue(TOPIC_RENEW, {"subscription_id": 7})

        await runner.run_once()
        pending = queue.pending(TOPIC_RENEW)
        assert len(pending) == 1
        assert pending[0].attempts == 1

        await runner.run_once()
        assert queue.pending(TOPIC_RENEW) == []
        assert handler.await_count == 2

    async def test_empty_queue_returns_none(self):
        runner = WorkerRunner({TOPIC_RENEW: AsyncMock()}, queue=InMemoryWorkQueue(), poll_timeout=0.01)
        assert await runner.run_once() is None

    async def test_run_stops_on_event(self):
        queue = InMemoryWorkQueue()
        stop = asyncio.Event()
        handler = AsyncMock(side_effect=lambda payload: stop.set())
        runner = WorkerRunner({TOPIC_RENEW: handler}, queue=queue, poll_timeout=0.01)

        await queue.enqueue(TOPIC_RENEW, {"subscription_id": 1})
        await asyncio.wait_for(runner.run(stop), timeout=2)

        handler.assert_awaited_once()

    async def test_successful_job_is_acked(self):
        queue = InMemoryWorkQueue()
        runner = WorkerRunner({TOPIC_RENEW: AsyncMock()}, queue=queue, poll_timeout=0.01)

        await queue.enqueue(TOPIC_RENEW, {"subscription_id": 7})
        await runner.run_once()

        assert queue.in_flight(TOPIC_RENEW) == []

    async def test_dropped_job_runs_drop_handler(self):
        queue = InMemoryWorkQueue()
        on_drop = AsyncMock()
        runner = WorkerRunner(
            {TOPIC_RENEW: AsyncMock(side_effect=RuntimeError("boom"))},
            queue=queue,
            max_attempts=1,
            poll_timeout=0.01,
            drop_handlers={TOPIC_RENEW: on_drop},
        )

        await queue.enqueue(TOPIC_RENEW, {"subscription_id": 7})
        await runner.run_once()

        on_drop.assert_awaited_once_with({"subscription_id": 7})
        assert queue.pending(TOPIC_RENEW) == []
        assert queue.in_flight(TOPIC_RENEW) == []

    async def test_drop_handler_failure_still_acks(self):
        queue = InMemoryWorkQueue()
        runner = WorkerRunner(
            {TOPIC_RENEW: AsyncMock(side_effect=RuntimeError("boom"))},
            queue=queue,
            max_attempts=1,
            poll_timeout=0.01,
            drop_handlers={TOPIC_RENEW: AsyncMock(side_effect=RuntimeError("db down"))},
        )

        await queue.enqueue(TOPIC_RENEW, {"subscription_id": 7})
        job = await runner.run_once()

        assert job.attempts == 1
        assert queue.in_flight(TOPIC_RENEW) == []

    async def test_drop_handler_not_called_while_retrying(self):
        queue = InMemoryWorkQueue()
        on_drop = AsyncMock()
        runner = WorkerRunner(
            {TOPIC_RENEW: AsyncMock(side_effect=RuntimeError("boom"))},
            queue=queue,
            max_attempts=3,
            poll_timeout=0.01,
            drop_handlers={TOPIC_RENEW: on_drop},
        )

        await queue.enqueue(TOPIC_RENEW, {"subscription_id": 7})
        await runner.run_once()

        on_drop.assert_not_awaited()

    async def test_run_recovers_stranded_jobs_first(self):
        queue = InMemoryWorkQueue()
        await queue.enqueue(TOPIC_RENEW, {"subscription_id": 1})
        # A previous worker took it and died
        await queue.dequeue([TOPIC_RENEW], timeout=0.01)
        assert queue.pending(TOPIC_RENEW) == []

        stop = asyncio.Event()
        handler = AsyncMock(side_effect=lambda payload: stop.set())
        runner = WorkerRunner({TOPIC_RENEW: handler}, queue=queue, poll_timeout=0.01)

        await asyncio.wait_for(runner.run(stop), timeout=2)

        handler.assert_awaited_once_with({"subscription_id": 1})
        assert queue.in_flight(TOPIC_RENEW) == []


class TestRedisWorkQueue:
    """RedisWorkQueue against a mocked client."""

    async def test_enqueue_pushes_json(self):
        client = MagicMock()
        client.lpush = AsyncMock(return_value=1)
        queue = RedisWorkQueue(key_prefix="test", client=client)

        job = await queue.enqueue(TOPIC_RENEW, {"subscription_id": 3})

        key, raw = client.lpush.await_args.args
        assert key == f"test:{TOPIC_RENEW}"
        assert Job.from_json(raw).payload == {"subscription_id": 3}
        assert Job.from_json(raw).job_id == job.job_id

    async def test_enqueue_failure_raises_queue_error(self):
        client = MagicMock()
        client.lpush = AsyncMock(side_effect=RedisConnectionError("down"))
        queue = RedisWorkQueue(key_prefix="test", client=client)

        with pytest.raises(QueueError):
            await queue.enqueue(TOPIC_RENEW, {"subscription_id": 3})

    async def test_dequeue_moves_job_to_processing(self):
        stored = Job(topic=TOPIC_RENEW, payload={"subscription_id": 9}, attempts=2)
        client = MagicMock()
        client.lmove = AsyncMock(return_value=stored.to_json())
        queue = RedisWorkQueue(key_prefix="test", client=client)

        job = await queue.dequeue([TOPIC_RENEW], timeout=1)

        assert job.payload == {"subscription_id": 9}
        assert job.attempts == 2
        assert job.raw == stored.to_json()
        client.lmove.assert_awaited_once_with(
            f"test:{TOPIC_RENEW}", f"test:{TOPIC_RENEW}:processing", "RIGHT", "LEFT"
        )

    async def test_dequeue_timeout(self):
        client = MagicMock()
        client.lmove = AsyncMock(return_value=None)
        queue = RedisWorkQueue(key_prefix="test", client=client, poll_interval=0.01)

        assert await queue.dequeue([TOPIC_RENEW], timeout=0.03) is None
        assert client.lmove.await_count >= 2

    async def test_dequeue_failure_raises_queue_error(self):
        client = MagicMock()
        client.lmove = AsyncMock(side_effect=RedisConnectionError("down"))
        queue = RedisWorkQueue(key_prefix="test", client=client)

        with pytest.raises(QueueError):
            await queue.dequeue([TOPIC_RENEW], timeout=1)

    async def test_ack_removes_from_processing(self):
        raw = Job(topic=TOPIC_RENEW, payload={"subscription_id": 9}).to_json()
        client = MagicMock()
        client.lmove = AsyncMock(return_value=raw)
        client.lrem = AsyncMock(return_value=1)
        queue = RedisWorkQueue(key_prefix="test", client=client)

        job = await queue.dequeue([TOPIC_RENEW], timeout=1)
        await queue.ack(job)

        client.lrem.assert_awaited_once_with(f"test:{TOPIC_RENEW}:processing", 1, raw)
        assert job.raw is None

    async def test_requeue_pushes_then_acks(self):
        raw = Job(topic=TOPIC_RENEW, payload={"subscription_id": 9}).to_json()
        client = MagicMock()
        client.lmove = AsyncMock(return_value=raw)
        client.lpush = AsyncMock(return_value=1)
        client.lrem = AsyncMock(return_value=1)
        queue = RedisWorkQueue(key_prefix="test", client=client)

        job = await queue.dequeue([TOPIC_RENEW], timeout=1)
        job.attempts += 1
        await queue.requeue(job)

        key, pushed = client.lpush.await_args.args
        assert key == f"test:{TOPIC_RENEW}"
        assert Job.from_json(pushed).attempts == 1
        client.lrem.assert_awaited_once_with(f"test:{TOPIC_RENEW}:processing", 1, raw)

    async def test_requeue_keeps_job_in_flight_when_push_fails(self):
        raw = Job(topic=TOPIC_RENEW, payload={"subscription_id": 9}).to_json()
        client = MagicMock()
        client.lmove = AsyncMock(return_value=raw)
        client.lpush = AsyncMock(side_effect=RedisConnectionError("down"))
        client.lrem = AsyncMock(return_value=1)
        queue = RedisWorkQueue(key_prefix="test", client=client)

        job = await queue.dequeue([TOPIC_RENEW], timeout=1)
        with pytest.raises(QueueError):
            await queue.requeue(job)

        client.lrem.assert_not_awaited()

    async def test_recover_moves_processing_back(self):
        raw = Job(topic=TOPIC_RENEW, payload={"subscription_id": 9}).to_json()
        client = MagicMock()
        client.lmove = AsyncMock(side_effect=[raw, raw, None])
        queue = RedisWorkQueue(key_prefix="test", client=client)

        assert await queue.recover([TOPIC_RENEW]) == 2
        client.lmove.assert_awaited_with(
            f"test:{TOPIC_RENEW}:processing", f"test:{TOPIC_RENEW}", "RIGHT", "RIGHT"
        )


class TestInMemoryWorkQueue:
    async def test_dequeued_job_is_in_flight_until_acked(self):
        queue = InMemoryWorkQueue()
        await queue.enqueue(TOPIC_RENEW, {"subscription_id": 1})

        job = await queue.dequeue([TOPIC_RENEW], timeout=0.01)
        assert queue.in_flight(TOPIC_RENEW) == [job]

        await queue.ack(job)
        assert queue.in_flight(TOPIC_RENEW) == []

    async def test_recover_returns_stranded_jobs(self):
        queue = InMemoryWorkQueue()
        await queue.enqueue(TOPIC_RENEW, {"subscription_id": 1})
        await queue.enqueue(TOPIC_PAYMENT_RETRY, {"payment_id": 2})
        await queue.dequeue([TOPIC_RENEW], timeout=0.01)
        await queue.dequeue([TOPIC_PAYMENT_RETRY], timeout=0.01)

        assert await queue.recover([TOPIC_RENEW]) == 1

        assert [job.payload for job in queue.pending(TOPIC_RENEW)] == [{"subscription_id": 1}]
        assert len(queue.in_flight(TOPIC_PAYMENT_RETRY)) == 1


class TestLifecycleScheduler:
    async def test_tick_swallows_failures(self):
        scheduler = LifecycleScheduler([])
        scan = ScheduledScan("broken", 60, AsyncMock(side_effect=RuntimeError("db down")))

        assert await scheduler.tick(scan) is None

    async def test_tick_returns_stats(self):
        scheduler = LifecycleScheduler([])
        scan = ScheduledScan("expiry", 60, AsyncMock(return_value={"flagged": 2}))

        assert await scheduler.tick(scan) == {"flagged": 2}

    async def test_start_runs_every_scan_and_stops(self):
        first = AsyncMock(return_value={})
        second = AsyncMock(side_effect=RuntimeError("keeps failing"))
        scheduler = LifecycleScheduler(
            [ScheduledScan("first", 60, first), ScheduledScan("second", 60, second)]
        )

        scheduler.start()
        assert scheduler.running is True
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert scheduler.running is False
        first.assert_awaited()
        second.assert_awaited()
