"""
Work Queue

At-least-once job dispatch between the lifecycle scans and the workers.
Every consumer re-checks current state before acting, so a redelivered job
is harmless.

A dequeued job is not gone: it sits in a per-topic processing list until the
consumer acks it. ``recover`` puts whatever a dead consumer left in flight
back on the queue.

Redis layout per topic: ``<prefix>:<topic>`` (LPUSH on enqueue) and
``<prefix>:<topic>:processing`` (LMOVE on dequeue, LREM on ack).
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Sequence

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from billing_engine.config.settings import get_settings
from billing_engine.infrastructure.exceptions import QueueError


logger = logging.getLogger(__name__)


# =============================================================================
# Topics
# =============================================================================

TOPIC_EXPIRE_BATCH = "subscription.expire_batch"
TOPIC_RENEW = "subscription.renew"
TOPIC_PAYMENT_RETRY = "payment.retry"
TOPIC_EXPIRY_REMINDER = "notification.expiry_reminder"

# Topics consumed by this service's workers (reminders go to the mailer)
WORKER_TOPICS = (TOPIC_EXPIRE_BATCH, TOPIC_RENEW, TOPIC_PAYMENT_RETRY)


@dataclass
class Job:
    """A unit of dispatched work."""
    topic: str
    payload: Dict[str, Any]
    attempts: int = 0
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    # Serialized form as delivered, used to ack it
    raw: Optional[str] = field(default=None, repr=False, compare=False)

    def to_json(self) -> str:
        return json.dumps(
            {
                "job_id": self.job_id,
                "topic": self.topic,
                "payload": self.payload,
                "attempts": self.attempts,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "Job":
        data = json.loads(raw)
        return cls(
            topic=data["topic"],
            payload=data.get("payload") or {},
            attempts=data.get("attempts", 0),
            job_id=data.get("job_id") or uuid.uuid4().hex,
            raw=raw,
        )


class WorkQueue(ABC):
    """Durable queue contract."""

    @abstractmethod
    async def enqueue(self, topic: str, payload: Dict[str, Any]) -> Job:
        """Dispatch a new job; raises QueueError on failure."""

    @abstractmethod
    async def dequeue(self, topics: Sequence[str], timeout: float = 5.0) -> Optional[Job]:
        """
        Wait up to ``timeout`` seconds for the next job on any topic.

        The job stays in flight until ``ack`` or ``requeue``.
        """

    @abstractmethod
    async def ack(self, job: Job) -> None:
        """Forget a delivered job: it is done or deliberately dropped."""

    @abstractmethod
    async def requeue(self, job: Job) -> None:
        """Put a delivered job back (with its attempt counter) for another try."""

    @abstractmethod
    async def recover(self, topics: Sequence[str]) -> int:
        """Return every in-flight job on ``topics`` to its queue; returns the count."""

    async def close(self) -> None:
        return None


class RedisWorkQueue(WorkQueue):
    """Redis list-backed queue with a processing list per topic."""

    def __init__(
        self,
        url: Optional[str] = None,
        key_prefix: Optional[str] = None,
        client=None,
        poll_interval: float = 0.5,
    ):
        settings = get_settings()
        self._key_prefix = key_prefix or settings.queue_key_prefix
        self._poll_interval = poll_interval
        self._client = client or aioredis.from_url(
            url or settings.redis_url,
            decode_responses=True,
        )

    def _key(self, topic: str) -> str:
        return f"{self._key_prefix}:{topic}"

    def _processing_key(self, topic: str) -> str:
        return f"{self._key_prefix}:{topic}:processing"

    async def _push(self, job: Job) -> None:
        try:
            await self._client.lpush(self._key(job.topic), job.to_json())
        except RedisError as e:
            logger.error(f"Failed to enqueue {job.topic} job {job.job_id}: {e}")
            raise QueueError(f"Failed to enqueue job: {e}", topic=job.topic, original_error=e)

    async def enqueue(self, topic: str, payload: Dict[str, Any]) -> Job:
        job = Job(topic=topic, payload=payload)
        await self._push(job)
        logger.debug(f"Enqueued {topic} job {job.job_id}")
        return job

    async def _claim(self, topic: str) -> Optional[Job]:
        raw = await self._client.lmove(self._key(topic), self._processing_key(topic), "RIGHT", "LEFT")
        return Job.from_json(raw) if raw is not None else None

    async def dequeue(self, topics: Sequence[str], timeout: float = 5.0) -> Optional[Job]:
        # LMOVE takes a single source list, so several topics are polled
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            while True:
                for topic in topics:
                    job = await self._claim(topic)
                    if job is not None:
                        return job
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                await asyncio.sleep(min(self._poll_interval, remaining))
        except RedisError as e:
            raise QueueError(f"Failed to dequeue: {e}", original_error=e)

    async def ack(self, job: Job) -> None:
        if job.raw is None:
            return
        try:
            await self._client.lrem(self._processing_key(job.topic), 1, job.raw)
        except RedisError as e:
            raise QueueError(f"Failed to ack job {job.job_id}: {e}", topic=job.topic, original_error=e)
        job.raw = None

    async def requeue(self, job: Job) -> None:
        # Push first: a crash in between redelivers rather than loses the job
        await self._push(job)
        await self.ack(job)

    async def recover(self, topics: Sequence[str]) -> int:
        recovered = 0
        try:
            for topic in topics:
                # Oldest in-flight first, onto the end that is consumed next
                while await self._client.lmove(
                    self._processing_key(topic), self._key(topic), "RIGHT", "RIGHT"
                ) is not None:
                    recovered += 1
        except RedisError as e:
            raise QueueError(f"Failed to recover in-flight jobs: {e}", original_error=e)
        if recovered:
            logger.warning(f"Recovered {recovered} in-flight jobs on {', '.join(topics)}")
        return recovered

    async def close(self) -> None:
        await self._client.aclose()


class InMemoryWorkQueue(WorkQueue):
    """In-process queue for local runs and tests."""

    def __init__(self):
        self._queues: Dict[str, Deque[Job]] = {}
        self._in_flight: Dict[str, Job] = {}
        self._available = asyncio.Condition()

    async def _put(self, job: Job, front: bool = False) -> None:
        async with self._available:
            queue = self._queues.setdefault(job.topic, deque())
            if front:
                queue.appendleft(job)
            else:
                queue.append(job)
            self._available.notify_all()

    async def enqueue(self, topic: str, payload: Dict[str, Any]) -> Job:
        job = Job(topic=topic, payload=payload)
        await self._put(job)
        return job

    def _pop(self, topics: Sequence[str]) -> Optional[Job]:
        for topic in topics:
            queue = self._queues.get(topic)
            if queue:
                job = queue.popleft()
                self._in_flight[job.job_id] = job
                return job
        return None

    async def dequeue(self, topics: Sequence[str], timeout: float = 5.0) -> Optional[Job]:
        async with self._available:
            job = self._pop(topics)
            if job is not None:
                return job
            try:
                await asyncio.wait_for(
                    self._available.wait_for(lambda: any(self._queues.get(t) for t in topics)),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                return None
            return self._pop(topics)

    async def ack(self, job: Job) -> None:
        self._in_flight.pop(job.job_id, None)

    async def requeue(self, job: Job) -> None:
        self._in_flight.pop(job.job_id, None)
        await self._put(job)

    async def recover(self, topics: Sequence[str]) -> int:
        stranded = [job for job in self._in_flight.values() if job.topic in topics]
        for job in stranded:
            del self._in_flight[job.job_id]
            await self._put(job, front=True)
        return len(stranded)

    def pending(self, topic: str) -> List[Job]:
        """Jobs waiting on ``topic`` (oldest first)."""
        return list(self._queues.get(topic, ()))

    def in_flight(self, topic: str) -> List[Job]:
        """Delivered jobs on ``topic`` not yet acked."""
        return [job for job in self._in_flight.values() if job.topic == topic]


# =============================================================================
# Singleton Instance
# =============================================================================

_queue_instance: Optional[WorkQueue] = None


def get_work_queue() -> WorkQueue:
    """Get or create the work queue selected by QUEUE_BACKEND."""
    global _queue_instance

    if _queue_instance is None:
        settings = get_settings()
        if settings.queue_backend == "memory":
            _queue_instance = InMemoryWorkQueue()
        else:
            _queue_instance = RedisWorkQueue()

    return _queue_instance


def set_work_queue(queue: Optional[WorkQueue]) -> None:
    global _queue_instance
    _queue_instance = queue
