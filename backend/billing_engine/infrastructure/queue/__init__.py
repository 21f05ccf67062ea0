"""
Work Queue Infrastructure

Job dispatch between scans and workers.
"""

from billing_engine.infrastructure.queue.work_queue import (
    InMemoryWorkQueue,
    Job,
    RedisWorkQueue,
    TOPIC_EXPIRE_BATCH,
    TOPIC_EXPIRY_REMINDER,
    TOPIC_PAYMENT_RETRY,
    TOPIC_RENEW,
    WORKER_TOPICS,
    WorkQueue,
    get_work_queue,
    set_work_queue,
)

__all__ = [
    "InMemoryWorkQueue",
    "Job",
    "RedisWorkQueue",
    "TOPIC_EXPIRE_BATCH",
    "TOPIC_EXPIRY_REMINDER",
    "TOPIC_PAYMENT_RETRY",
    "TOPIC_RENEW",
    "WORKER_TOPICS",
    "WorkQueue",
    "get_work_queue",
    "set_work_queue",
]
