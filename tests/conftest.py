import os

# Settings are read at import time; keep tests off real infrastructure
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("AUTO_CREATE_TABLES", "false")

from datetime import datetime, timezone
from typing import Optional

import pytest

from mailqueue.db.session import build_engine, build_sessionmaker, create_tables
from mailqueue.domain.errors import BrokerUnavailableError
from mailqueue.domain.models import BulkPublishResult, QueueStats, QuotaStats
from mailqueue_worker.provider import TransmissionResult


class MemoryQuotaStore:
    """In-process QuotaStore with the same admission semantics as the database one."""

    def __init__(self, daily_limit: int = 100, current_count: int = 0, paused: bool = False):
        self.daily_limit = daily_limit
        self.current_count = current_count
        self.paused = paused
        self.released = 0
        self.next_start = datetime(2030, 1, 2, tzinfo=timezone.utc)
        self.day = "2030-01-01"
        self.released_days = []

    async def get_stats(self) -> QuotaStats:
        return QuotaStats.compute(self.current_count, self.daily_limit, self.paused)

    async def can_send(self, count: int = 1) -> bool:
        return self.current_count + count <= self.daily_limit

    async def try_acquire(self, count: int = 1) -> Optional[str]:
        if self.current_count + count > self.daily_limit:
            return None
        self.current_count += count
        return self.day

    async def release(self, count: int = 1, day: Optional[str] = None) -> None:
        self.released += count
        self.released_days.append(day)
        self.current_count = max(self.current_count - count, 0)

    async def increment_count(self, count: int = 1) -> int:
        self.current_count += count
        if self.current_count >= self.daily_limit:
            self.paused = True
        return self.current_count

    async def is_paused(self) -> bool:
        return self.paused

    async def pause_worker(self) -> None:
        self.paused = True

    async def resume_worker(self) -> None:
        self.paused = False

    def get_next_day_start_time(self) -> datetime:
        return self.next_start


class FakeTopology:
    """Records what would have been published to each exchange."""

    def __init__(self):
        self.published = []       # (job, delay_ms)
        self.delayed = []         # (job, delay_ms)
        self.dead_lettered = []   # (job, reason)
        self.reject_ids = set()
        self.drop_on_calls = set()  # 1-based publish calls that lose the connection
        self.publish_calls = 0
        self.unavailable = False
        self.delay_unavailable = False
        self.is_connected = True
        self.closed = False
        self.queue = None

    async def connect(self):
        if self.unavailable:
            raise BrokerUnavailableError("RabbitMQ unavailable: connection refused")

    async def publish_email_job(self, job, delay_ms=None):
        await self.connect()
        self.publish_calls += 1
        if self.publish_calls in self.drop_on_calls:
            raise BrokerUnavailableError("Failed to publish email job: connection dropped")
        if job.id in self.reject_ids or job.to[0] in self.reject_ids:
            return False
        self.published.append((job, delay_ms))
        return True

    async def publish_bulk_email_jobs(self, jobs):
        result = BulkPublishResult()
        for job in jobs:
            if await self.publish_email_job(job):
                result.published += 1
            else:
                result.failed += 1
                result.failed_ids.append(job.id)
        return result

    async def publish_to_delay_queue(self, job, delay_ms):
        if self.delay_unavailable:
            raise BrokerUnavailableError("RabbitMQ unavailable: channel closed")
        self.delayed.append((job, max(delay_ms, 1000)))
        return True

    async def publish_to_dead_letter(self, job, reason):
        self.dead_lettered.append((job, reason))
        return True

    async def get_main_queue(self):
        return self.queue

    async def get_queue_stats(self):
        await self.connect()
        return QueueStats(queue=len(self.published), delay=len(self.delayed), dlq=len(self.dead_lettered))

    async def close(self):
        self.closed = True


class FakeMessage:
    def __init__(self, body: bytes, message_id: Optional[str] = None):
        self.body = body
        self.message_id = message_id
        self.acked = 0
        self.nacked = []  # requeue flags

    async def ack(self):
        self.acked += 1

    async def nack(self, requeue: bool = True):
        self.nacked.append(requeue)


class FakeProvider:
    def __init__(self, results=None, fail_always: bool = False, raise_exc: Optional[Exception] = None):
        self.results = list(results or [])
        self.fail_always = fail_always
        self.raise_exc = raise_exc
        self.sent = []
        self.closed = False

    async def send(self, email):
        self.sent.append(email)
        if self.raise_exc is not None:
            raise self.raise_exc
        if self.fail_always:
            return TransmissionResult(success=False, error="Provider down")
        if self.results:
            return self.results.pop(0)
        return TransmissionResult(success=True, message_id=f"msg-{len(self.sent)}")

    async def close(self):
        self.closed = True


@pytest.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'mailqueue.db'}")
    await create_tables(engine)
    yield build_sessionmaker(engine)
    await engine.dispose()


@pytest.fixture
def quota():
    return MemoryQuotaStore()


@pytest.fixture
def topology():
    return FakeTopology()
