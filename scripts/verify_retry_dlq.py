#!/usr/bin/env python3
"""
Runs a worker with an always-failing provider against a real RabbitMQ and
checks that the job is transmitted exactly max_attempts times and then lands
in the dead-letter queue. Run it against an otherwise idle email queue: every
job the worker picks up fails.
"""
import asyncio
import uuid

from mailqueue.db.session import AsyncSessionLocal, create_tables
from mailqueue.domain.models import EmailJob
from mailqueue.domain.retry import RetryPolicy
from mailqueue.services.broker import QueueTopology
from mailqueue.services.quota import DatabaseQuotaStore
from mailqueue.settings import settings
from mailqueue_worker.consumer import EmailQueueWorker
from mailqueue_worker.provider import TransmissionResult

MAX_ATTEMPTS = 3


class FailingProvider:
    def __init__(self, job_id):
        self.job_id = job_id
        self.calls = 0

    async def send(self, email):
        if email.subject.endswith(self.job_id):
            self.calls += 1
        return TransmissionResult(success=False, error="Simulated provider outage")

    async def close(self):
        pass


async def verify_retry_dlq():
    await create_tables()

    topology = QueueTopology(settings.RABBITMQ_URL, prefetch_count=1)
    before = await topology.get_queue_stats()

    job_id = str(uuid.uuid4())
    job = EmailJob(id=job_id, to=["dlq-test@example.com"], subject=f"DLQ test {job_id}", html="<p>x</p>")

    provider = FailingProvider(job_id)
    worker = EmailQueueWorker(
        topology,
        DatabaseQuotaStore(AsyncSessionLocal, settings.EMAIL_DAILY_LIMIT),
        provider,
        # 1s retry delay keeps the run short
        retry_policy=RetryPolicy(max_attempts=MAX_ATTEMPTS, base_delay_seconds=1),
        default_from=settings.EMAIL_FROM,
    )

    print("1. Publishing job and starting worker...")
    await topology.publish_email_job(job)
    await worker.start()

    print("2. Waiting 15s for retries...")
    await asyncio.sleep(15)

    after = await topology.get_queue_stats()
    await worker.close()

    print(f"3. Transmissions: {provider.calls}, DLQ depth: {before.dlq} -> {after.dlq}")
    if provider.calls == MAX_ATTEMPTS and after.dlq == before.dlq + 1:
        print("SUCCESS: Job retried up to the bound and dead-lettered.")
    else:
        print("FAILURE: Unexpected retry/dead-letter behaviour.")


if __name__ == "__main__":
    asyncio.run(verify_retry_dlq())
