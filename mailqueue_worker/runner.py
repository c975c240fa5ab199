import asyncio
import logging
import signal

from mailqueue.db.session import AsyncSessionLocal, create_tables
from mailqueue.domain.errors import BrokerUnavailableError, ConfigurationError
from mailqueue.services.broker import QueueTopology
from mailqueue.services.quota import DatabaseQuotaStore
from mailqueue.settings import settings
from mailqueue_worker.consumer import EmailQueueWorker
from mailqueue_worker.provider import ResendProvider

logger = logging.getLogger(__name__)


class WorkerRunner:
    """Keeps an EmailQueueWorker consuming until stop() is called."""

    def __init__(self, worker: EmailQueueWorker, reconnect_delay: float = 5.0, check_interval: float = 1.0):
        self.worker = worker
        self.reconnect_delay = reconnect_delay
        self.check_interval = check_interval
        self.running = False
        self._shutdown_event = asyncio.Event()

    async def _wait(self, timeout: float):
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def run(self):
        self.running = True
        self._shutdown_event.clear()
        logger.info("Email worker runner started")

        try:
            while self.running:
                try:
                    # Re-subscribes after the connection was dropped
                    await self.worker.start()
                except BrokerUnavailableError as e:
                    logger.error("Worker cannot consume, retrying in %ss: %s", self.reconnect_delay, e)
                    await self._wait(self.reconnect_delay)
                    continue
                except Exception as e:
                    logger.exception("Error in email worker runner loop: %s", e)
                    await self._wait(self.reconnect_delay)
                    continue

                await self._wait(self.check_interval)
        finally:
            await self.worker.close()
            logger.info("Email worker runner stopped")

    def stop(self):
        logger.info("Shutdown signal received")
        self.running = False
        self._shutdown_event.set()


def build_worker() -> EmailQueueWorker:
    if not settings.RESEND_API_KEY:
        raise ConfigurationError("RESEND_API_KEY is required to run the email worker")

    return EmailQueueWorker(
        topology=QueueTopology(settings.RABBITMQ_URL, prefetch_count=1),
        quota=DatabaseQuotaStore(AsyncSessionLocal, settings.EMAIL_DAILY_LIMIT),
        provider=ResendProvider(
            api_key=settings.RESEND_API_KEY,
            base_url=settings.RESEND_API_URL,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        ),
        default_from=settings.EMAIL_FROM,
        resume_buffer_seconds=settings.QUOTA_RESUME_BUFFER_SECONDS,
    )


async def run_worker():
    worker = build_worker()

    if settings.AUTO_CREATE_TABLES:
        await create_tables()

    runner = WorkerRunner(worker)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, runner.stop)
        except NotImplementedError:
            # Windows support
            pass

    await runner.run()


def main():
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
