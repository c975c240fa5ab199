import logging
from typing import Optional

from aio_pika.abc import AbstractIncomingMessage, AbstractQueue
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError

from mailqueue.api.v1.metrics import (
    EMAIL_FAILURES,
    EMAILS_DELAYED,
    EMAILS_DISCARDED,
    EMAILS_EXPIRED,
    EMAILS_SENT,
)
from mailqueue.domain.errors import BrokerUnavailableError, EmailPipelineError, InvalidEmailJobError
from mailqueue.domain.models import EmailJob
from mailqueue.domain.retry import (
    WORKER_RETRY_POLICY,
    RetryPolicy,
    delay_ms_until,
    delay_ms_until_quota_reset,
    utcnow,
)
from mailqueue.domain.states import DelayReason, EmailType, WorkerOutcome
from mailqueue.services.broker import QUEUE_NAME, QueueTopology
from mailqueue.services.quota import QuotaStore
from mailqueue.services.templates import html_to_text, is_full_document, wrap_in_template
from mailqueue_worker.provider import OutgoingEmail, TransmissionProvider, TransmissionResult

logger = logging.getLogger(__name__)

_DELAY_OUTCOMES = {
    DelayReason.SCHEDULED: WorkerOutcome.DELAYED,
    DelayReason.QUOTA: WorkerOutcome.DEFERRED_QUOTA,
    DelayReason.RETRY: WorkerOutcome.RETRY_SCHEDULED,
}


class EmailQueueWorker:
    """
    Consumes email jobs from the main queue, one at a time.

    Per job:
        1. expired                   -> ack, discard
        2. scheduled in the future   -> copy to delay queue, ack
        3. delivery paused           -> resume on a new quota period,
                                        else copy to delay queue until reset, ack
        4. quota cannot absorb it    -> pause, copy to delay queue until reset, ack
        5. transmit                  -> ack on success; on failure retry through
                                        the delay queue or dead-letter at the bound
        6. unexpected error          -> unparseable: ack, discard
                                        otherwise: same retry/dead-letter decision

    Quota slots are reserved atomically before transmitting and given back
    when the provider fails, so concurrent workers never overshoot the limit.
    The worker never raises out of a message handler.
    """

    def __init__(
        self,
        topology: QueueTopology,
        quota: QuotaStore,
        provider: TransmissionProvider,
        retry_policy: RetryPolicy = WORKER_RETRY_POLICY,
        default_from: Optional[str] = None,
        resume_buffer_seconds: Optional[int] = None,
    ):
        self.topology = topology
        self.quota = quota
        self.provider = provider
        self.retry_policy = retry_policy
        self.default_from = default_from
        self.resume_buffer_seconds = resume_buffer_seconds
        self._queue: Optional[AbstractQueue] = None
        self._consumer_tag: Optional[str] = None

    @property
    def is_consuming(self) -> bool:
        return self._consumer_tag is not None and self.topology.is_connected

    async def start(self):
        """Starts consuming; a no-op while the current consumer is alive."""
        if self.is_consuming:
            return

        self._consumer_tag = None
        self._queue = await self.topology.get_main_queue()
        try:
            self._consumer_tag = await self._queue.consume(self.handle_message)
        except (AMQPError, ChannelInvalidStateError, ConnectionError) as e:
            self._queue = None
            raise BrokerUnavailableError(f"Cannot consume from {QUEUE_NAME}: {e}") from e
        logger.info(
            "Email worker consuming from %s (max retries %s)",
            QUEUE_NAME,
            self.retry_policy.max_attempts,
        )

    async def stop(self):
        queue, tag = self._queue, self._consumer_tag
        self._queue = None
        self._consumer_tag = None
        if queue is not None and tag is not None and self.topology.is_connected:
            try:
                await queue.cancel(tag)
            except (AMQPError, ChannelInvalidStateError, ConnectionError) as e:
                logger.warning("Error cancelling consumer %s: %s", tag, e)
        logger.info("Email worker stopped consuming")

    async def close(self):
        await self.stop()
        await self.provider.close()
        await self.topology.close()

    async def handle_message(self, message: AbstractIncomingMessage) -> WorkerOutcome:
        try:
            job = EmailJob.parse_body(message.body)
        except InvalidEmailJobError as e:
            logger.error("Discarding unparseable email job message=%s: %s", message.message_id, e)
            EMAILS_DISCARDED.inc()
            await message.ack()
            return WorkerOutcome.DISCARDED

        try:
            return await self.process_job(message, job)
        except Exception as e:
            logger.exception("Unexpected error processing email job %s", job.id)
            return await self._retry_or_dead_letter(message, job, f"{type(e).__name__}: {e}")

    async def process_job(self, message: AbstractIncomingMessage, job: EmailJob) -> WorkerOutcome:
        now = utcnow()

        if job.is_expired(now):
            logger.info("Email job %s expired at %s, discarding", job.id, job.expires_at.isoformat())
            EMAILS_EXPIRED.inc()
            await message.ack()
            return WorkerOutcome.EXPIRED

        if job.delay_until_scheduled(now) is not None:
            delay_ms = delay_ms_until(job.scheduled_time, now)
            logger.info(
                "Email job %s scheduled for %s, delaying %sms",
                job.id, job.scheduled_time.isoformat(), delay_ms,
            )
            return await self._delay(message, job, delay_ms, DelayReason.SCHEDULED)

        if await self.quota.is_paused():
            stats = await self.quota.get_stats()
            if stats.current_count == 0:
                # Counter was reset for a new quota period
                await self.quota.resume_worker()
            else:
                logger.info("Email delivery paused, deferring job %s until quota reset", job.id)
                return await self._delay(
                    message, job, delay_ms_until_quota_reset(now, self.resume_buffer_seconds), DelayReason.QUOTA,
                )

        recipient_count = job.recipient_count
        reserved_day = await self.quota.try_acquire(recipient_count)
        if not reserved_day:
            stats = await self.quota.get_stats()
            if recipient_count > stats.daily_limit:
                reason = f"{recipient_count} recipients exceed the daily limit of {stats.daily_limit}"
                return await self._dead_letter(message, job, reason)

            await self.quota.pause_worker()
            logger.warning(
                "Daily email limit reached (%s/%s), deferring job %s until quota reset",
                stats.current_count, stats.daily_limit, job.id,
            )
            return await self._delay(
                message, job, delay_ms_until_quota_reset(now, self.resume_buffer_seconds), DelayReason.QUOTA,
            )

        result = await self._transmit(job)
        if result.success:
            await message.ack()
            EMAILS_SENT.labels(email_type=job.email_type).inc()
            logger.info(
                "Email sent: job=%s type=%s recipients=%s provider_id=%s",
                job.id, job.email_type, recipient_count, result.message_id,
            )
            return WorkerOutcome.SENT

        await self.quota.release(recipient_count, reserved_day)
        return await self._retry_or_dead_letter(message, job, result.error or "Failed to send email")

    def render(self, job: EmailJob) -> OutgoingEmail:
        html = job.html
        if html and not is_full_document(html):
            html = wrap_in_template(
                html,
                subject=job.subject,
                include_unsubscribe=job.email_type == EmailType.NEWSLETTER,
                recipient=job.to[0] if len(job.to) == 1 else None,
            )
        text = job.text or (html_to_text(html) if html else "") or job.subject

        return OutgoingEmail(
            from_=job.from_ or self.default_from,
            to=job.to,
            cc=job.cc,
            bcc=job.bcc,
            subject=job.subject,
            html=html,
            text=text,
        )

    async def _transmit(self, job: EmailJob) -> TransmissionResult:
        try:
            return await self.provider.send(self.render(job))
        except Exception as e:
            logger.error("Error transmitting email job %s: %s", job.id, e, exc_info=True)
            return TransmissionResult(success=False, error=f"{type(e).__name__}: {e}")

    async def _retry_or_dead_letter(
        self, message: AbstractIncomingMessage, job: EmailJob, error: str
    ) -> WorkerOutcome:
        attempts = job.attempts + 1
        retried = job.with_attempts(attempts)

        if self.retry_policy.is_exhausted(attempts):
            EMAIL_FAILURES.labels(type="final").inc()
            logger.error(
                "Email job %s failed after %s attempts, dead-lettering: %s",
                job.id, attempts, error,
            )
            return await self._dead_letter(message, retried, error)

        EMAIL_FAILURES.labels(type="retryable").inc()
        delay_ms = int(self.retry_policy.delay_seconds(attempts) * 1000)
        logger.warning(
            "Email job %s failed, will retry in %ss (attempt %s/%s): %s",
            job.id, delay_ms // 1000, attempts, self.retry_policy.max_attempts, error,
        )
        return await self._delay(message, retried, delay_ms, DelayReason.RETRY)

    async def _delay(
        self, message: AbstractIncomingMessage, job: EmailJob, delay_ms: int, reason: DelayReason
    ) -> WorkerOutcome:
        try:
            published = await self.topology.publish_to_delay_queue(job, delay_ms)
        except EmailPipelineError as e:
            logger.error("Error routing job %s to delay queue: %s", job.id, e)
            published = False

        if not published:
            return await self._requeue(message, job)

        EMAILS_DELAYED.labels(reason=reason).inc()
        await message.ack()
        return _DELAY_OUTCOMES[reason]

    async def _dead_letter(self, message: AbstractIncomingMessage, job: EmailJob, reason: str) -> WorkerOutcome:
        try:
            published = await self.topology.publish_to_dead_letter(job, reason)
        except EmailPipelineError as e:
            logger.error("Error routing job %s to dead-letter queue: %s", job.id, e)
            published = False

        if not published:
            return await self._requeue(message, job)

        await message.nack(requeue=False)
        return WorkerOutcome.DEAD_LETTERED

    async def _requeue(self, message: AbstractIncomingMessage, job: EmailJob) -> WorkerOutcome:
        # Leave the original with the broker rather than lose it
        logger.warning("Returning email job %s to the main queue", job.id)
        try:
            await message.nack(requeue=True)
        except (AMQPError, ChannelInvalidStateError, ConnectionError) as e:
            # The broker redelivers unacked messages of a dead channel
            logger.error("Could not requeue email job %s: %s", job.id, e)
        return WorkerOutcome.REQUEUED
