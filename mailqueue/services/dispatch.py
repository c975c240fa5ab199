import logging
from datetime import datetime
from typing import Optional, Sequence

from mailqueue.api.v1.metrics import EMAILS_QUEUED
from mailqueue.domain.errors import EmailPipelineError
from mailqueue.domain.models import (
    BulkSendResult,
    EmailJob,
    LimitCheck,
    MailOptions,
    QueueResult,
    QuotaStats,
    ScheduleResult,
    SendEmailResult,
)
from mailqueue.domain.retry import delay_ms_until, utcnow
from mailqueue.domain.states import EmailType, ResultCode
from mailqueue.services.broker import QueueTopology
from mailqueue.services.quota import QuotaStore

logger = logging.getLogger(__name__)


class DispatchService:
    """
    Single entry point for sending or scheduling mail.

    Admission is decided here from the quota snapshot, but the counter itself
    only moves in the worker after a successful transmission. Over-limit work
    is never dropped: it is queued with scheduled_time set to the start of the
    next quota period.
    """

    def __init__(self, topology: QueueTopology, quota: QuotaStore, default_from: Optional[str] = None):
        self.topology = topology
        self.quota = quota
        self.default_from = default_from

    async def check_limit(self, recipient_count: int = 1) -> LimitCheck:
        stats = await self.quota.get_stats()
        return LimitCheck(
            can_send=stats.current_count + recipient_count <= stats.daily_limit,
            current_count=stats.current_count,
            daily_limit=stats.daily_limit,
            remaining=stats.remaining,
            percentage_used=stats.percentage_used,
            requested_count=recipient_count,
        )

    async def get_usage_stats(self) -> QuotaStats:
        return await self.quota.get_stats()

    def _build_job(
        self,
        mail_options: MailOptions,
        email_type: str,
        scheduled_time: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
    ) -> EmailJob:
        return EmailJob.from_mail_options(
            mail_options,
            email_type=email_type,
            scheduled_time=scheduled_time,
            expires_at=expires_at,
            default_from=self.default_from,
        )

    async def _publish(self, job: EmailJob, mode: str) -> QueueResult:
        delay_ms = None
        if job.scheduled_time is not None:
            now = utcnow()
            if job.scheduled_time > now:
                delay_ms = delay_ms_until(job.scheduled_time, now)

        logger.info(
            "Queueing email job=%s type=%s recipients=%s scheduled_for=%s",
            job.id, job.email_type, job.recipient_count,
            job.scheduled_time.isoformat() if job.scheduled_time else "now",
        )

        # BrokerUnavailableError propagates to the caller
        if not await self.topology.publish_email_job(job, delay_ms):
            logger.error("Email job %s was not accepted by the broker", job.id)
            return QueueResult(success=False, job_id=job.id, error="Failed to queue email")

        EMAILS_QUEUED.labels(email_type=job.email_type, mode=mode).inc()
        return QueueResult(success=True, job_id=job.id)

    async def queue_email(
        self,
        mail_options: MailOptions,
        email_type: str = EmailType.GENERAL,
        scheduled_time: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
    ) -> QueueResult:
        job = self._build_job(mail_options, email_type, scheduled_time, expires_at)
        return await self._publish(job, "scheduled" if scheduled_time else "immediate")

    async def send_email(
        self,
        mail_options: MailOptions,
        email_type: str = EmailType.GENERAL,
        expires_at: Optional[datetime] = None,
        defer_when_over_limit: bool = True,
    ) -> SendEmailResult:
        """
        Queues one message, immediately when today's quota can absorb every
        recipient, otherwise for the next quota period (LIMIT_EXCEEDED).

        With `defer_when_over_limit=False` an over-limit message is not queued
        at all; the persisted scheduler uses this to keep ownership of its own
        record instead of handing a second copy to the broker.
        """
        recipient_count = mail_options.recipient_count()
        limit = await self.check_limit(recipient_count)

        if not limit.can_send:
            logger.warning(
                "Daily email limit reached (%s/%s), requested=%s type=%s",
                limit.current_count, limit.daily_limit, recipient_count, email_type,
            )
            if not defer_when_over_limit:
                return SendEmailResult(
                    success=False,
                    recipient_count=recipient_count,
                    error=f"Daily email limit reached ({limit.current_count}/{limit.daily_limit})",
                    code=ResultCode.LIMIT_EXCEEDED,
                    limit_info=limit,
                )

            next_start = self.quota.get_next_day_start_time()
            job = self._build_job(mail_options, email_type, scheduled_time=next_start, expires_at=expires_at)
            queued = await self._publish(job, "deferred")
            if not queued.success:
                return SendEmailResult(
                    success=False,
                    recipient_count=recipient_count,
                    error=queued.error,
                    code=ResultCode.QUEUE_ERROR,
                    limit_info=limit,
                )

            return SendEmailResult(
                success=False,
                message_id=queued.job_id,
                recipient_count=recipient_count,
                error=(
                    f"Daily email limit reached ({limit.current_count}/{limit.daily_limit}). "
                    f"Email scheduled for {next_start.isoformat()}"
                ),
                code=ResultCode.LIMIT_EXCEEDED,
                limit_info=limit,
                scheduled_for=next_start,
            )

        job = self._build_job(mail_options, email_type, expires_at=expires_at)
        queued = await self._publish(job, "immediate")
        if not queued.success:
            return SendEmailResult(
                success=False,
                recipient_count=recipient_count,
                error=queued.error,
                code=ResultCode.QUEUE_ERROR,
                limit_info=limit,
            )

        return SendEmailResult(
            success=True,
            message_id=queued.job_id,
            recipient_count=recipient_count,
            limit_info=limit,
        )

    async def _publish_group(self, jobs: Sequence[EmailJob], mode: str) -> tuple[int, list[str]]:
        """
        Publishes jobs one by one. A rejected job, or a broker that drops
        mid-batch, is recorded against that job and does not stop the rest.
        """
        accepted = 0
        errors = []
        for job in jobs:
            try:
                result = await self._publish(job, mode)
            except EmailPipelineError as e:
                logger.error("Error publishing email job %s: %s", job.id, e)
                result = QueueResult(success=False, job_id=job.id, error=str(e))
            if result.success:
                accepted += 1
            else:
                errors.append(f"{job.id}: {result.error}")
        return accepted, errors

    async def send_bulk_email(
        self,
        recipients: Sequence[str],
        subject: str,
        html: str,
        text: Optional[str] = None,
        email_type: str = EmailType.NEWSLETTER,
        expires_at: Optional[datetime] = None,
    ) -> BulkSendResult:
        """
        One job per recipient. As many as today's remaining quota allows go
        out immediately; the rest are queued for the next quota period.
        """
        recipients = list(recipients)
        total = len(recipients)

        # Fail fast as a whole when the broker is down
        await self.topology.connect()

        stats = await self.quota.get_stats()
        sendable = min(stats.remaining, total)
        next_start = self.quota.get_next_day_start_time()

        def build(recipient: str, scheduled_time: Optional[datetime]) -> EmailJob:
            options = MailOptions(to=[recipient], subject=subject, html=html, text=text)
            return self._build_job(options, email_type, scheduled_time=scheduled_time, expires_at=expires_at)

        immediate = [build(r, None) for r in recipients[:sendable]]
        deferred = [build(r, next_start) for r in recipients[sendable:]]

        sent, immediate_errors = await self._publish_group(immediate, "immediate")
        scheduled, deferred_errors = await self._publish_group(deferred, "deferred")
        errors = immediate_errors + deferred_errors

        logger.info(
            "Bulk email queued: type=%s total=%s sent=%s scheduled=%s failed=%s",
            email_type, total, sent, scheduled, len(errors),
        )

        return BulkSendResult(
            success=not errors,
            sent=sent,
            scheduled=scheduled,
            total=total,
            failed=len(errors),
            errors=errors,
        )

    async def schedule_bulk_email(
        self,
        recipients: Sequence[str],
        subject: str,
        html: str,
        scheduled_time: datetime,
        text: Optional[str] = None,
        email_type: str = EmailType.NEWSLETTER,
        expires_at: Optional[datetime] = None,
    ) -> ScheduleResult:
        """Queues every recipient for `scheduled_time`, regardless of quota."""
        recipients = list(recipients)
        await self.topology.connect()

        jobs = [
            self._build_job(
                MailOptions(to=[recipient], subject=subject, html=html, text=text),
                email_type,
                scheduled_time=scheduled_time,
                expires_at=expires_at,
            )
            for recipient in recipients
        ]
        scheduled, errors = await self._publish_group(jobs, "scheduled")

        logger.info(
            "Bulk email scheduled: type=%s total=%s scheduled=%s failed=%s scheduled_for=%s",
            email_type, len(recipients), scheduled, len(errors), scheduled_time.isoformat(),
        )

        return ScheduleResult(
            success=not errors,
            scheduled=scheduled,
            total=len(recipients),
            failed=len(errors),
            errors=errors,
        )
