import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailqueue.api.v1.metrics import SCHEDULED_EMAILS_PROCESSED
from mailqueue.commands.claim_scheduled_email import claim_scheduled_email, fetch_due_scheduled_email_ids
from mailqueue.commands.complete_scheduled_email import mark_scheduled_email_sent, transition_from_processing
from mailqueue.commands.fail_scheduled_email import fail_scheduled_email, reschedule_scheduled_email
from mailqueue.commands.requeue_stale import requeue_stale_scheduled_emails
from mailqueue.domain.errors import EmailPipelineError
from mailqueue.domain.models import MailOptions, SendEmailResult
from mailqueue.domain.retry import SCHEDULED_EMAIL_RETRY_POLICY, RetryPolicy, next_quota_period_start, utcnow
from mailqueue.domain.states import ResultCode, ScheduledEmailStatus
from mailqueue.services.dispatch import DispatchService
from mailqueue.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    recovered: int = 0
    claimed: int = 0
    sent: int = 0
    rescheduled: int = 0
    failed: int = 0
    expired: int = 0


async def process_due_scheduled_emails(
    session_factory: async_sessionmaker[AsyncSession],
    dispatch: DispatchService,
    batch_size: int = 10,
    now: Optional[datetime] = None,
    policy: RetryPolicy = SCHEDULED_EMAIL_RETRY_POLICY,
    stale_after_seconds: Optional[int] = None,
) -> TickResult:
    """
    One scheduler pass:
    0. Return stale PROCESSING claims to PENDING
    1. Fetch up to `batch_size` due PENDING records, oldest first
    2. Claim each atomically and hand it to the producer
    3. Record the outcome (sent / rescheduled / failed)

    Each record runs in its own transactions, so one bad record never
    blocks the rest of the batch.
    """
    now = now or utcnow()
    if stale_after_seconds is None:
        stale_after_seconds = settings.SCHEDULED_EMAIL_STALE_AFTER_SECONDS
    result = TickResult()

    async with session_factory() as session:
        result.recovered = await requeue_stale_scheduled_emails(session, now, stale_after_seconds, policy)
        due_ids = await fetch_due_scheduled_email_ids(session, now, batch_size)
        await session.commit()

    if result.recovered:
        logger.warning(f"Recovered {result.recovered} stale scheduled email claims")

    for email_id in due_ids:
        try:
            outcome = await _process_one(session_factory, dispatch, email_id, now, policy)
        except Exception as e:
            logger.error(f"Error processing scheduled email {email_id}: {e}", exc_info=True)
            continue

        if outcome is None:
            continue
        result.claimed += 1
        setattr(result, outcome, getattr(result, outcome) + 1)
        SCHEDULED_EMAILS_PROCESSED.labels(outcome=outcome).inc()

    if due_ids:
        logger.info(
            "Scheduled email pass: due=%s claimed=%s sent=%s rescheduled=%s failed=%s expired=%s",
            len(due_ids), result.claimed, result.sent, result.rescheduled, result.failed, result.expired,
        )
    return result


async def _process_one(
    session_factory: async_sessionmaker[AsyncSession],
    dispatch: DispatchService,
    email_id: UUID,
    now: datetime,
    policy: RetryPolicy,
) -> Optional[str]:
    async with session_factory() as session:
        record = await claim_scheduled_email(session, email_id, now)
        await session.commit()

    if record is None:
        # Claimed by another pass
        return None

    if record.expires_at is not None and now > record.expires_at:
        async with session_factory() as session:
            await transition_from_processing(
                session, email_id, ScheduledEmailStatus.FAILED, error="expired", updated_at=now,
            )
            await session.commit()
        logger.info(f"Scheduled email {email_id} expired at {record.expires_at.isoformat()}, not sent")
        return "expired"

    try:
        mail_options = MailOptions.model_validate(record.mail_options)
        send_result = await dispatch.send_email(
            mail_options,
            record.email_type,
            expires_at=record.expires_at,
            defer_when_over_limit=False,
        )
    except (ValidationError, EmailPipelineError) as e:
        send_result = SendEmailResult(success=False, error=str(e))

    async with session_factory() as session:
        if send_result.success:
            await mark_scheduled_email_sent(session, email_id, now)
            outcome = "sent"
            logger.info(f"Scheduled email {email_id} queued as job {send_result.message_id}")
        elif send_result.code == ResultCode.LIMIT_EXCEEDED:
            next_start = next_quota_period_start(now)
            await reschedule_scheduled_email(session, email_id, next_start, send_result.error, now)
            outcome = "rescheduled"
            logger.info(f"Scheduled email {email_id} over daily limit, moved to {next_start.isoformat()}")
        else:
            record = await fail_scheduled_email(session, email_id, record.attempts, send_result.error, now, policy)
            outcome = "failed" if record.status == ScheduledEmailStatus.FAILED else "rescheduled"
            logger.warning(
                f"Scheduled email {email_id} failed (attempt {record.attempts}/{policy.max_attempts}): "
                f"{send_result.error}"
            )
        await session.commit()

    return outcome
