from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from mailqueue.api.v1.metrics import SCHEDULED_EMAILS_RECOVERED
from mailqueue.db.models import ScheduledEmail
from mailqueue.domain.retry import SCHEDULED_EMAIL_RETRY_POLICY, RetryPolicy
from mailqueue.domain.states import ScheduledEmailStatus


async def requeue_stale_scheduled_emails(
    session: AsyncSession,
    now: datetime,
    stale_after_seconds: int,
    policy: RetryPolicy = SCHEDULED_EMAIL_RETRY_POLICY,
) -> int:
    """
    Recovers records left in PROCESSING by a scheduler that died mid-send.

    The abandoned claim already counted as an attempt: records with attempts
    left go back to PENDING, the rest become FAILED.
    Returns the number of records recovered to PENDING.
    """
    cutoff = now - timedelta(seconds=stale_after_seconds)
    stale = (
        ScheduledEmail.status == ScheduledEmailStatus.PROCESSING,
        ScheduledEmail.last_attempt_at < cutoff,
    )

    await session.execute(
        update(ScheduledEmail)
        .where(*stale, ScheduledEmail.attempts >= policy.max_attempts)
        .values(status=ScheduledEmailStatus.FAILED, error="Claim abandoned", updated_at=now)
        .execution_options(synchronize_session=False)
    )

    result = await session.execute(
        update(ScheduledEmail)
        .where(*stale)
        .values(status=ScheduledEmailStatus.PENDING, error="Claim abandoned", updated_at=now)
        .execution_options(synchronize_session=False)
    )

    count = result.rowcount or 0
    if count > 0:
        SCHEDULED_EMAILS_RECOVERED.inc(count)
    return count
