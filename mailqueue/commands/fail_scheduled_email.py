from datetime import datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from mailqueue.commands.complete_scheduled_email import transition_from_processing
from mailqueue.db.models import ScheduledEmail
from mailqueue.domain.retry import SCHEDULED_EMAIL_RETRY_POLICY, RetryPolicy
from mailqueue.domain.states import ScheduledEmailStatus


async def reschedule_scheduled_email(
    session: AsyncSession,
    email_id: UUID,
    scheduled_time: datetime,
    error: str,
    now: datetime,
) -> ScheduledEmail:
    """Returns a claimed record to PENDING for a later pass, attempts kept."""
    return await transition_from_processing(
        session,
        email_id,
        ScheduledEmailStatus.PENDING,
        scheduled_time=scheduled_time,
        error=error,
        updated_at=now,
    )


async def fail_scheduled_email(
    session: AsyncSession,
    email_id: UUID,
    attempts: int,
    error: str,
    now: datetime,
    policy: RetryPolicy = SCHEDULED_EMAIL_RETRY_POLICY,
) -> ScheduledEmail:
    """
    Records a failed send of a claimed record.

    Terminal FAILED once `attempts` reaches the policy bound, otherwise back
    to PENDING after min(2^attempts, cap) minutes.
    """
    if policy.is_exhausted(attempts):
        return await transition_from_processing(
            session, email_id, ScheduledEmailStatus.FAILED, error=error, updated_at=now,
        )

    return await reschedule_scheduled_email(
        session, email_id, policy.next_run(attempts, now), error, now,
    )
