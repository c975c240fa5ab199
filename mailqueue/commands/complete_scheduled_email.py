from datetime import datetime
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from mailqueue.db.models import ScheduledEmail
from mailqueue.domain.errors import InvalidScheduledEmailStateError, ScheduledEmailNotFoundError
from mailqueue.domain.states import ScheduledEmailStatus


async def transition_from_processing(
    session: AsyncSession,
    email_id: UUID,
    target: ScheduledEmailStatus,
    **values,
) -> ScheduledEmail:
    stmt = (
        update(ScheduledEmail)
        .where(
            ScheduledEmail.id == email_id,
            ScheduledEmail.status == ScheduledEmailStatus.PROCESSING,
        )
        .values(status=target, **values)
        .returning(ScheduledEmail)
        .execution_options(populate_existing=True)
    )
    record = (await session.execute(stmt)).scalar_one_or_none()
    if record is not None:
        return record

    current = await session.get(ScheduledEmail, email_id)
    if current is None:
        raise ScheduledEmailNotFoundError(email_id)
    raise InvalidScheduledEmailStateError(current.status, target)


async def mark_scheduled_email_sent(session: AsyncSession, email_id: UUID, now: datetime) -> ScheduledEmail:
    return await transition_from_processing(
        session, email_id, ScheduledEmailStatus.SENT, error=None, updated_at=now,
    )
