from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mailqueue.db.models import ScheduledEmail
from mailqueue.domain.states import ScheduledEmailStatus


async def fetch_due_scheduled_email_ids(session: AsyncSession, now: datetime, limit: int = 10) -> list[UUID]:
    """Pending records whose scheduled_time has passed, oldest first."""
    stmt = (
        select(ScheduledEmail.id)
        .where(
            ScheduledEmail.status == ScheduledEmailStatus.PENDING,
            ScheduledEmail.scheduled_time <= now,
        )
        .order_by(ScheduledEmail.scheduled_time.asc())
        .limit(limit)
    )
    return list((await session.execute(stmt)).scalars().all())


async def claim_scheduled_email(session: AsyncSession, email_id: UUID, now: datetime) -> Optional[ScheduledEmail]:
    """
    Atomically moves a record from PENDING to PROCESSING.

    UPDATE scheduled_emails
       SET status='processing', attempts=attempts+1, last_attempt_at=now
     WHERE id=:id AND status='pending'
    RETURNING *

    Returns None when another scheduler pass got there first.
    """
    stmt = (
        update(ScheduledEmail)
        .where(
            ScheduledEmail.id == email_id,
            ScheduledEmail.status == ScheduledEmailStatus.PENDING,
        )
        .values(
            status=ScheduledEmailStatus.PROCESSING,
            attempts=ScheduledEmail.attempts + 1,
            last_attempt_at=now,
            updated_at=now,
        )
        .returning(ScheduledEmail)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()
