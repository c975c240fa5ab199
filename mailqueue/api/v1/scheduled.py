from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy import select

from mailqueue.api.deps import DbSession
from mailqueue.api.v1.email import SendEmailRequest
from mailqueue.commands.create_scheduled_email import create_scheduled_emails
from mailqueue.db.models import ScheduledEmail
from mailqueue.domain.models import as_utc
from mailqueue.domain.retry import utcnow
from mailqueue.domain.states import ScheduledEmailStatus

router = APIRouter()


class ScheduledEmailCreate(SendEmailRequest):
    scheduled_time: datetime
    per_recipient: bool = True

    @field_validator("scheduled_time")
    @classmethod
    def _normalize_schedule(cls, value: datetime) -> datetime:
        return as_utc(value)


class ScheduledEmailResponse(BaseModel):
    id: UUID
    mail_options: dict[str, Any]
    email_type: str
    status: ScheduledEmailStatus
    scheduled_time: datetime
    expires_at: Optional[datetime] = None
    attempts: int
    last_attempt_at: Optional[datetime] = None
    error: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


@router.post("", response_model=list[ScheduledEmailResponse], status_code=status.HTTP_201_CREATED)
async def create_scheduled_email(payload: ScheduledEmailCreate, session: DbSession):
    if payload.scheduled_time <= utcnow():
        raise HTTPException(status_code=422, detail="Scheduled time must be in the future")

    records = await create_scheduled_emails(
        session,
        payload.mail_options(),
        payload.scheduled_time,
        email_type=payload.email_type,
        expires_at=payload.expires_at,
        per_recipient=payload.per_recipient,
    )
    await session.commit()
    return records


@router.get("", response_model=list[ScheduledEmailResponse])
async def list_scheduled_emails(
    session: DbSession,
    status_filter: Optional[ScheduledEmailStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
):
    stmt = select(ScheduledEmail).order_by(ScheduledEmail.scheduled_time.asc()).limit(limit)
    if status_filter:
        stmt = stmt.where(ScheduledEmail.status == status_filter)
    return (await session.execute(stmt)).scalars().all()


@router.get("/{email_id}", response_model=ScheduledEmailResponse)
async def get_scheduled_email(email_id: UUID, session: DbSession):
    record = await session.get(ScheduledEmail, email_id)
    if not record:
        raise HTTPException(status_code=404, detail="Scheduled email not found")
    return record
