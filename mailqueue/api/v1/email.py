from dataclasses import asdict
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator, model_validator

from mailqueue.api.deps import Dispatch, Topology
from mailqueue.domain.errors import BrokerUnavailableError
from mailqueue.domain.models import MailOptions, as_utc
from mailqueue.domain.retry import utcnow
from mailqueue.domain.states import EmailType, ResultCode

router = APIRouter()


class SendEmailRequest(MailOptions):
    email_type: EmailType = EmailType.GENERAL
    expires_at: Optional[datetime] = None

    @field_validator("expires_at")
    @classmethod
    def _normalize_expiry(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @model_validator(mode="after")
    def _require_recipient(self) -> "SendEmailRequest":
        if not (self.to or self.cc or self.bcc):
            raise ValueError("at least one recipient is required")
        return self

    def mail_options(self) -> MailOptions:
        return MailOptions.model_validate(
            self.model_dump(by_alias=True, exclude={"email_type", "expires_at"})
        )


class BulkEmailRequest(BaseModel):
    recipients: list[str] = Field(min_length=1)
    subject: str = Field(min_length=1)
    html: Optional[str] = None
    text: Optional[str] = None
    email_type: EmailType = EmailType.NEWSLETTER
    expires_at: Optional[datetime] = None

    @field_validator("recipients")
    @classmethod
    def _drop_blank(cls, value: list[str]) -> list[str]:
        recipients = [r.strip() for r in value if r and r.strip()]
        if not recipients:
            raise ValueError("at least one recipient is required")
        return recipients

    @field_validator("expires_at")
    @classmethod
    def _normalize_expiry(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @model_validator(mode="after")
    def _require_body(self) -> "BulkEmailRequest":
        if not self.html and not self.text:
            raise ValueError("html or text is required")
        return self

    def html_body(self) -> str:
        # Plain text messages keep their line breaks
        return self.html or self.text.replace("\n", "<br>")


class ScheduleBulkEmailRequest(BulkEmailRequest):
    scheduled_time: datetime

    @field_validator("scheduled_time")
    @classmethod
    def _normalize_schedule(cls, value: datetime) -> datetime:
        return as_utc(value)


def _broker_unavailable(e: BrokerUnavailableError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.get("/stats")
async def get_email_stats(dispatch: Dispatch) -> dict[str, Any]:
    stats = await dispatch.get_usage_stats()
    return {"success": True, "data": asdict(stats)}


@router.get("/limit")
async def check_email_limit(dispatch: Dispatch, count: int = Query(1, ge=1)) -> dict[str, Any]:
    limit = await dispatch.check_limit(count)
    return {"success": True, "data": asdict(limit)}


@router.post("/send", status_code=status.HTTP_202_ACCEPTED)
async def send_email(payload: SendEmailRequest, dispatch: Dispatch) -> dict[str, Any]:
    try:
        result = await dispatch.send_email(
            payload.mail_options(),
            payload.email_type,
            expires_at=payload.expires_at,
        )
    except BrokerUnavailableError as e:
        raise _broker_unavailable(e)

    if result.code == ResultCode.QUEUE_ERROR:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=result.error)

    # LIMIT_EXCEEDED is still accepted: the message waits for the next quota period
    return {"success": result.success, "data": asdict(result)}


@router.post("/bulk", status_code=status.HTTP_202_ACCEPTED)
async def send_bulk_email(payload: BulkEmailRequest, dispatch: Dispatch) -> dict[str, Any]:
    try:
        result = await dispatch.send_bulk_email(
            payload.recipients,
            payload.subject,
            payload.html_body(),
            text=payload.text,
            email_type=payload.email_type,
            expires_at=payload.expires_at,
        )
    except BrokerUnavailableError as e:
        raise _broker_unavailable(e)

    if result.sent == 0 and result.scheduled == 0:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to queue any email")

    if result.scheduled > 0:
        message = f"{result.sent} emails sent, {result.scheduled} scheduled for next day due to daily limit"
    else:
        message = f"{result.sent} emails sent successfully"
    if result.failed:
        message += f" ({result.failed} failed to queue)"

    return {"success": result.success, "message": message, "data": asdict(result)}


@router.post("/schedule", status_code=status.HTTP_202_ACCEPTED)
async def schedule_bulk_email(payload: ScheduleBulkEmailRequest, dispatch: Dispatch) -> dict[str, Any]:
    if payload.scheduled_time <= utcnow():
        raise HTTPException(status_code=422, detail="Scheduled time must be in the future")

    try:
        result = await dispatch.schedule_bulk_email(
            payload.recipients,
            payload.subject,
            payload.html_body(),
            payload.scheduled_time,
            text=payload.text,
            email_type=payload.email_type,
            expires_at=payload.expires_at,
        )
    except BrokerUnavailableError as e:
        raise _broker_unavailable(e)

    if result.scheduled == 0:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to schedule any email")

    message = f"{result.scheduled} emails scheduled for {payload.scheduled_time.isoformat()}"
    return {"success": result.success, "message": message, "data": asdict(result)}


@router.get("/queue")
async def get_queue_stats(topology: Topology) -> dict[str, Any]:
    try:
        stats = await topology.get_queue_stats()
    except BrokerUnavailableError as e:
        raise _broker_unavailable(e)
    return {"success": True, "data": asdict(stats)}
