from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from mailqueue.domain.errors import InvalidEmailJobError


def _as_address_list(value: Union[str, list[str], None]) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value else []
    return [v for v in value if v]


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MailOptions(BaseModel):
    """
    Caller-facing message description.

    Shared by queued EmailJobs and persisted ScheduledEmail records so both
    delivery tiers carry the same payload shape.
    """
    model_config = ConfigDict(populate_by_name=True)

    to: list[str] = Field(default_factory=list)
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    subject: str
    html: str = ""
    text: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")

    @field_validator("to", "cc", "bcc", mode="before")
    @classmethod
    def _normalize_addresses(cls, value: Any) -> list[str]:
        return _as_address_list(value)

    def recipient_count(self) -> int:
        # Nothing addressed still counts as one send against the quota
        return (len(self.to) + len(self.cc) + len(self.bcc)) or 1


class EmailJob(BaseModel):
    """Unit of work carried by the broker."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    to: list[str]
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    subject: str
    html: str = ""
    text: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")
    email_type: str = "general"
    scheduled_time: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    attempts: int = 0

    @field_validator("to", "cc", "bcc", mode="before")
    @classmethod
    def _normalize_addresses(cls, value: Any) -> list[str]:
        return _as_address_list(value)

    @field_validator("scheduled_time", "expires_at")
    @classmethod
    def _normalize_instant(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @model_validator(mode="after")
    def _require_recipient(self) -> "EmailJob":
        if not (self.to or self.cc or self.bcc):
            raise ValueError("email job has no recipients")
        return self

    @classmethod
    def from_mail_options(
        cls,
        mail_options: MailOptions,
        email_type: str = "general",
        scheduled_time: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        default_from: Optional[str] = None,
    ) -> "EmailJob":
        return cls(
            to=mail_options.to,
            cc=mail_options.cc,
            bcc=mail_options.bcc,
            subject=mail_options.subject,
            html=mail_options.html,
            text=mail_options.text,
            from_=mail_options.from_ or default_from,
            email_type=email_type,
            scheduled_time=scheduled_time,
            expires_at=expires_at,
        )

    @classmethod
    def parse_body(cls, body: bytes) -> "EmailJob":
        try:
            return cls.model_validate_json(body)
        except (ValidationError, ValueError) as e:
            raise InvalidEmailJobError(str(e)) from e

    def to_body(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")

    @property
    def recipient_count(self) -> int:
        return len(self.to) + len(self.cc) + len(self.bcc)

    def with_attempts(self, attempts: int) -> "EmailJob":
        return self.model_copy(update={"attempts": attempts})

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at

    def delay_until_scheduled(self, now: datetime) -> Optional[float]:
        """Seconds until scheduled_time, or None when the job is due."""
        if self.scheduled_time is None:
            return None
        delay = (self.scheduled_time - now).total_seconds()
        return delay if delay > 0 else None


@dataclass
class QuotaStats:
    current_count: int
    daily_limit: int
    remaining: int
    percentage_used: float
    is_paused: bool

    @classmethod
    def compute(cls, current_count: int, daily_limit: int, is_paused: bool) -> "QuotaStats":
        percentage = (current_count / daily_limit) * 100 if daily_limit > 0 else 0.0
        return cls(
            current_count=current_count,
            daily_limit=daily_limit,
            remaining=max(daily_limit - current_count, 0),
            percentage_used=round(percentage, 2),
            is_paused=is_paused,
        )


@dataclass
class LimitCheck:
    can_send: bool
    current_count: int
    daily_limit: int
    remaining: int
    percentage_used: float
    requested_count: int


@dataclass
class QueueResult:
    success: bool
    job_id: str
    error: Optional[str] = None


@dataclass
class SendEmailResult:
    success: bool
    message_id: Optional[str] = None
    recipient_count: Optional[int] = None
    error: Optional[str] = None
    code: Optional[str] = None
    limit_info: Optional[LimitCheck] = None
    scheduled_for: Optional[datetime] = None


@dataclass
class BulkSendResult:
    success: bool
    sent: int
    scheduled: int
    total: int
    failed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class ScheduleResult:
    success: bool
    scheduled: int
    total: int
    failed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class BulkPublishResult:
    published: int = 0
    failed: int = 0
    failed_ids: list[str] = field(default_factory=list)


@dataclass
class QueueStats:
    queue: int
    delay: int
    dlq: int
