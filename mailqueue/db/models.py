from datetime import datetime, timezone
from typing import Optional, Any
from uuid import UUID, uuid4

from sqlalchemy import Boolean, DateTime, Index, Integer, JSON, String, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from mailqueue.db.session import Base
from mailqueue.domain.states import ScheduledEmailStatus

class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes, also on backends that store naive values."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

JSONType = JSON().with_variant(JSONB(), "postgresql")

class ScheduledEmail(Base):
    __tablename__ = "scheduled_emails"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # MailOptions payload (to/cc/bcc/subject/html/text/from)
    mail_options: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    email_type: Mapped[str] = mapped_column(String, default="general", nullable=False)

    status: Mapped[ScheduledEmailStatus] = mapped_column(String, default=ScheduledEmailStatus.PENDING, index=True)
    scheduled_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True, index=True)

    # Retry bookkeeping
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        # "pending and due" scan: status=pending + scheduled_time <= now, oldest first
        Index("ix_scheduled_emails_due", "status", "scheduled_time"),
    )

class EmailQuota(Base):
    """One row per UTC day; a new day starts from zero and unpaused."""
    __tablename__ = "email_quota"

    day: Mapped[str] = mapped_column(String(10), primary_key=True)
    sent_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    paused: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now(), onupdate=func.now())
