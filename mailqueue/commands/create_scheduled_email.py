from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from mailqueue.db.models import ScheduledEmail
from mailqueue.domain.models import MailOptions
from mailqueue.domain.states import EmailType, ScheduledEmailStatus


async def create_scheduled_emails(
    session: AsyncSession,
    mail_options: MailOptions,
    scheduled_time: datetime,
    email_type: str = EmailType.GENERAL,
    expires_at: Optional[datetime] = None,
    per_recipient: bool = True,
) -> list[ScheduledEmail]:
    """
    Persists pending ScheduledEmail records.

    With `per_recipient` every `to` address gets its own record (cc/bcc are
    dropped so nobody sees the other recipients); otherwise a single record
    carries the message as given.
    """
    if per_recipient and len(mail_options.to) > 1:
        payloads = [
            mail_options.model_copy(update={"to": [address], "cc": [], "bcc": []})
            for address in mail_options.to
        ]
    else:
        payloads = [mail_options]

    records = [
        ScheduledEmail(
            mail_options=payload.model_dump(mode="json", by_alias=True, exclude_none=True),
            email_type=email_type,
            status=ScheduledEmailStatus.PENDING,
            scheduled_time=scheduled_time,
            expires_at=expires_at,
            attempts=0,
        )
        for payload in payloads
    ]
    session.add_all(records)
    await session.flush()
    return records
