from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from mailqueue.commands.claim_scheduled_email import claim_scheduled_email, fetch_due_scheduled_email_ids
from mailqueue.commands.complete_scheduled_email import mark_scheduled_email_sent
from mailqueue.commands.create_scheduled_email import create_scheduled_emails
from mailqueue.commands.fail_scheduled_email import fail_scheduled_email
from mailqueue.commands.requeue_stale import requeue_stale_scheduled_emails
from mailqueue.db.models import ScheduledEmail
from mailqueue.domain.errors import InvalidScheduledEmailStateError, ScheduledEmailNotFoundError
from mailqueue.domain.models import MailOptions
from mailqueue.domain.retry import RetryPolicy
from mailqueue.domain.states import ScheduledEmailStatus

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
POLICY = RetryPolicy(max_attempts=5, base_delay_seconds=60, max_delay_seconds=3600, exponential=True)


async def create(session_factory, scheduled_time=NOW - timedelta(minutes=1), **kwargs):
    options = kwargs.pop("mail_options", MailOptions(to="a@example.com", subject="Hi", html="<p>x</p>"))
    async with session_factory() as session:
        records = await create_scheduled_emails(session, options, scheduled_time, **kwargs)
        await session.commit()
    return records


async def load(session_factory, email_id) -> ScheduledEmail:
    async with session_factory() as session:
        return await session.get(ScheduledEmail, email_id)


async def test_create_splits_per_recipient(session_factory):
    options = MailOptions.model_validate({
        "to": ["a@example.com", "b@example.com"],
        "cc": "c@example.com",
        "subject": "Hi",
        "from": "me@example.com",
    })

    records = await create(session_factory, mail_options=options, email_type="newsletter")

    assert len(records) == 2
    stored = await load(session_factory, records[1].id)
    assert stored.status == ScheduledEmailStatus.PENDING
    assert stored.attempts == 0
    assert stored.email_type == "newsletter"
    assert stored.mail_options["to"] == ["b@example.com"]
    assert stored.mail_options["cc"] == []
    assert stored.mail_options["from"] == "me@example.com"
    assert stored.scheduled_time == NOW - timedelta(minutes=1)


async def test_create_single_record_keeps_all_recipients(session_factory):
    options = MailOptions(to=["a@example.com", "b@example.com"], cc="c@example.com", subject="Hi")

    records = await create(session_factory, mail_options=options, per_recipient=False)

    assert len(records) == 1
    assert records[0].mail_options["cc"] == ["c@example.com"]


async def test_fetch_due_orders_oldest_first_and_limits(session_factory):
    late = await create(session_factory, scheduled_time=NOW - timedelta(minutes=1))
    early = await create(session_factory, scheduled_time=NOW - timedelta(minutes=10))
    await create(session_factory, scheduled_time=NOW + timedelta(minutes=10))

    async with session_factory() as session:
        assert await fetch_due_scheduled_email_ids(session, NOW) == [early[0].id, late[0].id]
        assert await fetch_due_scheduled_email_ids(session, NOW, limit=1) == [early[0].id]


async def test_claim_is_exclusive(session_factory):
    [record] = await create(session_factory)

    async with session_factory() as session:
        claimed = await claim_scheduled_email(session, record.id, NOW)
        await session.commit()
    assert claimed.status == ScheduledEmailStatus.PROCESSING
    assert claimed.attempts == 1
    assert claimed.last_attempt_at == NOW

    async with session_factory() as session:
        assert await claim_scheduled_email(session, record.id, NOW) is None
        # Claimed records are no longer due
        assert await fetch_due_scheduled_email_ids(session, NOW) == []


async def test_mark_sent_requires_processing(session_factory):
    [record] = await create(session_factory)

    async with session_factory() as session:
        with pytest.raises(InvalidScheduledEmailStateError):
            await mark_scheduled_email_sent(session, record.id, NOW)

    async with session_factory() as session:
        with pytest.raises(ScheduledEmailNotFoundError):
            await mark_scheduled_email_sent(session, uuid4(), NOW)

    async with session_factory() as session:
        await claim_scheduled_email(session, record.id, NOW)
        sent = await mark_scheduled_email_sent(session, record.id, NOW)
        await session.commit()
    assert sent.status == ScheduledEmailStatus.SENT


async def test_fail_backs_off_then_gives_up(session_factory):
    [record] = await create(session_factory)

    async with session_factory() as session:
        claimed = await claim_scheduled_email(session, record.id, NOW)
        retried = await fail_scheduled_email(session, record.id, claimed.attempts, "boom", NOW, POLICY)
        await session.commit()
    assert retried.status == ScheduledEmailStatus.PENDING
    assert retried.scheduled_time == NOW + timedelta(minutes=2)
    assert retried.error == "boom"

    async with session_factory() as session:
        await claim_scheduled_email(session, record.id, NOW)
        failed = await fail_scheduled_email(session, record.id, 5, "boom", NOW, POLICY)
        await session.commit()
    assert failed.status == ScheduledEmailStatus.FAILED


async def test_stale_claims_are_recovered(session_factory):
    [fresh] = await create(session_factory)
    [stale] = await create(session_factory)
    [spent] = await create(session_factory)

    async with session_factory() as session:
        await claim_scheduled_email(session, fresh.id, NOW)
        await claim_scheduled_email(session, stale.id, NOW - timedelta(hours=1))
        await claim_scheduled_email(session, spent.id, NOW - timedelta(hours=1))
        await session.execute(
            ScheduledEmail.__table__.update().where(ScheduledEmail.id == spent.id).values(attempts=5)
        )
        await session.commit()

    async with session_factory() as session:
        recovered = await requeue_stale_scheduled_emails(session, NOW, stale_after_seconds=900, policy=POLICY)
        await session.commit()

    assert recovered == 1
    assert (await load(session_factory, fresh.id)).status == ScheduledEmailStatus.PROCESSING
    recovered_record = await load(session_factory, stale.id)
    assert recovered_record.status == ScheduledEmailStatus.PENDING
    assert recovered_record.error == "Claim abandoned"
    assert (await load(session_factory, spent.id)).status == ScheduledEmailStatus.FAILED
