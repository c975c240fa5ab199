#!/usr/bin/env python3
import asyncio
from datetime import timedelta

from mailqueue.commands.claim_scheduled_email import claim_scheduled_email
from mailqueue.commands.create_scheduled_email import create_scheduled_emails
from mailqueue.db.session import AsyncSessionLocal, create_tables
from mailqueue.domain.models import MailOptions
from mailqueue.domain.retry import utcnow


async def attempt_claim(email_id, now):
    async with AsyncSessionLocal() as session:
        record = await claim_scheduled_email(session, email_id, now)
        await session.commit()
        return record


async def verify_no_double_claim():
    await create_tables()
    now = utcnow()

    # 1. Create 1 due scheduled email
    async with AsyncSessionLocal() as session:
        print("1. Creating 1 due scheduled email...")
        records = await create_scheduled_emails(
            session,
            MailOptions(to=["claim-test@example.com"], subject="Concurrency test", html="<p>hi</p>"),
            now - timedelta(seconds=1),
        )
        await session.commit()
        email_id = records[0].id
        print(f"   Scheduled email created: {email_id}")

    # 2. 20 concurrent scheduler passes try to claim it
    print("2. Spawning 20 concurrent claim attempts...")
    results = await asyncio.gather(*(attempt_claim(email_id, now) for _ in range(20)))

    # 3. Analyze results
    claims = [r for r in results if r is not None]
    print(f"3. Results: {len(claims)} successful claims.")

    if len(claims) == 1:
        print(f"SUCCESS: Exactly one pass claimed the record (attempts={claims[0].attempts}).")
    elif len(claims) == 0:
        print("FAILURE: No one claimed the record (unexpected).")
    else:
        print(f"FAILURE: {len(claims)} passes claimed the record! Double claim detected.")


if __name__ == "__main__":
    asyncio.run(verify_no_double_claim())
