#!/usr/bin/env python3
"""
Two or more workers racing for the last quota slot against a real database.
Exactly one reservation may succeed.
"""
import asyncio

from sqlalchemy import update

from mailqueue.db.models import EmailQuota
from mailqueue.db.session import AsyncSessionLocal, create_tables
from mailqueue.domain.retry import quota_day_key, utcnow
from mailqueue.services.quota import DatabaseQuotaStore

DAILY_LIMIT = 100
WORKERS = 20


async def verify_quota_race():
    await create_tables()
    store = DatabaseQuotaStore(AsyncSessionLocal, DAILY_LIMIT)

    # 1. Leave exactly one slot for today
    await store.try_acquire(0)
    async with AsyncSessionLocal() as session:
        await session.execute(
            update(EmailQuota)
            .where(EmailQuota.day == quota_day_key(utcnow()))
            .values(sent_count=DAILY_LIMIT - 1, paused=False)
        )
        await session.commit()
    print(f"1. Quota set to {DAILY_LIMIT - 1}/{DAILY_LIMIT}")

    # 2. Race
    print(f"2. {WORKERS} workers reserving one slot each...")
    stores = [DatabaseQuotaStore(AsyncSessionLocal, DAILY_LIMIT) for _ in range(WORKERS)]
    results = await asyncio.gather(*(s.try_acquire(1) for s in stores))

    winners = sum(1 for r in results if r)
    stats = await store.get_stats()
    print(f"3. Winners: {winners}, counter: {stats.current_count}/{stats.daily_limit}")

    if winners == 1 and stats.current_count == DAILY_LIMIT:
        print("SUCCESS: Exactly one worker got the last slot.")
    else:
        print("FAILURE: Quota was not conserved.")


if __name__ == "__main__":
    asyncio.run(verify_quota_race())
