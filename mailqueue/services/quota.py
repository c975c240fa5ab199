import logging
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailqueue.api.v1.metrics import QUOTA_USED
from mailqueue.db.models import EmailQuota
from mailqueue.domain.models import QuotaStats
from mailqueue.domain.retry import next_quota_period_start, quota_day_key, utcnow

logger = logging.getLogger(__name__)


class QuotaStore(Protocol):
    """Cross-process daily send counter and pause flag."""

    async def get_stats(self) -> QuotaStats: ...

    async def can_send(self, count: int = 1) -> bool: ...

    async def try_acquire(self, count: int = 1) -> Optional[str]: ...

    async def release(self, count: int = 1, day: Optional[str] = None) -> None: ...

    async def increment_count(self, count: int = 1) -> int: ...

    async def is_paused(self) -> bool: ...

    async def pause_worker(self) -> None: ...

    async def resume_worker(self) -> None: ...

    def get_next_day_start_time(self) -> datetime: ...


class DatabaseQuotaStore:
    """
    QuotaStore backed by the `email_quota` table.

    Each UTC day owns one row, so the counter and the pause flag reset
    implicitly when the day key changes. Every mutation is a single
    conditional UPDATE, which keeps concurrent workers from racing past the
    limit.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], daily_limit: int):
        self.session_factory = session_factory
        self.daily_limit = daily_limit
        self._ensured_day: Optional[str] = None

    async def _ensure_day(self, day: str) -> None:
        if self._ensured_day == day:
            return

        async with self.session_factory() as session:
            if await session.get(EmailQuota, day) is None:
                session.add(EmailQuota(day=day, sent_count=0, paused=False))
                try:
                    await session.commit()
                    logger.info(f"Email quota period started: {day}")
                except IntegrityError:
                    # Another process created the row first
                    await session.rollback()

        self._ensured_day = day

    async def _read(self, day: str) -> tuple[int, bool]:
        async with self.session_factory() as session:
            row = await session.get(EmailQuota, day)
            if row is None:
                return 0, False
            return row.sent_count, row.paused

    async def get_stats(self) -> QuotaStats:
        count, paused = await self._read(quota_day_key(utcnow()))
        QUOTA_USED.set(count)
        return QuotaStats.compute(count, self.daily_limit, paused)

    async def can_send(self, count: int = 1) -> bool:
        """Advisory check; admission safety comes from try_acquire."""
        current, _ = await self._read(quota_day_key(utcnow()))
        return current + count <= self.daily_limit

    async def try_acquire(self, count: int = 1) -> Optional[str]:
        """
        Atomically reserves `count` sends if they still fit under the limit.

        Returns the day key the slots were taken from, to be handed back to
        release() if the send fails. Returns None, leaving the counter
        untouched, when they do not fit.
        """
        day = quota_day_key(utcnow())
        await self._ensure_day(day)

        stmt = (
            update(EmailQuota)
            .where(
                EmailQuota.day == day,
                EmailQuota.sent_count + count <= self.daily_limit,
            )
            .values(sent_count=EmailQuota.sent_count + count)
            .returning(EmailQuota.sent_count)
        )
        async with self.session_factory() as session:
            new_count = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()

        if new_count is None:
            return None

        QUOTA_USED.set(new_count)
        return day

    async def release(self, count: int = 1, day: Optional[str] = None) -> None:
        """
        Gives back slots reserved by try_acquire for a send that failed.
        `day` is the key try_acquire returned; a reservation made before
        midnight is returned to that day, not to the current one.
        """
        day = day or quota_day_key(utcnow())
        stmt = (
            update(EmailQuota)
            .where(EmailQuota.day == day)
            .values(
                sent_count=case(
                    (EmailQuota.sent_count >= count, EmailQuota.sent_count - count),
                    else_=0,
                )
            )
        )
        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def increment_count(self, count: int = 1) -> int:
        """Unconditional atomic increment; pauses once the limit is reached."""
        day = quota_day_key(utcnow())
        await self._ensure_day(day)

        stmt = (
            update(EmailQuota)
            .where(EmailQuota.day == day)
            .values(sent_count=EmailQuota.sent_count + count)
            .returning(EmailQuota.sent_count)
        )
        async with self.session_factory() as session:
            new_count = (await session.execute(stmt)).scalar_one()
            await session.commit()

        QUOTA_USED.set(new_count)
        if new_count >= self.daily_limit:
            await self.pause_worker()
        return new_count

    async def is_paused(self) -> bool:
        _, paused = await self._read(quota_day_key(utcnow()))
        return paused

    async def _set_paused(self, paused: bool) -> None:
        day = quota_day_key(utcnow())
        await self._ensure_day(day)
        async with self.session_factory() as session:
            await session.execute(
                update(EmailQuota).where(EmailQuota.day == day).values(paused=paused)
            )
            await session.commit()

    async def pause_worker(self) -> None:
        await self._set_paused(True)
        logger.warning("Email delivery paused: daily limit of %s reached", self.daily_limit)

    async def resume_worker(self) -> None:
        await self._set_paused(False)
        logger.info("Email delivery resumed")

    def get_next_day_start_time(self) -> datetime:
        return next_quota_period_start(utcnow())
