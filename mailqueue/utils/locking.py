from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

# Fixed 64-bit key for the scheduled email leader lock.
SCHEDULER_LOCK_KEY = 73652991


async def try_advisory_lock(session: AsyncSession, key: int = SCHEDULER_LOCK_KEY) -> bool:
    """
    Attempts to acquire a Postgres session-level advisory lock.
    Returns True if acquired (or already held by this session), False otherwise.

    The lock belongs to the session's connection; the session must stay open
    (and inside its transaction) for as long as leadership is wanted.
    """
    result = await session.execute(
        text("SELECT pg_try_advisory_lock(:key)"),
        {"key": key}
    )
    return result.scalar() is True


async def release_advisory_locks(session: AsyncSession) -> None:
    # Pooled connections outlive the session, and so would its locks
    await session.execute(text("SELECT pg_advisory_unlock_all()"))
