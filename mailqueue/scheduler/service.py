import asyncio
import logging
from datetime import datetime
from typing import Optional

from croniter import croniter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailqueue.api.v1.metrics import LEADER_STATUS
from mailqueue.db.session import AsyncSessionLocal
from mailqueue.domain.retry import utcnow
from mailqueue.scheduler.ticker import TickResult, process_due_scheduled_emails
from mailqueue.services.dispatch import DispatchService
from mailqueue.settings import settings
from mailqueue.utils.locking import release_advisory_locks, try_advisory_lock

logger = logging.getLogger(__name__)


class ScheduledEmailScheduler:
    """
    Cron-driven loop over persisted ScheduledEmail records.

    Replicas are safe without leader election because every record is
    claimed atomically; `leader_election=True` additionally limits the scans
    to the instance holding the Postgres advisory lock.
    """

    def __init__(
        self,
        dispatch: DispatchService,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        cron: str = settings.SCHEDULER_CRON,
        batch_size: int = settings.SCHEDULER_BATCH_SIZE,
        leader_election: bool = settings.SCHEDULER_LEADER_ELECTION,
    ):
        if not croniter.is_valid(cron):
            raise ValueError(f"Invalid scheduler cron expression: {cron}")

        self.dispatch = dispatch
        self.session_factory = session_factory
        self.cron = cron
        self.batch_size = batch_size
        self.leader_election = leader_election
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()
        self._is_leader = False
        self._leader_session: Optional[AsyncSession] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            logger.info("Scheduled email scheduler already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Scheduled email scheduler started (cron: {self.cron}, batch: {self.batch_size})")

    async def stop(self):
        if not self._running and self._task is None:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self._release_leadership()
        logger.info("Scheduled email scheduler stopped.")

    def seconds_until_next_tick(self, now: Optional[datetime] = None) -> float:
        now = now or utcnow()
        next_tick = croniter(self.cron, now).get_next(datetime)
        return max((next_tick - now).total_seconds(), 0.0)

    async def run_once(self, now: Optional[datetime] = None) -> Optional[TickResult]:
        """Runs one pass unless another one is still in flight on this instance."""
        if self._tick_lock.locked():
            logger.warning("Previous scheduled email pass still running, skipping")
            return None

        async with self._tick_lock:
            if self.leader_election and not await self._ensure_leadership():
                return None

            return await process_due_scheduled_emails(
                self.session_factory,
                self.dispatch,
                batch_size=self.batch_size,
                now=now,
            )

    async def _loop(self):
        while self._running:
            await asyncio.sleep(self.seconds_until_next_tick())
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in scheduled email scheduler: {e}", exc_info=True)

    async def _ensure_leadership(self) -> bool:
        try:
            # Session-level lock: held for as long as this session stays open
            if self._leader_session is None:
                self._leader_session = self.session_factory()
            is_leader = await try_advisory_lock(self._leader_session)
        except Exception as e:
            logger.error(f"Leader election failed: {e}", exc_info=True)
            await self._release_leadership()
            return False

        if is_leader and not self._is_leader:
            logger.info("Acquired leadership. Processing scheduled emails.")
        elif not is_leader and self._is_leader:
            logger.info("Lost leadership. Pausing scheduled emails.")

        self._is_leader = is_leader
        LEADER_STATUS.set(1 if is_leader else 0)
        return is_leader

    async def _release_leadership(self):
        session = self._leader_session
        self._leader_session = None
        self._is_leader = False
        LEADER_STATUS.set(0)
        if session is None:
            return
        try:
            await release_advisory_locks(session)
        except Exception as e:
            logger.warning(f"Could not release leader lock: {e}")
        finally:
            await session.close()
