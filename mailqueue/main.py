import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from sqlalchemy.exc import DBAPIError, OperationalError

from mailqueue.api.v1.email import router as email_router
from mailqueue.api.v1.metrics import router as metrics_router
from mailqueue.api.v1.scheduled import router as scheduled_router
from mailqueue.auth.security import require_api_key
from mailqueue.db.session import AsyncSessionLocal, create_tables
from mailqueue.domain.errors import BrokerUnavailableError
from mailqueue.scheduler.service import ScheduledEmailScheduler
from mailqueue.services.broker import QueueTopology
from mailqueue.services.dispatch import DispatchService
from mailqueue.services.quota import DatabaseQuotaStore
from mailqueue.settings import settings

logger = logging.getLogger("uvicorn")


async def bootstrap_database(attempts: int = 10, delay: float = 2.0) -> bool:
    """Creates the tables, waiting for a database that is still starting up."""
    for i in range(attempts):
        try:
            await create_tables()
            return True
        except (OperationalError, DBAPIError, OSError) as e:
            logger.warning(f"Bootstrap: database not ready, retrying in {delay}s... ({i+1}/{attempts}): {e}")
            await asyncio.sleep(delay)
    logger.error("Bootstrap: giving up on table creation")
    return False


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    if settings.AUTO_CREATE_TABLES:
        await bootstrap_database()

    topology = QueueTopology(settings.RABBITMQ_URL)
    quota = DatabaseQuotaStore(AsyncSessionLocal, settings.EMAIL_DAILY_LIMIT)
    dispatch = DispatchService(topology, quota, default_from=settings.EMAIL_FROM)

    app.state.topology = topology
    app.state.quota = quota
    app.state.dispatch = dispatch

    # The broker may come up later; publishing connects on demand
    try:
        await topology.connect()
    except BrokerUnavailableError as e:
        logger.warning(f"RabbitMQ not reachable at startup: {e}")

    scheduler = ScheduledEmailScheduler(dispatch)
    if settings.SCHEDULER_ENABLED:
        await scheduler.start()

    yield

    # Shutdown
    await scheduler.stop()
    await topology.close()


app = FastAPI(
    title=settings.PROJECT_NAME,
    lifespan=lifespan
)

app.include_router(
    email_router, prefix="/api/v1/email", tags=["email"], dependencies=[Depends(require_api_key)]
)
app.include_router(
    scheduled_router,
    prefix="/api/v1/scheduled-emails",
    tags=["scheduled-emails"],
    dependencies=[Depends(require_api_key)],
)
app.include_router(metrics_router, tags=["metrics"])


@app.get("/health")
async def health():
    return {"status": "ok"}
