from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from mailqueue.db.session import get_db_session
from mailqueue.services.broker import QueueTopology
from mailqueue.services.dispatch import DispatchService

# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]


# Pipeline services are built once in the lifespan and kept on app.state
def get_dispatch_service(request: Request) -> DispatchService:
    return request.app.state.dispatch


def get_queue_topology(request: Request) -> QueueTopology:
    return request.app.state.topology


Dispatch = Annotated[DispatchService, Depends(get_dispatch_service)]
Topology = Annotated[QueueTopology, Depends(get_queue_topology)]
