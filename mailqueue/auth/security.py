import hmac
import logging
from typing import Optional

from fastapi import HTTPException, Security
from fastapi.security import APIKeyHeader

from mailqueue.settings import settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(api_key: Optional[str] = Security(API_KEY_HEADER)) -> None:
    """
    Guards the pipeline routes with the shared API key.
    Open access when no API_KEY is configured.
    """
    expected = settings.API_KEY
    if not expected:
        return

    if not api_key:
        raise HTTPException(status_code=403, detail="Missing API Key")

    if not hmac.compare_digest(api_key.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected request with invalid API key")
        raise HTTPException(status_code=403, detail="Invalid API Key")
