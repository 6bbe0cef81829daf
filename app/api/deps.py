import logging
import secrets

from fastapi import Header, HTTPException

from app.config import settings
from app.db import get_db

logger = logging.getLogger(__name__)

ANONYMOUS_USER = "anonymous"
UNAUTHORISED_MESSAGE = "Unauthorised."


def get_current_user(x_user_id: str | None = Header(default=None, alias="X-User-ID")) -> str:
    """Identify the caller for per-user records such as saved filters.

    Returns the ``X-User-ID`` header, or ``anonymous`` when absent.
    """
    user = (x_user_id or "").strip()
    return user or ANONYMOUS_USER


def verify_external_secret(provided: str | None) -> None:
    expected = settings.external_api_secret
    if not provided or not expected:
        raise HTTPException(status_code=401, detail=UNAUTHORISED_MESSAGE)
    if not secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected external request with a mismatched secret")
        raise HTTPException(status_code=401, detail=UNAUTHORISED_MESSAGE)


__all__ = [
    "get_db",
    "get_current_user",
    "verify_external_secret",
]
