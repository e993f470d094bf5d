import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from app.config import Settings, get_settings

logger = logging.getLogger(__name__)


def verify_api_token(
        x_api_token: Optional[str] = Header(None),
        settings: Settings = Depends(get_settings),
):
    """Shared-secret check on the ``x-api-token`` header; never fails open."""
    if not settings.api_secret_token:
        logger.error("API_SECRET_TOKEN is not defined in environment variables")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal Server Configuration Error",
        )

    if not x_api_token or not hmac.compare_digest(x_api_token.encode(), settings.api_secret_token.encode()):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unauthorized: Invalid or missing token",
        )
