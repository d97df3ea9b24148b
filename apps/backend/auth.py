"""Bearer shared-secret checks for webhook, DB hook and internal endpoints."""
import hmac
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from apps.backend.config import get_settings

security = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)


def _check_bearer(credentials: HTTPAuthorizationCredentials | None, expected: str, name: str) -> None:
    if not expected:
        s = get_settings()
        if s.app_env == "production":
            logger.error("%s_not_configured", name)
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Server misconfigured")
        logger.warning("%s_not_set_allowing_in_dev", name)
        return
    token = credentials.credentials if credentials else ""
    if not hmac.compare_digest(token.encode(), expected.encode()):
        logger.warning("%s_unauthorized", name)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def require_webhook_secret(credentials: HTTPAuthorizationCredentials | None = Depends(security)) -> None:
    _check_bearer(credentials, get_settings().webhook_secret, "webhook_secret")


def require_internal_secret(credentials: HTTPAuthorizationCredentials | None = Depends(security)) -> None:
    _check_bearer(credentials, get_settings().internal_api_secret, "internal_api_secret")
