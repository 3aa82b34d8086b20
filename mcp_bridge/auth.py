import logging
import secrets
from typing import Optional

from fastapi import Request
from fastapi.security import HTTPBearer

from .errors import Unauthorized
from .settings import Settings

logger = logging.getLogger(__name__)


class BearerAuth:
    """
    Shared-secret bearer token check, usable as a FastAPI dependency.

    With auth disabled every request passes; that is only ever the result of
    an explicit DISABLE_AUTH=true and is logged when the gateway starts.
    """

    def __init__(self, api_key: Optional[str], *, disabled: bool = False) -> None:
        self._api_key = api_key
        self.disabled = disabled
        # auto_error=False so a missing header reaches us instead of becoming a 403
        self._scheme = HTTPBearer(auto_error=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "BearerAuth":
        settings.check_auth()
        if settings.disable_auth:
            logger.warning("Authentication is DISABLED (DISABLE_AUTH=true); every request to /api/v1 is accepted")
        return cls(settings.api_key, disabled=settings.disable_auth)

    async def authorize(self, request: Request) -> Request:
        if self.disabled:
            return request
        credentials = await self._scheme(request)
        if credentials is None:
            raise Unauthorized("missing bearer token")
        if not self._api_key or not secrets.compare_digest(
            credentials.credentials.encode("utf-8"), self._api_key.encode("utf-8")
        ):
            raise Unauthorized("invalid bearer token")
        return request


async def authorize_request(request: Request) -> None:
    """Dependency for routes that need auth; uses the BearerAuth stored on app.state."""
    await request.app.state.auth.authorize(request)
