"""
verify.py
---------
Purpose:
    JWT verification using Supabase JWKS (ES256).

Notes:
    - Fetches JWKS from Supabase and caches keys.
    - Provides `auth_dependency` for operator routes.
    - Missing or invalid sessions raise `NotAuthenticated`, which the app
      renders as 401 {"error": "Not authenticated"}.
"""

import jwt
from fastapi import Depends, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient

from daily_calls.config import settings
from daily_calls.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SUPABASE_AUDIENCE = "authenticated"

_jwk_client = PyJWKClient(settings.jwks_url())
_security = HTTPBearer(auto_error=False)


class NotAuthenticated(Exception):
    """Request has no valid user session."""

    def __init__(self, reason: str = "missing credentials"):
        super().__init__(reason)
        self.reason = reason


def verify_jwt(token: str) -> dict:
    try:
        signing_key = _jwk_client.get_signing_key_from_jwt(token)
        decoded = jwt.decode(
            token,
            signing_key.key,
            algorithms=["ES256"],  # Supabase uses ES256
            audience=SUPABASE_AUDIENCE,
            options={"verify_exp": True},
        )
        return decoded
    except Exception as e:
        raise NotAuthenticated(f"invalid token: {e}") from e


def auth_dependency(
    credentials: HTTPAuthorizationCredentials | None = Depends(_security),
) -> dict:
    if credentials is None or not credentials.credentials:
        raise NotAuthenticated()
    return verify_jwt(credentials.credentials)


async def not_authenticated_handler(request: Request, exc: NotAuthenticated) -> JSONResponse:
    logger.warning("Unauthenticated request rejected", path=request.url.path, reason=exc.reason)
    return JSONResponse(status_code=401, content={"error": "Not authenticated"})
