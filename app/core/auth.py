"""
JWT verification for the management API

Tokens are issued by the platform's auth service. This service only verifies
them and reads three claims:

    sub          - user id of the caller
    tenant_id    - tenant the caller acts for
    permissions  - capability strings, e.g. "webhooks:write"

``create_access_token`` exists for tooling and tests.
"""
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

import jwt as pyjwt
from pydantic import BaseModel, Field

from app.core.config import Settings, settings as default_settings
from app.core.logging import get_logger

logger = get_logger(__name__)

PERMISSION_READ = "webhooks:read"
PERMISSION_WRITE = "webhooks:write"
PERMISSION_DELETE = "webhooks:delete"


class TokenPayload(BaseModel):
    """Claims of an access token"""
    sub: str
    tenant_id: str
    permissions: List[str] = Field(default_factory=list)
    exp: int  # Unix timestamp, JWT standard

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions


def create_access_token(
    user_id: str,
    tenant_id: str,
    permissions: Iterable[str],
    settings: Optional[Settings] = None,
    expires_minutes: Optional[int] = None,
) -> str:
    settings = settings or default_settings
    if not settings.JWT_SECRET_KEY:
        raise ValueError("JWT_SECRET_KEY is not set, cannot sign tokens")
    minutes = expires_minutes if expires_minutes is not None else settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    payload = {
        "sub": str(user_id),
        "tenant_id": str(tenant_id),
        "permissions": list(permissions),
        "exp": int(expire.timestamp()),
    }
    return pyjwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str, settings: Optional[Settings] = None) -> Optional[TokenPayload]:
    """Decode and validate a token; None if invalid or expired"""
    settings = settings or default_settings
    if not settings.JWT_SECRET_KEY:
        logger.error("JWT_SECRET_KEY is empty, tokens cannot be verified")
        return None
    try:
        payload = pyjwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
        return TokenPayload(**payload)
    except pyjwt.InvalidTokenError:
        logger.warning("JWT token invalid or expired")
        return None
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("JWT payload malformed", extra_data={"error": str(e)})
        return None
