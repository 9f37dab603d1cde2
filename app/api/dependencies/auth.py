"""
FastAPI dependencies for authenticating management API calls

Usage:
    @router.post("/webhooks")
    async def create(
        principal: TokenPayload = Depends(require_permission(PERMISSION_WRITE)),
        db: AsyncSession = Depends(get_db),
    ):
        tenant_id = principal.tenant_id
"""
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.auth import TokenPayload, verify_token
from app.core.logging import get_logger

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_principal(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> TokenPayload:
    """
    Verify the Bearer JWT.

    Raises 401 when the header is missing or the token is invalid/expired.
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token_data = verify_token(credentials.credentials, request.app.state.context.settings)
    if not token_data:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    # Picked up by RequestLoggingMiddleware
    request.state.principal = token_data
    return token_data


def require_permission(permission: str):
    """Dependency factory: authenticated principal holding ``permission``"""

    async def _check(
        principal: TokenPayload = Depends(get_current_principal),
    ) -> TokenPayload:
        if not principal.has_permission(permission):
            logger.warning(
                "Permission denied",
                extra_data={
                    "user_id": principal.sub,
                    "tenant_id": principal.tenant_id,
                    "permission": permission,
                },
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {permission}",
            )
        return principal

    return _check
