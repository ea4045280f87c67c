import uuid

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from poflow.database import get_db
from poflow.models.user import User
from poflow.services.auth_service import verify_access_token

logger = structlog.get_logger()

security = HTTPBearer(auto_error=False)


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "error": {
                "code": "AUTH_TOKEN_INVALID",
                "message": "Invalid or expired token",
            }
        },
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """
    FastAPI dependency: verify the bearer JWT, then load the user row.

    Role and organization come from the database, never from token claims,
    so a role change takes effect on the next request.
    """
    if credentials is None:
        raise _unauthorized()
    try:
        payload = verify_access_token(credentials.credentials)
        user_id = uuid.UUID(payload["sub"])
    except (JWTError, ValueError) as e:
        logger.warning("auth_token_invalid", error=str(e))
        raise _unauthorized()

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user or not user.is_active or not user.organization_id:
        logger.warning("auth_user_not_in_organization", user_id=str(user_id))
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": {
                    "code": "USER_NOT_IN_ORGANIZATION",
                    "message": "User not found or not part of an organization",
                }
            },
        )

    structlog.contextvars.bind_contextvars(
        user_id=str(user.id), organization_id=str(user.organization_id)
    )
    return {
        "user_id": str(user.id),
        "organization_id": str(user.organization_id),
        "role": user.role,
        "email": user.email,
        "name": user.name,
    }
