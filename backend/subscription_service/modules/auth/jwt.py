"""JWT bearer authentication for the payments API.

Tokens are issued by the identity service that owns login; this module only
issues tokens for tooling and tests, and validates them on requests.
"""

import uuid
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_service.core.config import settings
from subscription_service.core.database import get_session
from subscription_service.modules.subscription.models import Account, UserRole
from subscription_service.modules.subscription.repository import AccountRepository


class TokenPayload(BaseModel):
    """JWT token payload structure."""

    sub: str  # Account ID
    exp: datetime
    iat: datetime
    type: str


def create_access_token(
    user_id: uuid.UUID,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a signed access token for ``user_id``."""
    now = datetime.utcnow()
    expire = now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    payload = {
        "sub": str(user_id),
        "exp": expire,
        "iat": now,
        "type": "access",
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[TokenPayload]:
    """Decode and validate an access token.

    Returns:
        The payload, or None if the token is malformed, expired or not an
        access token
    """
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
        decoded = TokenPayload(
            sub=payload["sub"],
            exp=datetime.utcfromtimestamp(payload["exp"]),
            iat=datetime.utcfromtimestamp(payload["iat"]),
            type=payload.get("type", ""),
        )
    except (JWTError, KeyError, TypeError, ValueError):
        return None

    if decoded.type != "access":
        return None
    return decoded


security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    session: AsyncSession = Depends(get_session),
) -> Account:
    """FastAPI dependency resolving the bearer token to an account.

    Raises:
        HTTPException: 401 if the token is missing, invalid or unknown
    """
    if credentials is None:
        raise _unauthorized("Not authenticated")

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise _unauthorized("Invalid or expired token")

    try:
        user_id = uuid.UUID(payload.sub)
    except ValueError:
        raise _unauthorized("Invalid or expired token") from None

    account = await AccountRepository(session).find_user_by_id(user_id)
    if account is None:
        raise _unauthorized("User not found")
    return account


async def require_admin(current_user: Account = Depends(get_current_user)) -> Account:
    """FastAPI dependency admitting only admin accounts."""
    if current_user.role != UserRole.ADMIN.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return current_user
