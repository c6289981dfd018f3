from typing import Annotated, Optional
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.core.security import Principal, principal_from_token
from app.services.razorpay_gateway import RazorpayGateway, get_gateway


logger = logging.getLogger(__name__)

# HTTP Bearer security scheme
security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Principal:
    """
    Dependency to get the current authenticated principal.
    Validates the JWT and returns {user_id, role}; no user lookup is done.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        raise credentials_exception

    principal = principal_from_token(credentials.credentials)
    if principal is None:
        logger.warning("Token verification failed - invalid or expired token")
        raise credentials_exception

    return principal


async def get_optional_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Optional[Principal]:
    """Principal when a valid token is sent, None otherwise."""
    if credentials is None:
        return None
    return principal_from_token(credentials.credentials)


async def require_admin(
    principal: Annotated[Principal, Depends(get_current_user)],
) -> Principal:
    if not principal.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return principal


def get_payment_gateway() -> RazorpayGateway:
    """Gateway dependency; overridden with a fake in tests."""
    return get_gateway()


# Type aliases for cleaner endpoint signatures
CurrentUser = Annotated[Principal, Depends(get_current_user)]
OptionalUser = Annotated[Optional[Principal], Depends(get_optional_user)]
AdminUser = Annotated[Principal, Depends(require_admin)]
DB = Annotated[AsyncSession, Depends(get_db)]
Gateway = Annotated[RazorpayGateway, Depends(get_payment_gateway)]
