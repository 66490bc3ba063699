"""
FastAPI dependencies for caller identity.
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError
from uuid import UUID

from app.core.security import decode_token

# HTTP Bearer token scheme (Authorization: Bearer <token>)
security = HTTPBearer()


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> UUID:
    """
    Extract the caller's user id from the bearer JWT.

    Raises:
        HTTPException 401: If the token is invalid or carries no usable subject
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = decode_token(credentials.credentials)
        subject = payload.get("sub")
        if subject is None:
            raise credentials_exception
        return UUID(subject)
    except (JWTError, ValueError):
        raise credentials_exception
