"""
Authentication and authorization utilities.
"""

import hmac
from datetime import UTC, datetime, timedelta
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from jobqueue.config import get_settings

# Security scheme
security = HTTPBearer()


class TokenData(BaseModel):
    """Data extracted from JWT token."""

    client_id: str
    exp: datetime


class AuthenticatedClient(BaseModel):
    """Authenticated operator or service context."""

    client_id: str


def create_access_token(
    client_id: str,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        client_id: The calling service or operator.
        expires_delta: Optional custom expiration time.

    Returns:
        The encoded JWT token.
    """
    settings = get_settings()

    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.api_access_token_expire_minutes)

    now = datetime.now(UTC)
    to_encode = {
        "client_id": client_id,
        "exp": now + expires_delta,
        "iat": now,
    }

    return jwt.encode(
        to_encode,
        settings.api_secret_key,
        algorithm=settings.api_algorithm,
    )


def decode_token(token: str) -> TokenData:
    """
    Decode and validate a JWT token.

    Args:
        token: The JWT token to decode.

    Returns:
        TokenData extracted from the token.

    Raises:
        HTTPException: If token is invalid or expired.
    """
    settings = get_settings()

    try:
        payload = jwt.decode(
            token,
            settings.api_secret_key,
            algorithms=[settings.api_algorithm],
        )
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    client_id = payload.get("client_id")
    if client_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing client_id",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return TokenData(
        client_id=client_id,
        exp=datetime.fromtimestamp(payload["exp"], UTC),
    )


async def get_current_client(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> AuthenticatedClient:
    """
    FastAPI dependency to get the authenticated caller.

    Raises:
        HTTPException: If authentication fails.
    """
    token_data = decode_token(credentials.credentials)
    return AuthenticatedClient(client_id=token_data.client_id)


# Type alias for dependency injection
CurrentClient = Annotated[AuthenticatedClient, Depends(get_current_client)]


def validate_api_key(api_key: str) -> bool:
    """
    Check an API key against the configured admin key.

    Args:
        api_key: The API key to validate.

    Returns:
        True if the API key is valid.
    """
    expected = get_settings().admin_api_key
    return bool(api_key) and hmac.compare_digest(api_key.encode(), expected.encode())
