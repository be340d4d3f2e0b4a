"""
Authentication module for JWT session tokens.

Tokens bind a caller to one identity code; the delivery core only ever
sees the validated code.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt
from pydantic import BaseModel

from .config import settings as default_settings, Settings


class TokenData(BaseModel):
    """Token payload data"""
    code: Optional[str] = None


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None,
                        settings: Settings = default_settings) -> str:
    """
    Create a JWT access token.

    Args:
        data: Data to encode in the token
        expires_delta: Token expiration time
        settings: Secret, algorithm and default lifetime

    Returns:
        Encoded JWT token
    """
    to_encode = data.copy()
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)

    to_encode.update({"exp": datetime.now(timezone.utc) + expires_delta})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str, settings: Settings = default_settings) -> Optional[str]:
    """
    Verify a JWT token and extract the identity code.

    Args:
        token: JWT token to verify

    Returns:
        Identity code if valid, None otherwise
    """
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None

    token_data = TokenData(code=payload.get("sub"))
    return token_data.code
