"""
Authentication module for JWT token management.

Provides token creation and verification for the REST API and the
realtime WebSocket.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import Header, HTTPException
from jose import JWTError, jwt
from pydantic import BaseModel

from .config import settings


class Token(BaseModel):
    """Token response model"""
    access_token: str
    token_type: str
    username: str


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data: Data to encode in the token
        expires_delta: Token expiration time

    Returns:
        Encoded JWT token
    """
    to_encode = data.copy()
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)
    to_encode.update({"exp": datetime.now(timezone.utc) + expires_delta})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def verify_token(token: Optional[str]) -> Optional[str]:
    """
    Verify a JWT token and extract username.

    Returns:
        Username if valid, None otherwise
    """
    if not token:
        return None
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
    return payload.get("sub")


def issue_token(username: str) -> Token:
    return Token(
        access_token=create_access_token({"sub": username}),
        token_type="bearer",
        username=username
    )


async def current_user(authorization: Optional[str] = Header(default=None)) -> str:
    """FastAPI dependency resolving the bearer token to a username"""
    scheme, _, token = (authorization or "").partition(" ")
    username = verify_token(token) if scheme.lower() == "bearer" else None
    if not username:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return username
