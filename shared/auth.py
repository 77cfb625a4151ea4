"""
Identity and authorization collaborators.

Users are authenticated elsewhere and reach this system with a JWT
bearer token carrying their id (``sub``), email and granted permission
codes (``perms``). This module decodes those tokens and exposes the
FastAPI dependencies the services use: ``get_current_user`` and
``require_permission(code)``. The engine itself never looks at roles.
"""

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pydantic import BaseModel
from datetime import datetime, timedelta, timezone
from typing import List, Optional
import html
import os

from shared.errors import ForbiddenError, UnauthorizedError

SECRET_KEY = os.getenv("SECRET_KEY", "your-secret-key-change-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

# Permission codes, each independently grantable.
PERM_CATALOG = "facility:catalog"
PERM_REVIEW = "facility:review"
PERM_BAN = "facility:ban"
PERM_CONFIG = "facility:config"
PERM_ALL = "facility:*"

security = HTTPBearer(auto_error=False)


class CurrentUser(BaseModel):
    """Authenticated caller as seen by this system."""
    id: int
    email: Optional[str] = None
    permissions: List[str] = []


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data (dict): Claims to encode (``sub``, ``email``, ``perms``)
        expires_delta (timedelta, optional): Token expiration time

    Returns:
        str: JWT token

    Example:
        >>> token = create_access_token({"sub": "42", "perms": ["facility:review"]})
        >>> len(token) > 0
        True
    """
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def decode_access_token(token: str) -> Optional[dict]:
    """
    Decode a JWT access token.

    Args:
        token (str): JWT token

    Returns:
        dict: Decoded token data or None if invalid
    """
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        return payload
    except JWTError:
        return None


def user_from_payload(payload: Optional[dict]) -> Optional[CurrentUser]:
    """Build a CurrentUser from token claims, None when the claims are unusable."""
    if not payload:
        return None
    sub = payload.get("sub")
    try:
        user_id = int(sub)
    except (TypeError, ValueError):
        return None
    perms = payload.get("perms") or []
    if not isinstance(perms, list):
        perms = []
    return CurrentUser(id=user_id, email=payload.get("email"), permissions=[str(p) for p in perms])


def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[CurrentUser]:
    """Current user, or None for anonymous callers."""
    if credentials is None:
        return None
    return user_from_payload(decode_access_token(credentials.credentials))


def get_current_user(user: Optional[CurrentUser] = Depends(get_optional_user)) -> CurrentUser:
    """Get current authenticated user from JWT token."""
    if user is None:
        raise UnauthorizedError("Invalid authentication credentials")
    return user


def has_permission(user: CurrentUser, code: str) -> bool:
    """
    Capability check.

    ``facility:*`` grants every facility permission.

    Args:
        user: Caller
        code: Permission code

    Returns:
        bool: Whether the caller holds the permission
    """
    return code in user.permissions or PERM_ALL in user.permissions


def require_permission(code: str):
    """
    Dependency factory requiring a permission.

    Example:
        @app.post("/bans")
        def create_ban(user: CurrentUser = Depends(require_permission(PERM_BAN))):
            ...
    """
    def dependency(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if not has_permission(current_user, code):
            raise ForbiddenError(f"Permission {code} required")
        return current_user
    return dependency


def sanitize_input(input_str: Optional[str]) -> str:
    """
    Sanitize user input to prevent injection attacks.

    Args:
        input_str (str): Input string to sanitize

    Returns:
        str: Sanitized string

    Example:
        >>> sanitize_input("<script>alert('xss')</script>")
        '&lt;script&gt;alert(&#x27;xss&#x27;)&lt;/script&gt;'
    """
    if input_str is None:
        return ""
    return html.escape(str(input_str).strip())


def optional_text(input_str: Optional[str]) -> Optional[str]:
    """Sanitized text, or None when blank."""
    cleaned = sanitize_input(input_str)
    return cleaned or None
