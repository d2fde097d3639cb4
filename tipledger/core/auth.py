"""Service tokens for the HTTP adapter.

The chat bot and the admin console each hold a JWT; the bot acts on behalf
of the platform users named in request bodies, so there is no per-user
login here.
"""

from datetime import datetime, timedelta, timezone

from fastapi import Header, HTTPException, status
from jose import JWTError, jwt

from tipledger.config import settings

ROLES = ("service", "admin")


class UnauthorizedError(HTTPException):
    def __init__(self, detail: str = "Invalid or missing authentication"):
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


class ForbiddenError(HTTPException):
    def __init__(self, detail: str = "Admin role required"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def create_access_token(client_id: str, role: str = "service") -> str:
    """Create a JWT for a calling service (chat bot, admin console)."""
    if role not in ROLES:
        raise ValueError(f"Unknown role '{role}'")
    expire = datetime.now(timezone.utc) + timedelta(hours=settings.jwt_expire_hours)
    payload = {
        "sub": client_id,
        "role": role,
        "exp": expire,
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT token. Returns the payload."""
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise UnauthorizedError("Invalid or expired token")
    if payload.get("sub") is None:
        raise UnauthorizedError("Token missing subject")
    if payload.get("role") not in ROLES:
        raise UnauthorizedError("Token has no usable role")
    return payload


def get_current_client(authorization: str = Header(None)) -> dict:
    """FastAPI dependency that returns the caller's token payload."""
    if not authorization:
        raise UnauthorizedError("Missing Authorization header")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise UnauthorizedError("Authorization header must be: Bearer <token>")

    return decode_token(parts[1])


def require_admin(authorization: str = Header(None)) -> dict:
    """FastAPI dependency for reversal and reference-data routes."""
    payload = get_current_client(authorization)
    if payload["role"] != "admin":
        raise ForbiddenError()
    return payload
