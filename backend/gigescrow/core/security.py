import hmac
from datetime import datetime, timedelta, timezone

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from gigescrow.core.config import settings
from gigescrow.services.errors import Unauthorized
from gigescrow.services.orchestrator import Caller

# auto_error=False so a missing header surfaces as our own 401 payload
bearer_scheme = HTTPBearer(auto_error=False)

ADMIN_ROLE = "admin"


def create_access_token(
    user_id: str, role: str | None = None, expires_delta: timedelta | None = None
) -> str:
    """Create a JWT access token. Tokens are normally issued by the auth service."""
    to_encode: dict = {"sub": user_id}
    if role:
        to_encode["role"] = role
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=60))
    to_encode["exp"] = expire
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict:
    """Decode and validate a JWT access token."""
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise Unauthorized("Invalid or expired token") from exc


async def get_current_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Caller:
    """FastAPI dependency: the authenticated caller from the Bearer token."""
    if credentials is None:
        raise Unauthorized("Authentication required")
    payload = decode_access_token(credentials.credentials)
    user_id = payload.get("sub")
    if not user_id:
        raise Unauthorized("Token payload missing subject")
    return Caller(user_id=str(user_id), is_admin=payload.get("role") == ADMIN_ROLE)


async def require_internal_token(x_internal_token: str | None = Header(default=None)) -> None:
    """Shared-secret check for payment-processor callbacks."""
    if not x_internal_token or not hmac.compare_digest(x_internal_token, settings.internal_token):
        raise Unauthorized("Invalid internal token")
