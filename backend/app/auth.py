"""Authentication utilities for Sobek backend.

Two schemes:
- Wallet sessions: a JWT whose subject is the caller's wallet address, sent as
  a bearer token or the ``sobek_auth`` cookie.
- Internal secret: cron jobs and admin tooling send the shared
  ``INTERNAL_API_SECRET`` as a bearer token.
"""

import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import Settings, get_settings
from .logging_config import get_logger

logger = get_logger("sobek.auth")

AUTH_COOKIE_NAME = "sobek_auth"
SESSION_TOKEN_TYPE = "access"

WALLET_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")

# Optional so wallet sessions can fall back to the cookie
bearer_scheme = HTTPBearer(auto_error=False)
BearerCredentials = Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)]
AppSettings = Annotated[Settings, Depends(get_settings)]


def unauthorized(detail: str, challenge: bool = True) -> HTTPException:
    headers = {"WWW-Authenticate": "Bearer"} if challenge else None
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail, headers=headers)


def is_wallet_address(value: str) -> bool:
    """Check for a 0x-prefixed 20-byte hex address."""
    return isinstance(value, str) and bool(WALLET_ADDRESS_PATTERN.match(value))


def create_access_token(
    wallet_address: str,
    settings: Settings,
    expires_delta: timedelta | None = None,
) -> str:
    """Issue a session token for a wallet (after the frontend's sign-in)."""
    issued = datetime.now(timezone.utc)
    lifetime = expires_delta or timedelta(minutes=settings.jwt_expire_minutes)
    claims = {
        "sub": wallet_address,
        "type": SESSION_TOKEN_TYPE,
        "iat": issued,
        "exp": issued + lifetime,
    }
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> dict:
    """Verify signature and expiry. Raises a 401 HTTPException otherwise."""
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise unauthorized("Invalid or expired token")


def wallet_from_claims(claims: dict) -> str:
    wallet = claims.get("sub")
    if claims.get("type") != SESSION_TOKEN_TYPE or not is_wallet_address(wallet):
        raise unauthorized("Invalid token payload")
    return wallet


async def get_current_wallet(
    credentials: BearerCredentials,
    settings: AppSettings,
    request: Request,
) -> str:
    """Wallet address of the signed-in buyer or seller."""
    token = credentials.credentials if credentials else request.cookies.get(AUTH_COOKIE_NAME)
    if not token:
        raise unauthorized("Not authenticated - provide Authorization header or auth cookie")
    return wallet_from_claims(decode_token(token, settings))


async def require_internal_secret(credentials: BearerCredentials, settings: AppSettings) -> bool:
    """Require ``Authorization: Bearer <INTERNAL_API_SECRET>``."""
    expected = settings.internal_api_secret
    if not expected:
        logger.error("INTERNAL_API_SECRET is not configured; rejecting internal request")
        raise unauthorized("Unauthorized", challenge=False)
    presented = credentials.credentials if credentials else ""
    if not secrets.compare_digest(presented.encode(), expected.encode()):
        raise unauthorized("Unauthorized", challenge=False)
    return True


# Type aliases for dependency injection
CurrentWallet = Annotated[str, Depends(get_current_wallet)]
InternalSecret = Annotated[bool, Depends(require_internal_secret)]
