"""
Authentication utilities for QuiverCore Billing API

Users sign in with Supabase Auth; the API only verifies the access token
Supabase issues and reads the user id and email from it.
"""
import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import config
from .errors import Forbidden, InternalError, Unauthorized

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: Optional[str] = None
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return bool(self.email) and self.email.lower() in {e.lower() for e in config.ADMIN_EMAILS}


class AuthManager:
    """Centralized verification of Supabase access tokens"""

    def __init__(self):
        self.algorithm = config.JWT_ALGORITHM
        self.audience = config.JWT_AUDIENCE

    def decode_token(self, token: str) -> dict:
        """Decode and validate a Supabase JWT"""
        if not config.SUPABASE_JWT_SECRET:
            raise InternalError(
                "Authentication is not configured: set SUPABASE_JWT_SECRET",
                code="AUTH_NOT_CONFIGURED",
            )
        try:
            return jwt.decode(
                token,
                config.SUPABASE_JWT_SECRET,
                algorithms=[self.algorithm],
                audience=self.audience,
            )
        except JWTError as e:
            logger.warning(f"Rejected access token: {str(e)}")
            raise Unauthorized("Could not validate credentials")

    def get_current_user(self, token: str) -> CurrentUser:
        payload = self.decode_token(token)
        user_id = payload.get("sub")
        if not user_id:
            raise Unauthorized("Could not validate credentials")
        return CurrentUser(id=user_id, email=payload.get("email"), role=payload.get("role"))


# Global auth manager instance
auth_manager = AuthManager()


# Dependency functions for FastAPI
async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> CurrentUser:
    """FastAPI dependency to get current authenticated user"""
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Authentication required")
    return auth_manager.get_current_user(credentials.credentials)


async def get_admin_user(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not current_user.is_admin:
        logger.warning(f"Non-admin user {current_user.id} requested an admin endpoint")
        raise Forbidden("Admin access required")
    return current_user


async def verify_cron_request(request: Request) -> None:
    """
    Shared-secret check for scheduler-invoked job endpoints.

    Required in production; elsewhere it is enforced only when CRON_SECRET
    is set.
    """
    secret = config.CRON_SECRET
    if not secret:
        if config.is_production:
            logger.error("CRON_SECRET is not configured; refusing scheduled job request")
            raise InternalError(
                "Cron endpoint misconfigured: CRON_SECRET is not set",
                code="CRON_NOT_CONFIGURED",
            )
        return

    header = request.headers.get("Authorization", "")
    expected = f"Bearer {secret}"
    if not hmac.compare_digest(header.encode("utf-8"), expected.encode("utf-8")):
        logger.warning(f"Rejected scheduled job request to {request.url.path}")
        raise Unauthorized("Invalid cron credentials")
