"""
SSO Hub Notifier - Gateway Identity.

The upstream gateway authenticates callers and forwards their identity in
request headers; this module turns those headers into an AuthenticatedUser
dependency and rejects requests that arrive without them.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from fastapi import Header, HTTPException, status
import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AuthenticatedUser:
    """Caller identity supplied by the gateway."""
    user_id: str
    email: str
    roles: list[str] = field(default_factory=list)

    def has_role(self, role: str) -> bool:
        return role in self.roles


async def get_current_user(
    x_user_sub: str | None = Header(default=None),
    x_user_email: str | None = Header(default=None),
    x_user_roles: str | None = Header(default=None),
) -> AuthenticatedUser:
    """Require gateway identity headers."""
    if not x_user_sub or not x_user_email:
        logger.warning("identity_headers_missing", has_sub=bool(x_user_sub), has_email=bool(x_user_email))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    roles = [r.strip() for r in (x_user_roles or "").split(",") if r.strip()]
    return AuthenticatedUser(user_id=x_user_sub, email=x_user_email, roles=roles)
