"""Organization-scoped request context for API routes.

With `AUTH_ENABLED=false` the organization, user and role come from the
`X-Org-ID`, `X-User-ID` and `X-Actor-Role` headers. With auth enabled a bearer
token from `ORG_TOKENS` fixes the organization, and optionally the user and
role, so the headers can only narrow what the token already grants.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from dispatch_copilot.core.config import get_settings
from dispatch_copilot.core.logging import logger


security = HTTPBearer(auto_error=False)


class DispatchRole(str, Enum):
    DISPATCHER = "dispatcher"
    # Read-only access to truck positions; cannot drive the assistant.
    FLEET_VIEWER = "fleet_viewer"
    ADMIN = "admin"


ASSISTANT_ROLES = (DispatchRole.DISPATCHER, DispatchRole.ADMIN)
FLEET_ROLES = (DispatchRole.DISPATCHER, DispatchRole.FLEET_VIEWER, DispatchRole.ADMIN)


@dataclass
class TokenGrant:
    org_id: str
    user_id: Optional[str] = None
    role: Optional[DispatchRole] = None


@dataclass
class OrgContext:
    org_id: str
    user_id: str
    role: DispatchRole
    authenticated: bool
    # False when the user id was taken from the X-User-ID header rather than the token.
    user_verified: bool = False


def _parse_role(value: Optional[str]) -> Optional[DispatchRole]:
    role = (value or "").strip().lower()
    if not role:
        return None
    try:
        return DispatchRole(role)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported role '{value}'. Expected one of: {sorted(item.value for item in DispatchRole)}",
        )


def parse_token_grants(raw: str) -> Dict[str, TokenGrant]:
    """Parse comma-separated `token:org[:user[:role]]` entries from env."""
    grants: Dict[str, TokenGrant] = {}
    for segment in (raw or "").split(","):
        item = segment.strip()
        if not item:
            continue
        parts = [part.strip() for part in item.split(":")]
        if len(parts) < 2 or len(parts) > 4 or not parts[0] or not parts[1]:
            logger.warning("Ignoring malformed org token entry", entry=item[:8] + "...")
            continue
        role = None
        if len(parts) == 4 and parts[3]:
            try:
                role = DispatchRole(parts[3].lower())
            except ValueError:
                logger.warning("Ignoring org token entry with unknown role", role=parts[3])
                continue
        user_id = parts[2] if len(parts) >= 3 and parts[2] else None
        grants[parts[0]] = TokenGrant(org_id=parts[1], user_id=user_id, role=role)
    return grants


def get_org_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_org_id: str | None = Header(default=None, alias="X-Org-ID"),
    x_user_id: str | None = Header(default=None, alias="X-User-ID"),
    x_actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
) -> OrgContext:
    settings = get_settings()
    header_org = (x_org_id or "").strip()
    header_user = (x_user_id or "").strip()
    header_role = _parse_role(x_actor_role)

    if not settings.auth_enabled:
        return OrgContext(
            org_id=header_org or (settings.default_org_id or "").strip() or "demo-org",
            user_id=header_user or "anonymous",
            role=header_role or DispatchRole.DISPATCHER,
            authenticated=False,
        )

    if not credentials or not credentials.credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Bearer token required")

    grant = parse_token_grants(settings.org_tokens).get(credentials.credentials.strip())
    if grant is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid bearer token")
    if header_org and header_org != grant.org_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token organization mismatch")
    if grant.user_id and header_user and header_user != grant.user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token user mismatch")
    if grant.role and header_role and header_role != grant.role:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token role mismatch")

    return OrgContext(
        org_id=grant.org_id,
        user_id=grant.user_id or header_user or "anonymous",
        role=grant.role or header_role or DispatchRole.DISPATCHER,
        authenticated=True,
        user_verified=grant.user_id is not None,
    )


def require_roles(*allowed_roles: DispatchRole):
    """Dependency factory that admits only the given roles."""
    allowed = set(allowed_roles)
    if not allowed:
        raise ValueError("At least one role is required")

    def _guard(context: OrgContext = Depends(get_org_context)) -> OrgContext:
        if context.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{context.role.value}' not permitted for this operation",
            )
        return context

    return _guard
