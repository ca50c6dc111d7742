"""
Request-scoped dependencies for the onboarding API.

Authentication is handled upstream; by the time a request reaches this
service the gateway has resolved the tenant, user and role into headers.
"""

import os
import uuid
from typing import Optional

from fastapi import Header, HTTPException, Request

from corpwell.services.bulk_onboarding import BulkOnboardingService

AUTH_MODE = os.getenv("AUTH_MODE", "demo")  # "demo" or "gateway"

# Demo placeholders, used only when AUTH_MODE=demo and the header is absent
DEMO_USER_ID = "00000000-0000-0000-0000-000000000000"
DEMO_ROLE = "hr_admin"

ADMIN_ROLES = ("hr_admin", "super_admin")


def _as_uuid(value) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def get_current_tenant_id(x_tenant_id: Optional[str] = Header(default=None)) -> uuid.UUID:
    if not x_tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-Id header is required")
    try:
        return _as_uuid(x_tenant_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid X-Tenant-Id (must be UUID)")


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> uuid.UUID:
    if not x_user_id and AUTH_MODE != "demo":
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        return _as_uuid(x_user_id or DEMO_USER_ID)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid X-User-Id (must be UUID)")


def get_current_role(x_user_role: Optional[str] = Header(default=None)) -> str:
    if x_user_role:
        return x_user_role
    if AUTH_MODE == "demo":
        return DEMO_ROLE
    raise HTTPException(status_code=401, detail="Not authenticated")


def require_admin(x_user_role: Optional[str] = Header(default=None)) -> str:
    """Require HR admin or super admin role."""
    role = get_current_role(x_user_role)
    if role not in ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Admin access required")
    return role


def get_onboarding_service(request: Request) -> BulkOnboardingService:
    return request.app.state.onboarding
