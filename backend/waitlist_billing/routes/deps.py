"""Shared route dependencies: admin gate and error translation."""

from typing import Optional

from fastapi import Header, HTTPException

from waitlist_billing.errors import BillingError, CapacityExceeded

ADMIN_ROLES = ("admin", "super_admin")


def require_admin(x_user_role: Optional[str] = Header(default=None)) -> str:
    """
    Admit callers whose forwarded role claim includes admin or super_admin.

    The identity provider verifies the token upstream and forwards roles in
    X-User-Role (comma-separated).
    """
    roles = [r.strip().lower() for r in (x_user_role or "").split(",") if r.strip()]
    for role in roles:
        if role in ADMIN_ROLES:
            return role
    raise HTTPException(status_code=403, detail="Admin role required")


def http_error(exc: BillingError) -> HTTPException:
    """Translate a service exception into an HTTPException carrying its kind."""
    detail = {"kind": exc.kind, "message": exc.message}
    if isinstance(exc, CapacityExceeded):
        detail.update(
            current_participants=exc.current_participants,
            max_participants=exc.max_participants,
            reserved_participants=exc.reserved_participants,
        )
    return HTTPException(status_code=exc.status_code, detail=detail)
