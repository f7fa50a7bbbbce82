"""Dependency injection for FastAPI endpoints"""

from typing import Callable, Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from bullion_gateway.domain.exceptions import Unauthorized
from bullion_gateway.domain.models import Principal, Role
from bullion_gateway.infrastructure.clients.notifier import NotificationClient
from bullion_gateway.infrastructure.database.session import SessionLocal


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_principal(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Principal:
    """Caller identity as asserted by the upstream identity provider"""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-ID header")
    try:
        role = Role(x_user_role.lower()) if x_user_role else Role.CUSTOMER
    except ValueError:
        raise HTTPException(status_code=403, detail=f"Unknown role: {x_user_role}")
    return Principal(user_id=x_user_id, role=role)


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_admin:
        raise Unauthorized("Admin access required")
    return principal


def get_notification_client() -> NotificationClient:
    """Provide notification webhook client instance"""
    return NotificationClient()


def get_session_factory() -> Callable[[], Session]:
    """Session factory for work that runs outside the request session (maturity runs)"""
    return SessionLocal
