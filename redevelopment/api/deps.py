from __future__ import annotations

from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from redevelopment.db.session import get_db
from redevelopment.policies.membership import MembershipOracle, SqlMembershipOracle
from redevelopment.services.notifications import LoggingDispatcher, NotificationDispatcher


def get_membership_oracle(db: Session = Depends(get_db)) -> MembershipOracle:
    """
    Default oracle reads society_memberships through the request session.
    Override in tests (app.dependency_overrides) for a fake directory.
    """
    return SqlMembershipOracle(db)


def get_notification_dispatcher(request: Request) -> NotificationDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    return dispatcher or LoggingDispatcher()


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None
