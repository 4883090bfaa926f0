#redevelopment/policies/membership.py
from __future__ import annotations

import uuid
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from redevelopment.models.enums import MembershipStatus
from redevelopment.models.society import SocietyMembership


class MembershipOracle(Protocol):
    """
    Read-only view of society enrolment. Governance never writes memberships.
    """

    def is_active_member(self, society_id: uuid.UUID, user_id: str) -> bool:
        ...

    def count_active_members(self, society_id: uuid.UUID) -> int:
        ...


class SqlMembershipOracle:
    """
    Answers from the society_memberships table through the caller's session.
    Only status == active counts; pending/removed/suspended are ineligible.
    """

    def __init__(self, db: Session):
        self.db = db

    def is_active_member(self, society_id: uuid.UUID, user_id: str) -> bool:
        row = self.db.execute(
            select(SocietyMembership.id).where(
                SocietyMembership.society_id == society_id,
                SocietyMembership.user_id == user_id,
                SocietyMembership.status == MembershipStatus.active.value,
            )
        ).first()
        return row is not None

    def count_active_members(self, society_id: uuid.UUID) -> int:
        return int(
            self.db.execute(
                select(func.count(SocietyMembership.id)).where(
                    SocietyMembership.society_id == society_id,
                    SocietyMembership.status == MembershipStatus.active.value,
                )
            ).scalar_one()
        )
