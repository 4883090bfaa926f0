#redevelopment/models/society.py
from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import String, DateTime, Uuid, UniqueConstraint, Index, ForeignKey, func
from sqlalchemy.orm import Mapped, mapped_column

from redevelopment.core.clock import utcnow
from redevelopment.db.base import Base
from redevelopment.models.enums import MembershipStatus


class Society(Base):
    """
    Housing society. owner_id is the ONE ownership reference used for
    every owner check in the governance workflow.
    """
    __tablename__ = "societies"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    name: Mapped[str] = mapped_column(String(256), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


class SocietyMembership(Base):
    """
    Enrolment of a user in a society. Maintained by the membership module;
    read-only for governance.
    """
    __tablename__ = "society_memberships"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    society_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("societies.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)

    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=MembershipStatus.pending.value,
        doc="active | pending | removed | suspended",
    )

    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("society_id", "user_id", name="uq_society_member"),
        Index("ix_society_members_status", "society_id", "status"),
    )
