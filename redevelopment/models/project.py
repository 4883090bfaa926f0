# /redevelopment/models/project.py
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String,
    Text,
    DateTime,
    Integer,
    Numeric,
    Uuid,
    ForeignKey,
    CheckConstraint,
    Index,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from redevelopment.core.clock import utcnow
from redevelopment.core.project_states import ProjectStatus
from redevelopment.db.base import Base
from redevelopment.models.enums import VotingStatus


class RedevelopmentProject(Base):
    __tablename__ = "redevelopment_projects"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    society_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("societies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=ProjectStatus.planning.value
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_budget: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 2), nullable=True)

    # voting window
    voting_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    voting_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=VotingStatus.open.value
    )
    voting_closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    minimum_approval_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=75)

    # set only by the selection coordinator
    selected_proposal_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    selected_developer_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    proposals = relationship(
        "DeveloperProposal",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    member_votes = relationship(
        "MemberVote",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    transitions = relationship(
        "ProjectStatusTransition",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ProjectStatusTransition.created_at",
    )

    __table_args__ = (
        CheckConstraint(
            "minimum_approval_percentage >= 50 AND minimum_approval_percentage <= 100",
            name="ck_projects_min_approval_range",
        ),
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_projects_progress_range"),
        Index("ix_projects_society_status", "society_id", "status"),
    )


class ProjectStatusTransition(Base):
    """
    Append-only history of project status changes.
    actor_id is NULL for system-driven transitions (e.g. voting closure sweep).
    """
    __tablename__ = "project_status_transitions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("redevelopment_projects.id", ondelete="CASCADE"), nullable=False
    )

    from_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    to_status: Mapped[str] = mapped_column(String(32), nullable=False)

    actor_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    project = relationship("RedevelopmentProject", back_populates="transitions")

    __table_args__ = (
        Index("ix_project_transitions_project", "project_id", "created_at"),
    )
