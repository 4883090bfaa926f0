#redevelopment/models/proposal.py
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    String,
    Text,
    DateTime,
    Integer,
    Numeric,
    Uuid,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from redevelopment.core.clock import utcnow
from redevelopment.db.base import Base
from redevelopment.db.types import JSONDict
from redevelopment.models.enums import ProposalStatus


class DeveloperProposal(Base):
    """
    One developer's offer for one redevelopment project.

    (project_id, developer_id) is unique: a withdrawn proposal is revived in
    place rather than duplicated.
    """
    __tablename__ = "developer_proposals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("redevelopment_projects.id", ondelete="CASCADE"), nullable=False
    )
    developer_id: Mapped[str] = mapped_column(String(128), nullable=False)

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=ProposalStatus.submitted.value
    )

    # financial terms (opaque to governance)
    corpus_amount: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    rent_amount: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    fsi: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)
    timeline: Mapped[str] = mapped_column(String(500), nullable=False, default="")

    # free-form blobs, never interpreted here
    proposed_amenities: Mapped[List[Any]] = mapped_column(JSONDict, nullable=False, default=list)
    proposed_timeline: Mapped[Dict[str, Any]] = mapped_column(JSONDict, nullable=False, default=dict)
    financial_breakdown: Mapped[Dict[str, Any]] = mapped_column(JSONDict, nullable=False, default=dict)
    developer_info: Mapped[Dict[str, Any]] = mapped_column(JSONDict, nullable=False, default=dict)

    # evaluation
    technical_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    financial_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    timeline_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    overall_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    evaluated_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    evaluated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    evaluation_comments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # owner decisions
    owner_comments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    approved_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejected_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    selected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    withdrawn_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    project = relationship("RedevelopmentProject", back_populates="proposals")

    __table_args__ = (
        UniqueConstraint("project_id", "developer_id", name="uq_proposals_project_developer"),
        CheckConstraint("corpus_amount >= 0", name="ck_proposals_corpus_nonneg"),
        CheckConstraint("rent_amount >= 0", name="ck_proposals_rent_nonneg"),
        CheckConstraint("fsi >= 0", name="ck_proposals_fsi_nonneg"),
        Index("ix_proposals_project_status", "project_id", "status"),
        Index("ix_proposals_developer", "developer_id"),
    )
