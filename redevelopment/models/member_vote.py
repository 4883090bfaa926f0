#redevelopment/models/member_vote.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    Text,
    DateTime,
    Integer,
    Boolean,
    Uuid,
    ForeignKey,
    UniqueConstraint,
    Index,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from redevelopment.core.clock import utcnow
from redevelopment.db.base import Base

# proposal_key used for ballots about the project as a whole
GENERAL_BALLOT_KEY = "project"


class MemberVote(Base):
    """
    Ledger entry: one per (project, member).
    Ballots hang off it append-only; total_votes / last_voted_at are
    maintained with atomic increments.
    """
    __tablename__ = "member_votes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("redevelopment_projects.id", ondelete="CASCADE"), nullable=False
    )
    member_id: Mapped[str] = mapped_column(String(128), nullable=False)

    total_votes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_voted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    project = relationship("RedevelopmentProject", back_populates="member_votes")

    ballots = relationship(
        "Ballot",
        back_populates="ledger_entry",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Ballot.voted_at",
    )

    __table_args__ = (
        UniqueConstraint("project_id", "member_id", name="uq_member_votes_project_member"),
        Index("ix_member_votes_member", "member_id"),
    )


class Ballot(Base):
    """
    One member's vote for one (project, proposal-or-project, session) key.

    vote: True = yes, False = no, NULL = abstain.
    The unique constraint is the deduplication guarantee; inserts go through
    ON CONFLICT DO NOTHING so two racing requests cannot both land.
    """
    __tablename__ = "ballots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    member_vote_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("member_votes.id", ondelete="CASCADE"), nullable=False
    )

    # denormalized for aggregation without a join
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("redevelopment_projects.id", ondelete="CASCADE"), nullable=False
    )
    member_id: Mapped[str] = mapped_column(String(128), nullable=False)

    proposal_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("developer_proposals.id", ondelete="CASCADE"), nullable=True
    )
    proposal_key: Mapped[str] = mapped_column(String(64), nullable=False)
    voting_session: Mapped[str] = mapped_column(String(128), nullable=False)

    vote: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # audit
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    voted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )

    # owner-only verification
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verified_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    ledger_entry = relationship("MemberVote", back_populates="ballots")

    __table_args__ = (
        UniqueConstraint(
            "project_id",
            "member_id",
            "proposal_key",
            "voting_session",
            name="uq_ballots_member_key_session",
        ),
        Index("ix_ballots_project_session", "project_id", "voting_session"),
        Index("ix_ballots_project_proposal", "project_id", "proposal_id"),
    )
