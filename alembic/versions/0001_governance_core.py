"""governance core: societies, projects, proposals, ballots, outbox, audit

Revision ID: 0001_governance_core
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_governance_core'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


JSON_COLUMN = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    # ── societies (membership module owns writes) ──
    op.create_table(
        "societies",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        _created_at(),
    )
    op.create_index("ix_societies_owner_id", "societies", ["owner_id"])

    op.create_table(
        "society_memberships",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "society_id",
            sa.Uuid(),
            sa.ForeignKey("societies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column(
            "status",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        _created_at("joined_at"),
        sa.UniqueConstraint("society_id", "user_id", name="uq_society_member"),
    )
    op.create_index(
        "ix_society_members_status", "society_memberships", ["society_id", "status"]
    )

    # ── projects ──
    op.create_table(
        "redevelopment_projects",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "society_id",
            sa.Uuid(),
            sa.ForeignKey("societies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column(
            "status",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'planning'"),
        ),
        sa.Column("progress", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("estimated_budget", sa.Numeric(20, 2), nullable=True),
        sa.Column("voting_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "voting_status",
            sa.String(length=16),
            nullable=False,
            server_default=sa.text("'open'"),
        ),
        sa.Column("voting_closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "minimum_approval_percentage",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("75"),
        ),
        sa.Column("selected_proposal_id", sa.Uuid(), nullable=True),
        sa.Column("selected_developer_id", sa.String(length=128), nullable=True),
        _created_at(),
        _created_at("updated_at"),
        sa.CheckConstraint(
            "minimum_approval_percentage >= 50 AND minimum_approval_percentage <= 100",
            name="ck_projects_min_approval_range",
        ),
        sa.CheckConstraint("progress >= 0 AND progress <= 100", name="ck_projects_progress_range"),
    )
    op.create_index("ix_redevelopment_projects_society_id", "redevelopment_projects", ["society_id"])
    op.create_index("ix_redevelopment_projects_owner_id", "redevelopment_projects", ["owner_id"])
    op.create_index("ix_projects_society_status", "redevelopment_projects", ["society_id", "status"])

    op.create_table(
        "project_status_transitions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "project_id",
            sa.Uuid(),
            sa.ForeignKey("redevelopment_projects.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("from_status", sa.String(length=32), nullable=True),
        sa.Column("to_status", sa.String(length=32), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=True),
        sa.Column("reason", sa.String(length=256), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_project_transitions_project",
        "project_status_transitions",
        ["project_id", "created_at"],
    )

    # ── proposals ──
    op.create_table(
        "developer_proposals",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "project_id",
            sa.Uuid(),
            sa.ForeignKey("redevelopment_projects.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("developer_id", sa.String(length=128), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column(
            "status",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'submitted'"),
        ),
        sa.Column("corpus_amount", sa.Numeric(20, 2), nullable=False),
        sa.Column("rent_amount", sa.Numeric(20, 2), nullable=False),
        sa.Column("fsi", sa.Numeric(10, 4), nullable=False),
        sa.Column("timeline", sa.String(length=500), nullable=False, server_default=sa.text("''")),
        sa.Column("proposed_amenities", JSON_COLUMN, nullable=False),
        sa.Column("proposed_timeline", JSON_COLUMN, nullable=False),
        sa.Column("financial_breakdown", JSON_COLUMN, nullable=False),
        sa.Column("developer_info", JSON_COLUMN, nullable=False),
        sa.Column("technical_score", sa.Integer(), nullable=True),
        sa.Column("financial_score", sa.Integer(), nullable=True),
        sa.Column("timeline_score", sa.Integer(), nullable=True),
        sa.Column("overall_score", sa.Integer(), nullable=True),
        sa.Column("evaluated_by", sa.String(length=128), nullable=True),
        sa.Column("evaluated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("evaluation_comments", sa.Text(), nullable=True),
        sa.Column("owner_comments", sa.Text(), nullable=True),
        sa.Column("approved_by", sa.String(length=128), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("rejected_by", sa.String(length=128), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("selected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("withdrawn_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _created_at("updated_at"),
        sa.UniqueConstraint("project_id", "developer_id", name="uq_proposals_project_developer"),
        sa.CheckConstraint("corpus_amount >= 0", name="ck_proposals_corpus_nonneg"),
        sa.CheckConstraint("rent_amount >= 0", name="ck_proposals_rent_nonneg"),
        sa.CheckConstraint("fsi >= 0", name="ck_proposals_fsi_nonneg"),
    )
    op.create_index("ix_proposals_project_status", "developer_proposals", ["project_id", "status"])
    op.create_index("ix_proposals_developer", "developer_proposals", ["developer_id"])

    # ── voting ledger ──
    op.create_table(
        "member_votes",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "project_id",
            sa.Uuid(),
            sa.ForeignKey("redevelopment_projects.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("member_id", sa.String(length=128), nullable=False),
        sa.Column("total_votes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_voted_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.UniqueConstraint("project_id", "member_id", name="uq_member_votes_project_member"),
    )
    op.create_index("ix_member_votes_member", "member_votes", ["member_id"])

    op.create_table(
        "ballots",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "member_vote_id",
            sa.Uuid(),
            sa.ForeignKey("member_votes.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "project_id",
            sa.Uuid(),
            sa.ForeignKey("redevelopment_projects.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("member_id", sa.String(length=128), nullable=False),
        sa.Column(
            "proposal_id",
            sa.Uuid(),
            sa.ForeignKey("developer_proposals.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("proposal_key", sa.String(length=64), nullable=False),
        sa.Column("voting_session", sa.String(length=128), nullable=False),
        sa.Column("vote", sa.Boolean(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        _created_at("voted_at"),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("verified_by", sa.String(length=128), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "project_id",
            "member_id",
            "proposal_key",
            "voting_session",
            name="uq_ballots_member_key_session",
        ),
    )
    op.create_index("ix_ballots_project_session", "ballots", ["project_id", "voting_session"])
    op.create_index("ix_ballots_project_proposal", "ballots", ["project_id", "proposal_id"])

    # ── notifications / audit ──
    op.create_table(
        "notification_outbox",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("recipient_id", sa.String(length=128), nullable=True),
        sa.Column("society_id", sa.Uuid(), nullable=True),
        sa.Column("project_id", sa.Uuid(), nullable=True),
        sa.Column("payload_json", JSON_COLUMN, nullable=False),
        sa.Column(
            "status",
            sa.String(length=16),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        _created_at(),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_outbox_status_created", "notification_outbox", ["status", "created_at"])
    op.create_index("ix_outbox_recipient", "notification_outbox", ["recipient_id"])

    op.create_table(
        "audit_log_records",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _created_at(),
        sa.Column("request_id", sa.String(length=128), nullable=False),
        sa.Column("route", sa.String(length=256), nullable=False),
        sa.Column("method", sa.String(length=16), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column("actor_role", sa.String(length=64), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=True),
        sa.Column("action", sa.String(length=96), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default=sa.text("'ok'")),
        sa.Column("payload_hash", sa.String(length=128), nullable=False),
        sa.Column("payload_summary_json", JSON_COLUMN, nullable=False),
        sa.Column("ref_id", sa.String(length=128), nullable=True),
    )
    op.create_index("ix_audit_log_records_request_id", "audit_log_records", ["request_id"])
    op.create_index("ix_audit_project", "audit_log_records", ["project_id"])
    op.create_index("ix_audit_action", "audit_log_records", ["action"])
    op.create_index("ix_audit_created", "audit_log_records", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_audit_created", table_name="audit_log_records")
    op.drop_index("ix_audit_action", table_name="audit_log_records")
    op.drop_index("ix_audit_project", table_name="audit_log_records")
    op.drop_index("ix_audit_log_records_request_id", table_name="audit_log_records")
    op.drop_table("audit_log_records")

    op.drop_index("ix_outbox_recipient", table_name="notification_outbox")
    op.drop_index("ix_outbox_status_created", table_name="notification_outbox")
    op.drop_table("notification_outbox")

    op.drop_index("ix_ballots_project_proposal", table_name="ballots")
    op.drop_index("ix_ballots_project_session", table_name="ballots")
    op.drop_table("ballots")

    op.drop_index("ix_member_votes_member", table_name="member_votes")
    op.drop_table("member_votes")

    op.drop_index("ix_proposals_developer", table_name="developer_proposals")
    op.drop_index("ix_proposals_project_status", table_name="developer_proposals")
    op.drop_table("developer_proposals")

    op.drop_index("ix_project_transitions_project", table_name="project_status_transitions")
    op.drop_table("project_status_transitions")

    op.drop_index("ix_projects_society_status", table_name="redevelopment_projects")
    op.drop_index("ix_redevelopment_projects_owner_id", table_name="redevelopment_projects")
    op.drop_index("ix_redevelopment_projects_society_id", table_name="redevelopment_projects")
    op.drop_table("redevelopment_projects")

    op.drop_index("ix_society_members_status", table_name="society_memberships")
    op.drop_table("society_memberships")

    op.drop_index("ix_societies_owner_id", table_name="societies")
    op.drop_table("societies")
