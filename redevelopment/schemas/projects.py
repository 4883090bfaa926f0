#redevelopment/schemas/projects.py
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from redevelopment.core.clock import iso
from redevelopment.models.project import ProjectStatusTransition, RedevelopmentProject
from redevelopment.schemas.primitives import ApprovalPercentage, Money, Progress


# -----------------------
# Requests
# -----------------------

class ProjectCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    societyId: uuid.UUID
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=10000)
    estimatedBudget: Optional[Money] = None
    minimumApprovalPercentage: Optional[ApprovalPercentage] = None


class ProjectUpdateRequest(BaseModel):
    """
    Descriptive fields only. status is not accepted here (extra="forbid");
    it moves exclusively through the lifecycle endpoints.
    """
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=10000)
    estimatedBudget: Optional[Money] = None
    progress: Optional[Progress] = None
    minimumApprovalPercentage: Optional[ApprovalPercentage] = None


class VotingOpenRequest(BaseModel):
    votingDeadline: datetime
    minimumApprovalPercentage: Optional[ApprovalPercentage] = None


class ProjectCancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=256)


# -----------------------
# Responses
# -----------------------

class ProjectResponse(BaseModel):
    id: str
    societyId: str
    ownerId: str
    title: str
    description: str
    status: str
    progress: int
    estimatedBudget: Optional[Decimal] = None
    votingDeadline: Optional[str] = None
    votingStatus: str
    votingClosedAt: Optional[str] = None
    minimumApprovalPercentage: int
    selectedProposalId: Optional[str] = None
    selectedDeveloperId: Optional[str] = None
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None


class ProjectListResponse(BaseModel):
    societyId: str
    projects: List[ProjectResponse]


class TransitionResponse(BaseModel):
    fromStatus: Optional[str] = None
    toStatus: str
    actorId: Optional[str] = None
    reason: Optional[str] = None
    createdAt: Optional[str] = None


class ProjectHistoryResponse(BaseModel):
    projectId: str
    transitions: List[TransitionResponse]


def project_to_schema(p: RedevelopmentProject) -> ProjectResponse:
    return ProjectResponse(
        id=str(p.id),
        societyId=str(p.society_id),
        ownerId=p.owner_id,
        title=p.title,
        description=p.description or "",
        status=p.status,
        progress=p.progress or 0,
        estimatedBudget=p.estimated_budget,
        votingDeadline=iso(p.voting_deadline),
        votingStatus=p.voting_status,
        votingClosedAt=iso(p.voting_closed_at),
        minimumApprovalPercentage=p.minimum_approval_percentage,
        selectedProposalId=str(p.selected_proposal_id) if p.selected_proposal_id else None,
        selectedDeveloperId=p.selected_developer_id,
        createdAt=iso(p.created_at),
        updatedAt=iso(p.updated_at),
    )


def transition_to_schema(t: ProjectStatusTransition) -> TransitionResponse:
    return TransitionResponse(
        fromStatus=t.from_status,
        toStatus=t.to_status,
        actorId=t.actor_id,
        reason=t.reason,
        createdAt=iso(t.created_at),
    )
