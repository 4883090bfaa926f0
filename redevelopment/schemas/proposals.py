#redevelopment/schemas/proposals.py
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from redevelopment.core.clock import iso
from redevelopment.models.proposal import DeveloperProposal
from redevelopment.schemas.primitives import Fsi, Money, Score


# -----------------------
# Requests
# -----------------------

class ProposalSubmitRequest(BaseModel):
    """
    Financial terms are stored as given; blobs are opaque JSON.
    """
    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=10000)
    corpusAmount: Money
    rentAmount: Money
    fsi: Fsi
    timeline: str = Field(default="", max_length=500)

    proposedAmenities: List[Any] = Field(default_factory=list)
    proposedTimeline: Dict[str, Any] = Field(default_factory=dict)
    financialBreakdown: Dict[str, Any] = Field(default_factory=dict)
    developerInfo: Dict[str, Any] = Field(default_factory=dict)

    asDraft: bool = False

    def to_terms(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "corpus_amount": self.corpusAmount,
            "rent_amount": self.rentAmount,
            "fsi": self.fsi,
            "timeline": self.timeline,
            "proposed_amenities": self.proposedAmenities,
            "proposed_timeline": self.proposedTimeline,
            "financial_breakdown": self.financialBreakdown,
            "developer_info": self.developerInfo,
        }


class ProposalUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=10000)
    corpusAmount: Optional[Money] = None
    rentAmount: Optional[Money] = None
    fsi: Optional[Fsi] = None
    timeline: Optional[str] = Field(default=None, max_length=500)

    proposedAmenities: Optional[List[Any]] = None
    proposedTimeline: Optional[Dict[str, Any]] = None
    financialBreakdown: Optional[Dict[str, Any]] = None
    developerInfo: Optional[Dict[str, Any]] = None

    # promote draft → submitted
    submit: bool = False

    def to_changes(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "corpus_amount": self.corpusAmount,
            "rent_amount": self.rentAmount,
            "fsi": self.fsi,
            "timeline": self.timeline,
            "proposed_amenities": self.proposedAmenities,
            "proposed_timeline": self.proposedTimeline,
            "financial_breakdown": self.financialBreakdown,
            "developer_info": self.developerInfo,
        }


class EvaluateRequest(BaseModel):
    technicalScore: Score
    financialScore: Score
    timelineScore: Score
    comments: Optional[str] = Field(default=None, max_length=2000)


class ApproveRequest(BaseModel):
    comments: Optional[str] = Field(default=None, max_length=2000)


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


# -----------------------
# Responses
# -----------------------

class EvaluationOut(BaseModel):
    technicalScore: Optional[int] = None
    financialScore: Optional[int] = None
    timelineScore: Optional[int] = None
    overallScore: Optional[int] = None
    evaluatedBy: Optional[str] = None
    evaluatedAt: Optional[str] = None
    comments: Optional[str] = None


class ProposalResponse(BaseModel):
    id: str
    projectId: str
    developerId: str
    title: str
    description: str
    status: str

    corpusAmount: Decimal
    rentAmount: Decimal
    fsi: Decimal
    timeline: str

    proposedAmenities: List[Any] = Field(default_factory=list)
    proposedTimeline: Dict[str, Any] = Field(default_factory=dict)
    financialBreakdown: Dict[str, Any] = Field(default_factory=dict)
    developerInfo: Dict[str, Any] = Field(default_factory=dict)

    evaluation: Optional[EvaluationOut] = None

    ownerComments: Optional[str] = None
    approvedBy: Optional[str] = None
    approvedAt: Optional[str] = None
    rejectionReason: Optional[str] = None
    rejectedBy: Optional[str] = None
    rejectedAt: Optional[str] = None

    submittedAt: Optional[str] = None
    selectedAt: Optional[str] = None
    withdrawnAt: Optional[str] = None
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None


class ProposalComparisonResponse(BaseModel):
    projectId: str
    proposals: List[ProposalResponse]


def proposal_to_schema(p: DeveloperProposal) -> ProposalResponse:
    evaluation = None
    if p.evaluated_at is not None:
        evaluation = EvaluationOut(
            technicalScore=p.technical_score,
            financialScore=p.financial_score,
            timelineScore=p.timeline_score,
            overallScore=p.overall_score,
            evaluatedBy=p.evaluated_by,
            evaluatedAt=iso(p.evaluated_at),
            comments=p.evaluation_comments,
        )

    return ProposalResponse(
        id=str(p.id),
        projectId=str(p.project_id),
        developerId=p.developer_id,
        title=p.title,
        description=p.description or "",
        status=p.status,
        corpusAmount=p.corpus_amount,
        rentAmount=p.rent_amount,
        fsi=p.fsi,
        timeline=p.timeline or "",
        proposedAmenities=p.proposed_amenities or [],
        proposedTimeline=p.proposed_timeline or {},
        financialBreakdown=p.financial_breakdown or {},
        developerInfo=p.developer_info or {},
        evaluation=evaluation,
        ownerComments=p.owner_comments,
        approvedBy=p.approved_by,
        approvedAt=iso(p.approved_at),
        rejectionReason=p.rejection_reason,
        rejectedBy=p.rejected_by,
        rejectedAt=iso(p.rejected_at),
        submittedAt=iso(p.submitted_at),
        selectedAt=iso(p.selected_at),
        withdrawnAt=iso(p.withdrawn_at),
        createdAt=iso(p.created_at),
        updatedAt=iso(p.updated_at),
    )
