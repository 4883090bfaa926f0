# redevelopment/api/v1/proposals.py
from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from redevelopment.api.deps import get_membership_oracle, get_notification_dispatcher
from redevelopment.core.auth_deps import get_current_principal
from redevelopment.db.session import get_db
from redevelopment.policies.membership import MembershipOracle
from redevelopment.policies.rbac import Principal
from redevelopment.schemas.proposals import (
    ApproveRequest,
    EvaluateRequest,
    ProposalResponse,
    ProposalUpdateRequest,
    RejectRequest,
    proposal_to_schema,
)
from redevelopment.services.audit_service import AuditAction, audit_event
from redevelopment.services.notifications import NotificationDispatcher
from redevelopment.services.proposals_service import ProposalService
from redevelopment.services.selection_service import SelectionCoordinator

router = APIRouter(prefix="/proposals", tags=["proposals"])


@router.get("/{proposal_id}", response_model=ProposalResponse)
async def get_proposal(
    proposal_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    oracle: MembershipOracle = Depends(get_membership_oracle),
):
    proposal = ProposalService().get_visible(db, principal=principal, proposal_id=proposal_id, oracle=oracle)
    return proposal_to_schema(proposal)


@router.patch("/{proposal_id}", response_model=ProposalResponse)
async def update_proposal(
    proposal_id: uuid.UUID,
    req: ProposalUpdateRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    proposal = ProposalService(dispatcher).update(
        db,
        principal=principal,
        proposal_id=proposal_id,
        changes=req.to_changes(),
        submit=req.submit,
    )
    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=proposal.project_id,
        action=AuditAction.PROPOSAL_UPDATED,
        payload_summary={
            "fields": sorted(req.model_dump(exclude_none=True, exclude={"submit"}).keys()),
            "status": proposal.status,
        },
        ref_id=str(proposal.id),
    )
    return proposal_to_schema(proposal)


@router.delete("/{proposal_id}", status_code=204)
async def delete_proposal(
    proposal_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    svc = ProposalService()
    project_id = svc.get(db, proposal_id).project_id
    svc.delete_draft(db, principal=principal, proposal_id=proposal_id)
    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=project_id,
        action=AuditAction.PROPOSAL_DELETED,
        payload_summary={},
        ref_id=str(proposal_id),
    )
    return Response(status_code=204)


@router.post("/{proposal_id}/withdraw", response_model=ProposalResponse)
async def withdraw_proposal(
    proposal_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    proposal = ProposalService().withdraw(db, principal=principal, proposal_id=proposal_id)
    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=proposal.project_id,
        action=AuditAction.PROPOSAL_WITHDRAWN,
        payload_summary={},
        ref_id=str(proposal.id),
    )
    return proposal_to_schema(proposal)


# ─────────────────────────────────────────────────────────────
# OWNER DECISIONS
# ─────────────────────────────────────────────────────────────

@router.post("/{proposal_id}/evaluate", response_model=ProposalResponse)
async def evaluate_proposal(
    proposal_id: uuid.UUID,
    req: EvaluateRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    proposal = ProposalService().evaluate(
        db,
        principal=principal,
        proposal_id=proposal_id,
        technical_score=req.technicalScore,
        financial_score=req.financialScore,
        timeline_score=req.timelineScore,
        comments=req.comments,
    )
    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=proposal.project_id,
        action=AuditAction.PROPOSAL_EVALUATED,
        payload_summary={"overallScore": proposal.overall_score},
        ref_id=str(proposal.id),
    )
    return proposal_to_schema(proposal)


@router.post("/{proposal_id}/review", response_model=ProposalResponse)
async def review_proposal(
    proposal_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    proposal = ProposalService().start_review(db, principal=principal, proposal_id=proposal_id)
    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=proposal.project_id,
        action=AuditAction.PROPOSAL_REVIEW_STARTED,
        payload_summary={"status": proposal.status},
        ref_id=str(proposal.id),
    )
    return proposal_to_schema(proposal)


@router.post("/{proposal_id}/shortlist", response_model=ProposalResponse)
async def shortlist_proposal(
    proposal_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    proposal = ProposalService().shortlist(db, principal=principal, proposal_id=proposal_id)
    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=proposal.project_id,
        action=AuditAction.PROPOSAL_SHORTLISTED,
        payload_summary={"status": proposal.status},
        ref_id=str(proposal.id),
    )
    return proposal_to_schema(proposal)


@router.post("/{proposal_id}/approve", response_model=ProposalResponse)
async def approve_proposal(
    proposal_id: uuid.UUID,
    request: Request,
    req: Optional[ApproveRequest] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    proposal = ProposalService(dispatcher).approve(
        db, principal=principal, proposal_id=proposal_id, comments=req.comments if req else None
    )
    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=proposal.project_id,
        action=AuditAction.PROPOSAL_APPROVED,
        payload_summary={"status": proposal.status},
        ref_id=str(proposal.id),
    )
    return proposal_to_schema(proposal)


@router.post("/{proposal_id}/reject", response_model=ProposalResponse)
async def reject_proposal(
    proposal_id: uuid.UUID,
    req: RejectRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    proposal = ProposalService(dispatcher).reject(
        db, principal=principal, proposal_id=proposal_id, reason=req.reason
    )
    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=proposal.project_id,
        action=AuditAction.PROPOSAL_REJECTED,
        payload_summary={"status": proposal.status},
        ref_id=str(proposal.id),
    )
    return proposal_to_schema(proposal)


@router.post("/{proposal_id}/select", response_model=ProposalResponse)
async def select_proposal(
    proposal_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """
    403 when the caller is not the project owner,
    409 when the project already has a selected proposal.
    """
    svc = SelectionCoordinator(dispatcher)
    target = ProposalService().get(db, proposal_id)
    proposal = svc.select(
        db,
        principal=principal,
        project_id=target.project_id,
        proposal_id=proposal_id,
    )
    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=proposal.project_id,
        action=AuditAction.PROPOSAL_SELECTED,
        payload_summary={"developerId": proposal.developer_id},
        ref_id=str(proposal.id),
    )
    return proposal_to_schema(proposal)
