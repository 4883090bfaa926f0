# redevelopment/api/v1/projects.py
from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.orm import Session

from redevelopment.api.deps import get_membership_oracle, get_notification_dispatcher
from redevelopment.core.auth_deps import get_current_principal
from redevelopment.core.config import get_settings
from redevelopment.db.session import get_db
from redevelopment.models.enums import ParticipantRole
from redevelopment.models.project import RedevelopmentProject
from redevelopment.policies.membership import MembershipOracle
from redevelopment.policies.ownership import require_owner_or_member
from redevelopment.policies.rbac import ACTION_MANAGE_PROJECT, Principal, require_action
from redevelopment.schemas.projects import (
    ProjectCancelRequest,
    ProjectCreateRequest,
    ProjectHistoryResponse,
    ProjectListResponse,
    ProjectResponse,
    ProjectUpdateRequest,
    VotingOpenRequest,
    project_to_schema,
    transition_to_schema,
)
from redevelopment.schemas.proposals import (
    ProposalComparisonResponse,
    ProposalResponse,
    ProposalSubmitRequest,
    proposal_to_schema,
)
from redevelopment.schemas.votes import (
    ClosureResponse,
    EligibilityResponse,
    ResultsResponse,
    StatisticsResponse,
    SweepResponse,
    ballot_to_schema,
    result_to_schema,
    statistics_to_schema,
)
from redevelopment.services.audit_service import AuditAction, audit_event
from redevelopment.services.notifications import NotificationDispatcher
from redevelopment.services.project_state_machine import ProjectStateMachine
from redevelopment.services.proposals_service import ProposalService
from redevelopment.services.voting_closure_service import ClosureOutcome, VotingClosureService
from redevelopment.services.voting_service import VotingLedger

router = APIRouter(prefix="/projects", tags=["projects"])
voting_router = APIRouter(prefix="/voting", tags=["voting"])


# ─────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────

def _require_viewer(oracle: MembershipOracle, principal: Principal, project: RedevelopmentProject) -> None:
    """
    Developers browse projects to bid on them; everyone else must be the
    owner or an active member of the society.
    """
    if principal.role == ParticipantRole.DEVELOPER:
        return
    require_owner_or_member(oracle, principal, project)


def _closure_to_schema(outcome: ClosureOutcome, project: RedevelopmentProject) -> ClosureResponse:
    return ClosureResponse(
        projectId=str(outcome.project_id),
        reason=outcome.reason,
        result=outcome.result,
        projectStatus=project.status,
        votingStatus=project.voting_status,
        winnerProposalId=str(project.selected_proposal_id) if project.selected_proposal_id else None,
        results=[result_to_schema(r) for r in outcome.results],
    )


# ─────────────────────────────────────────────────────────────
# PROJECT CRUD
# ─────────────────────────────────────────────────────────────

@router.post("", response_model=ProjectResponse, status_code=201)
async def create_project(
    req: ProjectCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    svc = ProjectStateMachine(dispatcher)
    project = svc.create_project(
        db,
        principal=principal,
        society_id=req.societyId,
        title=req.title,
        description=req.description,
        estimated_budget=req.estimatedBudget,
        minimum_approval_percentage=req.minimumApprovalPercentage,
    )

    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=project.id,
        action=AuditAction.PROJECT_CREATED,
        payload_summary={"societyId": str(req.societyId), "title": project.title},
        ref_id=str(project.id),
    )
    return project_to_schema(project)


@router.get("", response_model=ProjectListResponse)
async def list_projects(
    societyId: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    oracle: MembershipOracle = Depends(get_membership_oracle),
):
    svc = ProjectStateMachine()
    projects = svc.list_for_society(db, societyId)
    visible = []
    for project in projects:
        _require_viewer(oracle, principal, project)
        visible.append(project_to_schema(project))
    return ProjectListResponse(societyId=str(societyId), projects=visible)


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    oracle: MembershipOracle = Depends(get_membership_oracle),
):
    project = ProjectStateMachine().get_project(db, project_id)
    _require_viewer(oracle, principal, project)
    return project_to_schema(project)


@router.patch("/{project_id}", response_model=ProjectResponse)
async def update_project(
    project_id: uuid.UUID,
    req: ProjectUpdateRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    svc = ProjectStateMachine()
    project = svc.update_details(
        db,
        principal=principal,
        project_id=project_id,
        changes={
            "title": req.title,
            "description": req.description,
            "estimated_budget": req.estimatedBudget,
            "progress": req.progress,
            "minimum_approval_percentage": req.minimumApprovalPercentage,
        },
    )

    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=project.id,
        action=AuditAction.PROJECT_UPDATED,
        payload_summary={"fields": sorted(req.model_dump(exclude_none=True).keys())},
    )
    return project_to_schema(project)


@router.delete("/{project_id}", status_code=204)
async def delete_project(
    project_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    ProjectStateMachine().delete_project(db, principal=principal, project_id=project_id)

    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=project_id,
        action=AuditAction.PROJECT_DELETED,
        payload_summary={},
    )
    return Response(status_code=204)


@router.get("/{project_id}/history", response_model=ProjectHistoryResponse)
async def project_history(
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    oracle: MembershipOracle = Depends(get_membership_oracle),
):
    svc = ProjectStateMachine()
    project = svc.get_project(db, project_id)
    _require_viewer(oracle, principal, project)
    rows = svc.history(db, project_id)
    return ProjectHistoryResponse(
        projectId=str(project_id),
        transitions=[transition_to_schema(t) for t in rows],
    )


# ─────────────────────────────────────────────────────────────
# LIFECYCLE
# ─────────────────────────────────────────────────────────────

@router.post("/{project_id}/tender/open", response_model=ProjectResponse)
async def open_tender(
    project_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    project = ProjectStateMachine(dispatcher).open_tender(db, principal=principal, project_id=project_id)
    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=project.id,
        action=AuditAction.TENDER_OPENED,
        payload_summary={"status": project.status},
    )
    return project_to_schema(project)


@router.post("/{project_id}/voting/open", response_model=ProjectResponse)
async def open_voting(
    project_id: uuid.UUID,
    req: VotingOpenRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    project = ProjectStateMachine(dispatcher).open_voting(
        db,
        principal=principal,
        project_id=project_id,
        voting_deadline=req.votingDeadline,
        minimum_approval_percentage=req.minimumApprovalPercentage,
    )
    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=project.id,
        action=AuditAction.VOTING_OPENED,
        payload_summary={
            "votingDeadline": req.votingDeadline.isoformat(),
            "minimumApprovalPercentage": project.minimum_approval_percentage,
        },
    )
    return project_to_schema(project)


@router.post("/{project_id}/voting/close", response_model=ClosureResponse)
async def close_voting(
    project_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    svc = VotingClosureService(dispatcher)
    outcome = svc.close_voting(db, project_id=project_id, actor=principal)
    project = svc.state_machine.get_project(db, project_id)

    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=project_id,
        action=AuditAction.VOTING_CLOSED,
        payload_summary={"result": outcome.result, "reason": outcome.reason},
        ref_id=str(project.selected_proposal_id) if project.selected_proposal_id else None,
    )
    return _closure_to_schema(outcome, project)


@router.post("/{project_id}/construction/start", response_model=ProjectResponse)
async def start_construction(
    project_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    project = ProjectStateMachine(dispatcher).start_construction(db, principal=principal, project_id=project_id)
    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=project.id,
        action=AuditAction.CONSTRUCTION_STARTED,
        payload_summary={"status": project.status},
    )
    return project_to_schema(project)


@router.post("/{project_id}/complete", response_model=ProjectResponse)
async def complete_project(
    project_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    project = ProjectStateMachine(dispatcher).complete(db, principal=principal, project_id=project_id)
    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=project.id,
        action=AuditAction.PROJECT_COMPLETED,
        payload_summary={"status": project.status},
    )
    return project_to_schema(project)


@router.post("/{project_id}/cancel", response_model=ProjectResponse)
async def cancel_project(
    project_id: uuid.UUID,
    request: Request,
    req: Optional[ProjectCancelRequest] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    reason = req.reason if req else None
    project = ProjectStateMachine(dispatcher).cancel(db, principal=principal, project_id=project_id, reason=reason)
    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=project.id,
        action=AuditAction.PROJECT_CANCELLED,
        payload_summary={"reason": reason},
    )
    return project_to_schema(project)


# ─────────────────────────────────────────────────────────────
# PROPOSALS UNDER A PROJECT
# ─────────────────────────────────────────────────────────────

@router.post("/{project_id}/proposals", response_model=ProposalResponse, status_code=201)
async def submit_proposal(
    project_id: uuid.UUID,
    req: ProposalSubmitRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    svc = ProposalService(dispatcher)
    proposal = svc.submit(
        db,
        principal=principal,
        project_id=project_id,
        terms=req.to_terms(),
        as_draft=req.asDraft,
    )

    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=project_id,
        action=AuditAction.PROPOSAL_SUBMITTED,
        payload_summary={"status": proposal.status, "title": proposal.title},
        ref_id=str(proposal.id),
    )
    return proposal_to_schema(proposal)


@router.get("/{project_id}/proposals", response_model=ProposalComparisonResponse)
async def compare_proposals(
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    oracle: MembershipOracle = Depends(get_membership_oracle),
):
    rows = ProposalService().comparison(db, principal=principal, project_id=project_id, oracle=oracle)
    return ProposalComparisonResponse(
        projectId=str(project_id),
        proposals=[proposal_to_schema(p) for p in rows],
    )


# ─────────────────────────────────────────────────────────────
# VOTING READS
# ─────────────────────────────────────────────────────────────

@router.get("/{project_id}/votes/statistics", response_model=StatisticsResponse)
async def voting_statistics(
    project_id: uuid.UUID,
    session: Optional[str] = Query(default=None, max_length=128),
    proposalId: Optional[uuid.UUID] = None,
    includeDetails: bool = False,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    oracle: MembershipOracle = Depends(get_membership_oracle),
):
    ledger = VotingLedger()
    stats = ledger.get_statistics(
        db,
        principal=principal,
        oracle=oracle,
        project_id=project_id,
        session=session,
        proposal_id=proposalId,
    )

    votes = None
    project = ledger.state_machine.get_project(db, project_id)
    # members only ever see aggregates
    if includeDetails and project.owner_id == principal.user_id:
        votes = [
            ballot_to_schema(b)
            for b in ledger.get_vote_details(db, principal=principal, project_id=project_id, session=session)
        ]

    return StatisticsResponse(statistics=statistics_to_schema(stats), votes=votes)


@router.get("/{project_id}/votes/eligibility", response_model=EligibilityResponse)
async def voting_eligibility(
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    oracle: MembershipOracle = Depends(get_membership_oracle),
):
    result = VotingLedger().check_eligibility(db, principal=principal, oracle=oracle, project_id=project_id)
    return EligibilityResponse(
        projectId=str(project_id),
        eligible=result.eligible,
        reason=result.reason,
        code=result.code,
    )


@router.get("/{project_id}/votes/results", response_model=ResultsResponse)
async def voting_results(
    project_id: uuid.UUID,
    session: Optional[str] = Query(default=None, max_length=128),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    oracle: MembershipOracle = Depends(get_membership_oracle),
):
    ledger = VotingLedger()
    results = ledger.proposal_results(
        db, principal=principal, oracle=oracle, project_id=project_id, session=session
    )
    project = ledger.state_machine.get_project(db, project_id)
    return ResultsResponse(
        projectId=str(project_id),
        votingSession=session or get_settings().selection_voting_session,
        minimumApprovalRequired=project.minimum_approval_percentage,
        results=[result_to_schema(r) for r in results],
    )


# ─────────────────────────────────────────────────────────────
# SWEEP
# ─────────────────────────────────────────────────────────────

@voting_router.post("/sweep", response_model=SweepResponse)
async def sweep_voting(
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    oracle: MembershipOracle = Depends(get_membership_oracle),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """
    Closes every voting window whose deadline passed or whose majority
    was reached. Invoked on demand; there is no background scheduler.
    """
    require_action(principal, ACTION_MANAGE_PROJECT)

    svc = VotingClosureService(dispatcher)
    report = svc.sweep(db, oracle=oracle)

    closed = []
    for outcome in report.closed:
        project = svc.state_machine.get_project(db, outcome.project_id)
        closed.append(_closure_to_schema(outcome, project))

    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=None,
        action=AuditAction.VOTING_SWEEP,
        payload_summary={
            "checked": report.checked,
            "closed": [str(o.project_id) for o in report.closed],
            "failed": [str(pid) for pid in report.failed],
        },
    )
    return SweepResponse(
        checked=report.checked,
        closed=closed,
        failed=[str(pid) for pid in report.failed],
    )
