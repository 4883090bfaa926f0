# redevelopment/api/v1/votes.py
from __future__ import annotations

import math
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from redevelopment.api.deps import client_ip, get_membership_oracle, get_notification_dispatcher
from redevelopment.core.auth_deps import get_current_principal
from redevelopment.db.session import get_db
from redevelopment.policies.membership import MembershipOracle
from redevelopment.policies.rbac import Principal
from redevelopment.schemas.votes import (
    BallotResponse,
    BatchVoteRequest,
    BatchVoteResponse,
    CheckVotedResponse,
    MyVotesResponse,
    Pagination,
    VoteRequest,
    VoteResponse,
    ballot_to_schema,
    statistics_to_schema,
)
from redevelopment.services.audit_service import AuditAction, audit_event
from redevelopment.services.notifications import NotificationDispatcher
from redevelopment.services.voting_service import VotingLedger

router = APIRouter(prefix="/votes", tags=["votes"])


# ─────────────────────────────────────────────────────────────
# CAST
# ─────────────────────────────────────────────────────────────

@router.post("", response_model=VoteResponse, status_code=201)
async def submit_vote(
    req: VoteRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    oracle: MembershipOracle = Depends(get_membership_oracle),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    ledger = VotingLedger(dispatcher)
    ballot, stats = ledger.submit_vote(
        db,
        principal=principal,
        oracle=oracle,
        project_id=req.projectId,
        ballot=req.to_input(),
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )

    # the choice itself stays out of the audit trail
    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=req.projectId,
        action=AuditAction.VOTE_CAST,
        payload_summary={
            "votingSession": ballot.voting_session,
            "proposalId": str(ballot.proposal_id) if ballot.proposal_id else None,
        },
        ref_id=str(ballot.id),
    )
    return VoteResponse(vote=ballot_to_schema(ballot), statistics=statistics_to_schema(stats))


@router.post("/batch", response_model=BatchVoteResponse, status_code=201)
async def submit_votes_batch(
    req: BatchVoteRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    oracle: MembershipOracle = Depends(get_membership_oracle),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    ledger = VotingLedger(dispatcher)
    result = ledger.submit_votes_batch(
        db,
        principal=principal,
        oracle=oracle,
        project_id=req.projectId,
        ballots=[item.to_input() for item in req.votes],
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )

    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=req.projectId,
        action=AuditAction.VOTE_BATCH_CAST,
        payload_summary={"added": len(result.added), "duplicates": len(result.duplicates)},
    )
    return BatchVoteResponse(
        added=len(result.added),
        duplicates=len(result.duplicates),
        votes=[ballot_to_schema(b) for b in result.added],
        skipped=result.duplicates,
        statistics=statistics_to_schema(result.statistics),
    )


# ─────────────────────────────────────────────────────────────
# MEMBER READS
# ─────────────────────────────────────────────────────────────

@router.get("/my-votes", response_model=MyVotesResponse)
async def my_votes(
    projectId: Optional[uuid.UUID] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    rows, total = VotingLedger().my_votes(
        db, principal=principal, project_id=projectId, page=page, limit=limit
    )
    return MyVotesResponse(
        votes=[ballot_to_schema(b) for b in rows],
        pagination=Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
    )


@router.get("/my-vote/{project_id}/{session}", response_model=BallotResponse)
async def my_vote(
    project_id: uuid.UUID,
    session: str,
    proposalId: Optional[uuid.UUID] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    ballot = VotingLedger().get_my_vote(
        db, principal=principal, project_id=project_id, session=session, proposal_id=proposalId
    )
    return ballot_to_schema(ballot)


@router.get("/check-voted/{project_id}", response_model=CheckVotedResponse)
async def check_voted(
    project_id: uuid.UUID,
    session: Optional[str] = Query(default=None, max_length=128),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    ballot = VotingLedger().has_voted(db, principal=principal, project_id=project_id, session=session)
    return CheckVotedResponse(
        hasVoted=ballot is not None,
        vote=ballot_to_schema(ballot) if ballot else None,
    )


# ─────────────────────────────────────────────────────────────
# OWNER
# ─────────────────────────────────────────────────────────────

@router.post("/{vote_id}/verify", response_model=BallotResponse)
async def verify_vote(
    vote_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    ballot = VotingLedger().verify_vote(db, principal=principal, ballot_id=vote_id)
    audit_event(
        db,
        request=request,
        principal=principal,
        project_id=ballot.project_id,
        action=AuditAction.VOTE_VERIFIED,
        payload_summary={"voteId": str(ballot.id)},
        ref_id=str(ballot.id),
    )
    return ballot_to_schema(ballot)
