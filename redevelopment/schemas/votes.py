#redevelopment/schemas/votes.py
from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from redevelopment.core.clock import iso
from redevelopment.models.enums import VoteChoice
from redevelopment.models.member_vote import Ballot
from redevelopment.services.voting_service import (
    BallotInput,
    ProposalResult,
    VotingStatistics,
)


# -----------------------
# Requests
# -----------------------

class BallotItem(BaseModel):
    vote: VoteChoice
    votingSession: str = Field(..., min_length=1, max_length=128)
    proposalId: Optional[uuid.UUID] = None
    reason: Optional[str] = Field(default=None, max_length=500)

    def to_input(self) -> BallotInput:
        return BallotInput(
            vote=self.vote,
            voting_session=self.votingSession,
            proposal_id=self.proposalId,
            reason=self.reason,
        )


class VoteRequest(BallotItem):
    projectId: uuid.UUID


class BatchVoteRequest(BaseModel):
    projectId: uuid.UUID
    votes: List[BallotItem] = Field(..., min_length=1, max_length=200)


# -----------------------
# Responses
# -----------------------

class BallotResponse(BaseModel):
    id: str
    projectId: str
    memberId: str
    proposalId: Optional[str] = None
    votingSession: str
    vote: VoteChoice
    reason: Optional[str] = None
    votedAt: Optional[str] = None
    isVerified: bool = False
    verifiedBy: Optional[str] = None
    verifiedAt: Optional[str] = None


class VotingStatisticsResponse(BaseModel):
    projectId: str
    votingSession: Optional[str] = None
    proposalId: Optional[str] = None
    totalMembers: int
    totalVotes: int
    yesVotes: int
    noVotes: int
    abstainVotes: int
    approvalPercentage: int
    participationRate: int
    minimumApprovalRequired: int
    isApproved: bool
    projectStatus: str
    votingStatus: str
    votingDeadline: Optional[str] = None
    hoursRemaining: Optional[int] = None


class VoteResponse(BaseModel):
    vote: BallotResponse
    statistics: VotingStatisticsResponse


class BatchVoteResponse(BaseModel):
    added: int
    duplicates: int
    votes: List[BallotResponse]
    skipped: List[Dict[str, Any]] = Field(default_factory=list)
    statistics: VotingStatisticsResponse


class StatisticsResponse(BaseModel):
    statistics: VotingStatisticsResponse
    # owner-only, when includeDetails=true
    votes: Optional[List[BallotResponse]] = None


class EligibilityResponse(BaseModel):
    projectId: str
    eligible: bool
    reason: Optional[str] = None
    code: Optional[str] = None


class ProposalResultResponse(BaseModel):
    proposalId: str
    developerId: str
    title: str
    status: str
    yesVotes: int
    noVotes: int
    abstainVotes: int
    totalVotes: int
    approvalPercentage: int
    meetsThreshold: bool


class ResultsResponse(BaseModel):
    projectId: str
    votingSession: str
    minimumApprovalRequired: int
    results: List[ProposalResultResponse]


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class MyVotesResponse(BaseModel):
    votes: List[BallotResponse]
    pagination: Pagination


class CheckVotedResponse(BaseModel):
    hasVoted: bool
    vote: Optional[BallotResponse] = None


def ballot_to_schema(b: Ballot) -> BallotResponse:
    return BallotResponse(
        id=str(b.id),
        projectId=str(b.project_id),
        memberId=b.member_id,
        proposalId=str(b.proposal_id) if b.proposal_id else None,
        votingSession=b.voting_session,
        vote=VoteChoice.from_stored(b.vote),
        reason=b.reason,
        votedAt=iso(b.voted_at),
        isVerified=bool(b.is_verified),
        verifiedBy=b.verified_by,
        verifiedAt=iso(b.verified_at),
    )


def statistics_to_schema(s: VotingStatistics) -> VotingStatisticsResponse:
    return VotingStatisticsResponse(**s.to_dict())


def result_to_schema(r: ProposalResult) -> ProposalResultResponse:
    return ProposalResultResponse(
        proposalId=str(r.proposal_id),
        developerId=r.developer_id,
        title=r.title,
        status=r.status,
        yesVotes=r.yes_votes,
        noVotes=r.no_votes,
        abstainVotes=r.abstain_votes,
        totalVotes=r.total_votes,
        approvalPercentage=r.approval_percentage,
        meetsThreshold=r.meets_threshold,
    )


# -----------------------
# Voting closure
# -----------------------

class ClosureResponse(BaseModel):
    projectId: str
    reason: str
    result: str
    projectStatus: str
    votingStatus: str
    winnerProposalId: Optional[str] = None
    results: List[ProposalResultResponse] = Field(default_factory=list)


class SweepResponse(BaseModel):
    checked: int
    closed: List[ClosureResponse] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
