# redevelopment/services/voting_service.py
from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from redevelopment.core.clock import as_utc, iso, utcnow
from redevelopment.core.config import get_settings
from redevelopment.core.errors import (
    AlreadyVoted,
    DomainError,
    Forbidden,
    NotFound,
    StateConflict,
    Unexpected,
    ValidationError,
)
from redevelopment.core.project_states import ProjectAction
from redevelopment.models.enums import ProposalStatus, VoteChoice
from redevelopment.models.member_vote import GENERAL_BALLOT_KEY, Ballot, MemberVote
from redevelopment.models.project import RedevelopmentProject
from redevelopment.models.proposal import DeveloperProposal
from redevelopment.policies.membership import MembershipOracle
from redevelopment.policies.ownership import require_owner_or_member, require_project_owner
from redevelopment.policies.rbac import ACTION_CAST_VOTE, Principal, require_action
from redevelopment.services.notifications import (
    EventType,
    LoggingDispatcher,
    NotificationDispatcher,
    NotificationEvent,
    dispatch_safely,
)
from redevelopment.services.project_state_machine import ProjectStateMachine

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 500
MAX_SESSION_LENGTH = 128
MAX_PAGE_SIZE = 100

# proposals that never appear in per-proposal results
NOT_TALLIED = [ProposalStatus.draft.value, ProposalStatus.withdrawn.value]


def half_up_percent(part: int, whole: int) -> int:
    """
    round(part / whole * 100) with .5 going up, in integer math; 0 when whole is 0.
    6/10 → 60, 1/8 → 13, 2/3 → 67
    """
    if whole <= 0:
        return 0
    return (2 * part * 100 + whole) // (2 * whole)


# ─────────────────────────────────────────────
# Value objects
# ─────────────────────────────────────────────

@dataclass
class BallotInput:
    vote: VoteChoice
    voting_session: str
    proposal_id: Optional[uuid.UUID] = None
    reason: Optional[str] = None

    @property
    def proposal_key(self) -> str:
        return str(self.proposal_id) if self.proposal_id else GENERAL_BALLOT_KEY


@dataclass
class Eligibility:
    eligible: bool
    reason: Optional[str] = None
    code: Optional[str] = None


@dataclass
class VotingStatistics:
    project_id: uuid.UUID
    voting_session: Optional[str]
    proposal_id: Optional[uuid.UUID]
    total_members: int
    total_votes: int
    yes_votes: int
    no_votes: int
    abstain_votes: int
    approval_percentage: int
    participation_rate: int
    minimum_approval_required: int
    is_approved: bool
    project_status: str
    voting_status: str
    voting_deadline: Optional[datetime]
    hours_remaining: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "projectId": str(self.project_id),
            "votingSession": self.voting_session,
            "proposalId": str(self.proposal_id) if self.proposal_id else None,
            "totalMembers": self.total_members,
            "totalVotes": self.total_votes,
            "yesVotes": self.yes_votes,
            "noVotes": self.no_votes,
            "abstainVotes": self.abstain_votes,
            "approvalPercentage": self.approval_percentage,
            "participationRate": self.participation_rate,
            "minimumApprovalRequired": self.minimum_approval_required,
            "isApproved": self.is_approved,
            "projectStatus": self.project_status,
            "votingStatus": self.voting_status,
            "votingDeadline": iso(self.voting_deadline),
            "hoursRemaining": self.hours_remaining,
        }


@dataclass
class ProposalResult:
    proposal_id: uuid.UUID
    developer_id: str
    title: str
    status: str
    submitted_at: Optional[datetime]
    yes_votes: int = 0
    no_votes: int = 0
    abstain_votes: int = 0
    total_votes: int = 0
    approval_percentage: int = 0
    meets_threshold: bool = False


@dataclass
class BatchResult:
    added: List[Ballot] = field(default_factory=list)
    # {"proposalId", "votingSession"} of every skipped ballot
    duplicates: List[Dict[str, Any]] = field(default_factory=list)
    statistics: Optional[VotingStatistics] = None


def ballot_summary(ballot: Ballot) -> Dict[str, Any]:
    return {
        "id": str(ballot.id),
        "vote": VoteChoice.from_stored(ballot.vote).value,
        "votingSession": ballot.voting_session,
        "proposalId": str(ballot.proposal_id) if ballot.proposal_id else None,
        "votedAt": iso(ballot.voted_at),
    }


# ─────────────────────────────────────────────
# Ledger
# ─────────────────────────────────────────────

class VotingLedger:
    """
    Member ballots for a redevelopment project.

    Guarantees:
    - at most one ballot per (project, member, proposal-or-project, session);
      enforced by the unique constraint through INSERT ... ON CONFLICT DO NOTHING,
      never by read-then-write
    - eligibility (project voting, window open, member active) runs before any write
    - ballots are appended, never replaced; verification never touches the value
    """

    def __init__(
        self,
        dispatcher: Optional[NotificationDispatcher] = None,
        state_machine: Optional[ProjectStateMachine] = None,
    ):
        self.dispatcher = dispatcher or LoggingDispatcher()
        self.state_machine = state_machine or ProjectStateMachine(self.dispatcher)

    # ---------------------------
    # LOW-LEVEL WRITES
    # ---------------------------

    def _insert_ignoring_conflict(self, db: Session, table, row: Dict[str, Any]) -> bool:
        """
        Single conditional insert. True when the row landed, False when the
        unique key already existed.
        """
        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(table).values(**row).on_conflict_do_nothing()
        elif dialect == "sqlite":
            stmt = sqlite_insert(table).values(**row).on_conflict_do_nothing()
        else:
            raise Unexpected(f"Unsupported database dialect for ballot writes: {dialect}")
        return db.execute(stmt).rowcount == 1

    def _ledger_entry_id(self, db: Session, *, project_id: uuid.UUID, member_id: str, now: datetime) -> uuid.UUID:
        """
        One MemberVote per (project, member), created on first use.
        """
        self._insert_ignoring_conflict(
            db,
            MemberVote.__table__,
            {
                "id": uuid.uuid4(),
                "project_id": project_id,
                "member_id": member_id,
                "total_votes": 0,
                "created_at": now,
            },
        )
        return db.execute(
            select(MemberVote.id).where(
                MemberVote.project_id == project_id,
                MemberVote.member_id == member_id,
            )
        ).scalar_one()

    def _append_ballot(
        self,
        db: Session,
        *,
        entry_id: uuid.UUID,
        project_id: uuid.UUID,
        member_id: str,
        ballot: BallotInput,
        ip_address: Optional[str],
        user_agent: Optional[str],
        now: datetime,
    ) -> Optional[uuid.UUID]:
        ballot_id = uuid.uuid4()
        landed = self._insert_ignoring_conflict(
            db,
            Ballot.__table__,
            {
                "id": ballot_id,
                "member_vote_id": entry_id,
                "project_id": project_id,
                "member_id": member_id,
                "proposal_id": ballot.proposal_id,
                "proposal_key": ballot.proposal_key,
                "voting_session": ballot.voting_session,
                "vote": ballot.vote.to_stored(),
                "reason": ballot.reason,
                "ip_address": ip_address,
                "user_agent": user_agent[:512] if user_agent else None,
                "voted_at": now,
                "is_verified": False,
            },
        )
        return ballot_id if landed else None

    def _bump_ledger(self, db: Session, *, entry_id: uuid.UUID, added: int, now: datetime) -> None:
        db.execute(
            update(MemberVote)
            .where(MemberVote.id == entry_id)
            .values(total_votes=MemberVote.total_votes + added, last_voted_at=now)
            .execution_options(synchronize_session=False)
        )

    def _existing_ballot(self, db: Session, *, project_id: uuid.UUID, member_id: str, ballot: BallotInput) -> Optional[Ballot]:
        return db.execute(
            select(Ballot).where(
                Ballot.project_id == project_id,
                Ballot.member_id == member_id,
                Ballot.proposal_key == ballot.proposal_key,
                Ballot.voting_session == ballot.voting_session,
            )
        ).scalar_one_or_none()

    # ---------------------------
    # VALIDATION
    # ---------------------------

    def _validate_ballot(self, db: Session, project: RedevelopmentProject, ballot: BallotInput) -> BallotInput:
        session = (ballot.voting_session or "").strip()
        if not session:
            raise ValidationError("votingSession is required.")
        if len(session) > MAX_SESSION_LENGTH:
            raise ValidationError(f"votingSession must be at most {MAX_SESSION_LENGTH} characters.")

        reason = (ballot.reason or "").strip() or None
        if reason and len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(f"reason must be at most {MAX_REASON_LENGTH} characters.")

        if ballot.proposal_id is not None:
            row = db.execute(
                select(DeveloperProposal.project_id, DeveloperProposal.status).where(
                    DeveloperProposal.id == ballot.proposal_id
                )
            ).one_or_none()
            if row is None or row.project_id != project.id:
                raise NotFound(
                    "Proposal not found or does not belong to this project.",
                    context={"proposalId": str(ballot.proposal_id)},
                )
            if row.status in NOT_TALLIED:
                raise StateConflict(
                    f"Cannot vote on a proposal in status '{row.status}'.",
                    current_state=row.status,
                    action=ProjectAction.CAST_VOTE.value,
                    context={"proposalId": str(ballot.proposal_id)},
                )

        try:
            choice = VoteChoice(ballot.vote)
        except ValueError:
            raise ValidationError("vote must be yes, no or abstain.")

        return BallotInput(
            vote=choice,
            voting_session=session,
            proposal_id=ballot.proposal_id,
            reason=reason,
        )

    def _eligibility_error(
        self,
        project: RedevelopmentProject,
        *,
        principal: Principal,
        oracle: MembershipOracle,
        now: datetime,
    ) -> Optional[DomainError]:
        try:
            self.state_machine.ensure_voting_open(project, now)
        except DomainError as exc:
            return exc
        if not oracle.is_active_member(project.society_id, principal.user_id):
            return Forbidden("Only active society members can vote.")
        return None

    def check_eligibility(
        self,
        db: Session,
        *,
        principal: Principal,
        oracle: MembershipOracle,
        project_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> Eligibility:
        project = self.state_machine.get_project(db, project_id)
        error = self._eligibility_error(project, principal=principal, oracle=oracle, now=now or utcnow())
        if error:
            return Eligibility(eligible=False, reason=error.message, code=error.code)
        return Eligibility(eligible=True)

    # ---------------------------
    # CASTING
    # ---------------------------

    def submit_vote(
        self,
        db: Session,
        *,
        principal: Principal,
        oracle: MembershipOracle,
        project_id: uuid.UUID,
        ballot: BallotInput,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[Ballot, VotingStatistics]:
        now = now or utcnow()
        require_action(principal, ACTION_CAST_VOTE)

        project = self.state_machine.get_project(db, project_id)
        error = self._eligibility_error(project, principal=principal, oracle=oracle, now=now)
        if error:
            raise error
        clean = self._validate_ballot(db, project, ballot)

        try:
            entry_id = self._ledger_entry_id(db, project_id=project.id, member_id=principal.user_id, now=now)
            ballot_id = self._append_ballot(
                db,
                entry_id=entry_id,
                project_id=project.id,
                member_id=principal.user_id,
                ballot=clean,
                ip_address=ip_address,
                user_agent=user_agent,
                now=now,
            )
            if ballot_id is None:
                db.rollback()
                existing = self._existing_ballot(
                    db, project_id=project.id, member_id=principal.user_id, ballot=clean
                )
                raise AlreadyVoted(
                    "You have already voted for this proposal in this session."
                    if clean.proposal_id
                    else "You have already voted in this session.",
                    context={"existingVote": ballot_summary(existing) if existing else None},
                )
            self._bump_ledger(db, entry_id=entry_id, added=1, now=now)
            db.commit()
        except Exception:
            db.rollback()
            raise

        stored = db.get(Ballot, ballot_id)
        logger.info(
            "vote_cast",
            extra={
                "project_id": str(project.id),
                "member_id": principal.user_id,
                "voting_session": clean.voting_session,
                "proposal_key": clean.proposal_key,
            },
        )

        stats = self._compute_statistics(
            db,
            project,
            session=clean.voting_session,
            proposal_id=clean.proposal_id,
            total_members=oracle.count_active_members(project.society_id),
            now=now,
        )
        dispatch_safely(
            self.dispatcher,
            [
                NotificationEvent(
                    event_type=EventType.VOTE_CAST,
                    project_id=project.id,
                    society_id=project.society_id,
                    recipient_id=project.owner_id,
                    payload={"votingSession": clean.voting_session, "totalVotes": stats.total_votes},
                )
            ],
        )
        return stored, stats

    def submit_votes_batch(
        self,
        db: Session,
        *,
        principal: Principal,
        oracle: MembershipOracle,
        project_id: uuid.UUID,
        ballots: Sequence[BallotInput],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BatchResult:
        """
        Partial success: new keys are appended, existing keys (stored or
        repeated inside this request) are skipped. Fails with AlreadyVoted
        only when nothing at all was new.
        """
        now = now or utcnow()
        require_action(principal, ACTION_CAST_VOTE)
        if not ballots:
            raise ValidationError("At least one vote is required.")

        project = self.state_machine.get_project(db, project_id)
        error = self._eligibility_error(project, principal=principal, oracle=oracle, now=now)
        if error:
            raise error
        cleaned = [self._validate_ballot(db, project, b) for b in ballots]

        result = BatchResult()
        added_ids: List[uuid.UUID] = []
        seen: Set[Tuple[str, str]] = set()

        try:
            entry_id = self._ledger_entry_id(db, project_id=project.id, member_id=principal.user_id, now=now)
            for ballot in cleaned:
                key = (ballot.proposal_key, ballot.voting_session)
                ballot_id = None
                if key not in seen:
                    seen.add(key)
                    ballot_id = self._append_ballot(
                        db,
                        entry_id=entry_id,
                        project_id=project.id,
                        member_id=principal.user_id,
                        ballot=ballot,
                        ip_address=ip_address,
                        user_agent=user_agent,
                        now=now,
                    )
                if ballot_id is None:
                    result.duplicates.append(
                        {
                            "proposalId": str(ballot.proposal_id) if ballot.proposal_id else None,
                            "votingSession": ballot.voting_session,
                        }
                    )
                    logger.info(
                        "duplicate_vote_skipped",
                        extra={
                            "project_id": str(project.id),
                            "member_id": principal.user_id,
                            "voting_session": ballot.voting_session,
                            "proposal_key": ballot.proposal_key,
                        },
                    )
                else:
                    added_ids.append(ballot_id)

            if not added_ids:
                db.rollback()
                raise AlreadyVoted(
                    "You have already voted for all of these proposals.",
                    context={"duplicates": len(result.duplicates)},
                )

            self._bump_ledger(db, entry_id=entry_id, added=len(added_ids), now=now)
            db.commit()
        except Exception:
            db.rollback()
            raise

        result.added = list(
            db.execute(select(Ballot).where(Ballot.id.in_(added_ids)).order_by(Ballot.voted_at)).scalars()
        )
        result.statistics = self._compute_statistics(
            db,
            project,
            session=cleaned[0].voting_session,
            proposal_id=None,
            total_members=oracle.count_active_members(project.society_id),
            now=now,
        )
        logger.info(
            "vote_batch_cast",
            extra={
                "project_id": str(project.id),
                "member_id": principal.user_id,
                "added": len(added_ids),
                "duplicates": len(result.duplicates),
            },
        )
        dispatch_safely(
            self.dispatcher,
            [
                NotificationEvent(
                    event_type=EventType.VOTE_CAST,
                    project_id=project.id,
                    society_id=project.society_id,
                    recipient_id=project.owner_id,
                    payload={"votingSession": cleaned[0].voting_session, "added": len(added_ids)},
                )
            ],
        )
        return result

    # ---------------------------
    # AGGREGATES
    # ---------------------------

    def _tally(
        self,
        db: Session,
        *,
        project_id: uuid.UUID,
        session: Optional[str],
        proposal_id: Optional[uuid.UUID],
    ) -> Tuple[int, int, int]:
        q = (
            select(Ballot.vote, func.count(Ballot.id))
            .where(Ballot.project_id == project_id)
            .group_by(Ballot.vote)
        )
        if session:
            q = q.where(Ballot.voting_session == session)
        if proposal_id:
            q = q.where(Ballot.proposal_id == proposal_id)

        yes = no = abstain = 0
        for vote, count in db.execute(q).all():
            if vote is True:
                yes = int(count)
            elif vote is False:
                no = int(count)
            else:
                abstain = int(count)
        return yes, no, abstain

    def _compute_statistics(
        self,
        db: Session,
        project: RedevelopmentProject,
        *,
        session: Optional[str],
        proposal_id: Optional[uuid.UUID],
        total_members: int,
        now: datetime,
    ) -> VotingStatistics:
        yes, no, abstain = self._tally(db, project_id=project.id, session=session, proposal_id=proposal_id)
        total = yes + no + abstain
        approval = half_up_percent(yes, total)

        deadline = as_utc(project.voting_deadline)
        hours_remaining = None
        if deadline is not None:
            hours_remaining = max(0, math.floor((deadline - as_utc(now)).total_seconds() / 3600))

        return VotingStatistics(
            project_id=project.id,
            voting_session=session,
            proposal_id=proposal_id,
            total_members=total_members,
            total_votes=total,
            yes_votes=yes,
            no_votes=no,
            abstain_votes=abstain,
            approval_percentage=approval,
            participation_rate=half_up_percent(total, total_members),
            minimum_approval_required=project.minimum_approval_percentage,
            is_approved=approval >= project.minimum_approval_percentage,
            project_status=project.status,
            voting_status=project.voting_status,
            voting_deadline=deadline,
            hours_remaining=hours_remaining,
        )

    def get_statistics(
        self,
        db: Session,
        *,
        principal: Principal,
        oracle: MembershipOracle,
        project_id: uuid.UUID,
        session: Optional[str] = None,
        proposal_id: Optional[uuid.UUID] = None,
        now: Optional[datetime] = None,
    ) -> VotingStatistics:
        project = self.state_machine.get_project(db, project_id)
        require_owner_or_member(oracle, principal, project)
        return self._compute_statistics(
            db,
            project,
            session=session,
            proposal_id=proposal_id,
            total_members=oracle.count_active_members(project.society_id),
            now=now or utcnow(),
        )

    def get_vote_details(
        self,
        db: Session,
        *,
        principal: Principal,
        project_id: uuid.UUID,
        session: Optional[str] = None,
    ) -> List[Ballot]:
        """Owner-only per-voter breakdown, newest first."""
        project = self.state_machine.get_project(db, project_id)
        require_project_owner(principal, project, "view individual votes")

        q = select(Ballot).where(Ballot.project_id == project.id)
        if session:
            q = q.where(Ballot.voting_session == session)
        return list(db.execute(q.order_by(Ballot.voted_at.desc())).scalars())

    def tally_proposals(
        self,
        db: Session,
        project: RedevelopmentProject,
        *,
        session: Optional[str] = None,
    ) -> List[ProposalResult]:
        session = session or get_settings().selection_voting_session

        proposals = db.execute(
            select(DeveloperProposal).where(
                DeveloperProposal.project_id == project.id,
                DeveloperProposal.status.not_in(NOT_TALLIED),
            )
        ).scalars()
        results = {
            p.id: ProposalResult(
                proposal_id=p.id,
                developer_id=p.developer_id,
                title=p.title,
                status=p.status,
                submitted_at=p.submitted_at,
            )
            for p in proposals
        }

        rows = db.execute(
            select(Ballot.proposal_id, Ballot.vote, func.count(Ballot.id))
            .where(
                Ballot.project_id == project.id,
                Ballot.voting_session == session,
                Ballot.proposal_id.is_not(None),
            )
            .group_by(Ballot.proposal_id, Ballot.vote)
        ).all()
        for proposal_id, vote, count in rows:
            result = results.get(proposal_id)
            if result is None:
                continue
            if vote is True:
                result.yes_votes += int(count)
            elif vote is False:
                result.no_votes += int(count)
            else:
                result.abstain_votes += int(count)

        for result in results.values():
            result.total_votes = result.yes_votes + result.no_votes + result.abstain_votes
            result.approval_percentage = half_up_percent(result.yes_votes, result.total_votes)
            result.meets_threshold = (
                result.total_votes > 0
                and result.approval_percentage >= project.minimum_approval_percentage
            )

        return sorted(
            results.values(),
            key=lambda r: (-r.approval_percentage, -r.yes_votes, as_utc(r.submitted_at) or as_utc(utcnow())),
        )

    def proposal_results(
        self,
        db: Session,
        *,
        principal: Principal,
        oracle: MembershipOracle,
        project_id: uuid.UUID,
        session: Optional[str] = None,
    ) -> List[ProposalResult]:
        project = self.state_machine.get_project(db, project_id)
        require_owner_or_member(oracle, principal, project)
        return self.tally_proposals(db, project, session=session)

    def distinct_voters(self, db: Session, *, project_id: uuid.UUID, session: Optional[str]) -> int:
        q = select(func.count(func.distinct(Ballot.member_id))).where(Ballot.project_id == project_id)
        if session:
            q = q.where(Ballot.voting_session == session)
        return int(db.execute(q).scalar_one())

    # ---------------------------
    # VERIFICATION + MEMBER READS
    # ---------------------------

    def verify_vote(
        self,
        db: Session,
        *,
        principal: Principal,
        ballot_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> Ballot:
        ballot = db.get(Ballot, ballot_id)
        if not ballot:
            raise NotFound("Vote not found.", context={"voteId": str(ballot_id)})

        project = self.state_machine.get_project(db, ballot.project_id)
        require_project_owner(principal, project, "verify votes")

        ballot.is_verified = True
        ballot.verified_by = principal.user_id
        ballot.verified_at = now or utcnow()
        db.commit()
        db.refresh(ballot)
        return ballot

    def get_my_vote(
        self,
        db: Session,
        *,
        principal: Principal,
        project_id: uuid.UUID,
        session: str,
        proposal_id: Optional[uuid.UUID] = None,
    ) -> Ballot:
        q = select(Ballot).where(
            Ballot.project_id == project_id,
            Ballot.member_id == principal.user_id,
            Ballot.voting_session == session,
        )
        if proposal_id:
            q = q.where(Ballot.proposal_id == proposal_id)
        ballot = db.execute(q.order_by(Ballot.voted_at.desc())).scalars().first()
        if not ballot:
            raise NotFound("Vote not found.")
        return ballot

    def my_votes(
        self,
        db: Session,
        *,
        principal: Principal,
        project_id: Optional[uuid.UUID] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Ballot], int]:
        if page < 1:
            raise ValidationError("page must be a positive integer.")
        if not (1 <= limit <= MAX_PAGE_SIZE):
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}.")

        conditions = [Ballot.member_id == principal.user_id]
        if project_id:
            conditions.append(Ballot.project_id == project_id)

        total = int(db.execute(select(func.count(Ballot.id)).where(*conditions)).scalar_one())
        rows = list(
            db.execute(
                select(Ballot)
                .where(*conditions)
                .order_by(Ballot.voted_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).scalars()
        )
        return rows, total

    def has_voted(
        self,
        db: Session,
        *,
        principal: Principal,
        project_id: uuid.UUID,
        session: Optional[str] = None,
    ) -> Optional[Ballot]:
        q = select(Ballot).where(
            Ballot.project_id == project_id,
            Ballot.member_id == principal.user_id,
        )
        if session:
            q = q.where(Ballot.voting_session == session)
        return db.execute(q.order_by(Ballot.voted_at.desc())).scalars().first()
