# redevelopment/services/proposals_service.py
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, FrozenSet, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from redevelopment.core.clock import utcnow
from redevelopment.core.config import get_settings
from redevelopment.core.errors import (
    DuplicateProposal,
    NotFound,
    StateConflict,
    ValidationError,
)
from redevelopment.models.enums import (
    PROPOSAL_DEVELOPER_EDITABLE,
    PROPOSAL_VISIBLE_FOR_COMPARISON,
    ProposalStatus,
    values,
)
from redevelopment.models.project import RedevelopmentProject
from redevelopment.models.proposal import DeveloperProposal
from redevelopment.policies.membership import MembershipOracle
from redevelopment.policies.ownership import (
    require_owner_or_member,
    require_project_owner,
    require_proposal_developer,
)
from redevelopment.policies.rbac import (
    ACTION_EVALUATE_PROPOSAL,
    ACTION_SUBMIT_PROPOSAL,
    Principal,
    require_action,
)
from redevelopment.services.notifications import (
    EventType,
    LoggingDispatcher,
    NotificationDispatcher,
    NotificationEvent,
    dispatch_safely,
)
from redevelopment.services.project_state_machine import ProjectStateMachine

logger = logging.getLogger(__name__)


# fields a developer may set on submit / update
TERM_FIELDS = (
    "title",
    "description",
    "corpus_amount",
    "rent_amount",
    "fsi",
    "timeline",
    "proposed_amenities",
    "proposed_timeline",
    "financial_breakdown",
    "developer_info",
)
NUMERIC_TERMS = ("corpus_amount", "rent_amount", "fsi")
REQUIRED_TERMS = ("title", "corpus_amount", "rent_amount", "fsi")

# a revived (previously withdrawn) proposal starts from a clean slate
REVIVAL_RESET: Dict[str, Any] = {
    "description": "",
    "timeline": "",
    "proposed_amenities": [],
    "proposed_timeline": {},
    "financial_breakdown": {},
    "developer_info": {},
    "technical_score": None,
    "financial_score": None,
    "timeline_score": None,
    "overall_score": None,
    "evaluated_by": None,
    "evaluated_at": None,
    "evaluation_comments": None,
    "owner_comments": None,
    "approved_by": None,
    "approved_at": None,
    "rejection_reason": None,
    "rejected_by": None,
    "rejected_at": None,
    "withdrawn_at": None,
}

NOT_EVALUABLE = frozenset({ProposalStatus.draft, ProposalStatus.withdrawn})
REVIEWABLE_FROM = frozenset({ProposalStatus.submitted})
SHORTLISTABLE_FROM = frozenset({ProposalStatus.submitted, ProposalStatus.under_review})
APPROVABLE_FROM = frozenset(
    {ProposalStatus.submitted, ProposalStatus.under_review, ProposalStatus.shortlisted}
)
REJECTABLE_FROM = frozenset(
    {
        ProposalStatus.submitted,
        ProposalStatus.under_review,
        ProposalStatus.shortlisted,
        ProposalStatus.approved,
    }
)


def _decimal(name: str, raw: Any) -> Decimal:
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{name} must be a number.")
    if not value.is_finite() or value < 0:
        raise ValidationError(f"{name} must be a non-negative number.")
    return value


def _clean_terms(raw: Dict[str, Any], *, require_all: bool) -> Dict[str, Any]:
    terms = {k: v for k, v in raw.items() if k in TERM_FIELDS and v is not None}

    if require_all:
        missing = [k for k in REQUIRED_TERMS if k not in terms]
        if missing:
            raise ValidationError(f"Missing required proposal fields: {', '.join(missing)}.")

    if "title" in terms:
        terms["title"] = str(terms["title"]).strip()
        if not terms["title"]:
            raise ValidationError("title must not be empty.")

    for name in NUMERIC_TERMS:
        if name in terms:
            terms[name] = _decimal(name, terms[name])

    if "proposed_amenities" in terms and not isinstance(terms["proposed_amenities"], list):
        raise ValidationError("proposed_amenities must be a list.")
    for blob in ("proposed_timeline", "financial_breakdown", "developer_info"):
        if blob in terms and not isinstance(terms[blob], dict):
            raise ValidationError(f"{blob} must be an object.")

    return terms


def weighted_overall(technical: int, financial: int, timeline: int) -> int:
    """
    Weighted mean of the three scores, rounded half-up.
    Equal weights (the default) give the plain mean: 80/70/75 → 75.
    """
    s = get_settings()
    weights = (
        Decimal(str(s.evaluation_weight_technical)),
        Decimal(str(s.evaluation_weight_financial)),
        Decimal(str(s.evaluation_weight_timeline)),
    )
    total_weight = sum(weights)
    if total_weight <= 0:
        raise ValidationError("Evaluation weights must sum to a positive number.")
    weighted = sum(w * Decimal(v) for w, v in zip(weights, (technical, financial, timeline)))
    return int((weighted / total_weight).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _score(name: str, raw: Any) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValidationError(f"{name} must be an integer.")
    value = raw
    if not (0 <= value <= 100):
        raise ValidationError(f"{name} must be between 0 and 100.")
    return value


class ProposalService:
    """
    Developer proposals for a redevelopment project.

    Status changes go through conditional UPDATEs on the expected current
    status so they cannot interleave with a concurrent selection.
    """

    def __init__(
        self,
        dispatcher: Optional[NotificationDispatcher] = None,
        state_machine: Optional[ProjectStateMachine] = None,
    ):
        self.dispatcher = dispatcher or LoggingDispatcher()
        self.state_machine = state_machine or ProjectStateMachine(self.dispatcher)

    # ---------------------------
    # READS
    # ---------------------------

    def get(self, db: Session, proposal_id: uuid.UUID) -> DeveloperProposal:
        proposal = db.get(DeveloperProposal, proposal_id)
        if not proposal:
            raise NotFound("Proposal not found.", context={"proposalId": str(proposal_id)})
        return proposal

    def get_visible(
        self,
        db: Session,
        *,
        principal: Principal,
        proposal_id: uuid.UUID,
        oracle: MembershipOracle,
    ) -> DeveloperProposal:
        """
        The submitting developer always sees their proposal; the owner and
        active members see it once it is past draft.
        """
        proposal = self.get(db, proposal_id)
        if proposal.developer_id == principal.user_id:
            return proposal

        project = self.state_machine.get_project(db, proposal.project_id)
        require_owner_or_member(oracle, principal, project)
        if proposal.status == ProposalStatus.draft.value:
            raise NotFound("Proposal not found.", context={"proposalId": str(proposal_id)})
        return proposal

    def comparison(
        self,
        db: Session,
        *,
        principal: Principal,
        project_id: uuid.UUID,
        oracle: MembershipOracle,
    ) -> List[DeveloperProposal]:
        """
        Side-by-side view for the owner and voting members:
        best overall score first, unscored proposals last, then by submission time.
        """
        project = self.state_machine.get_project(db, project_id)
        require_owner_or_member(oracle, principal, project)

        rows = list(
            db.execute(
                select(DeveloperProposal).where(
                    DeveloperProposal.project_id == project_id,
                    DeveloperProposal.status.in_(values(PROPOSAL_VISIBLE_FOR_COMPARISON)),
                )
            ).scalars()
        )
        rows.sort(
            key=lambda p: (
                p.overall_score is None,
                -(p.overall_score or 0),
                p.submitted_at or p.created_at,
            )
        )
        return rows

    # ---------------------------
    # INTERNAL
    # ---------------------------

    def _change_status(
        self,
        db: Session,
        proposal: DeveloperProposal,
        *,
        expected: FrozenSet[ProposalStatus],
        target: ProposalStatus,
        action: str,
        extra: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """
        UPDATE ... WHERE status IN expected. Zero rows means the proposal moved
        (or was never in an allowed state); nothing is written.
        """
        now = now or utcnow()
        if ProposalStatus(proposal.status) not in expected:
            raise StateConflict(
                f"Cannot {action} a proposal in status '{proposal.status}'.",
                current_state=proposal.status,
                action=action,
            )

        res = db.execute(
            update(DeveloperProposal)
            .where(
                DeveloperProposal.id == proposal.id,
                DeveloperProposal.status.in_(values(expected)),
            )
            .values(status=target.value, updated_at=now, **(extra or {}))
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            db.rollback()
            db.refresh(proposal)
            raise StateConflict(
                f"Proposal status changed concurrently; cannot {action}.",
                current_state=proposal.status,
                action=action,
            )

    def _owner_guard(self, db: Session, principal: Principal, proposal: DeveloperProposal, action: str) -> RedevelopmentProject:
        require_action(principal, ACTION_EVALUATE_PROPOSAL)
        project = self.state_machine.get_project(db, proposal.project_id)
        require_project_owner(principal, project, action)
        return project

    def _submission_events(
        self,
        project: RedevelopmentProject,
        proposal: DeveloperProposal,
        transitioned: bool,
    ) -> List[NotificationEvent]:
        events = [
            NotificationEvent(
                event_type=EventType.NEW_PROPOSAL,
                project_id=project.id,
                society_id=project.society_id,
                recipient_id=project.owner_id,
                payload={"proposalId": str(proposal.id), "developerId": proposal.developer_id},
            )
        ]
        if transitioned:
            events.append(
                NotificationEvent(
                    event_type=EventType.PROJECT_UPDATE,
                    project_id=project.id,
                    society_id=project.society_id,
                    payload={"toStatus": project.status},
                )
            )
        return events

    # ---------------------------
    # DEVELOPER OPERATIONS
    # ---------------------------

    def submit(
        self,
        db: Session,
        *,
        principal: Principal,
        project_id: uuid.UUID,
        terms: Dict[str, Any],
        as_draft: bool = False,
        now: Optional[datetime] = None,
    ) -> DeveloperProposal:
        """
        Rules:
        - project must be planning / tender_open / proposals_received
        - one proposal per developer per project; a withdrawn one is revived in place
        - a non-draft submission moves the project to proposals_received exactly once
        """
        now = now or utcnow()
        require_action(principal, ACTION_SUBMIT_PROPOSAL)

        project = self.state_machine.get_project(db, project_id)
        self.state_machine.ensure_accepting_proposals(project)
        clean = _clean_terms(terms, require_all=True)

        status = ProposalStatus.draft if as_draft else ProposalStatus.submitted
        existing = db.execute(
            select(DeveloperProposal).where(
                DeveloperProposal.project_id == project_id,
                DeveloperProposal.developer_id == principal.user_id,
            )
        ).scalar_one_or_none()

        if existing and existing.status != ProposalStatus.withdrawn.value:
            raise DuplicateProposal(
                "You have already submitted a proposal for this project.",
                context={"proposalId": str(existing.id), "status": existing.status},
            )

        try:
            if existing:
                # revive the withdrawn row; evaluation and decisions start over
                res = db.execute(
                    update(DeveloperProposal)
                    .where(
                        DeveloperProposal.id == existing.id,
                        DeveloperProposal.status == ProposalStatus.withdrawn.value,
                    )
                    .values(
                        **{
                            **REVIVAL_RESET,
                            **clean,
                            "status": status.value,
                            "submitted_at": None if as_draft else now,
                            "updated_at": now,
                        }
                    )
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    raise DuplicateProposal(
                        "You have already submitted a proposal for this project.",
                        context={"proposalId": str(existing.id)},
                    )
                proposal_id = existing.id
            else:
                proposal = DeveloperProposal(
                    project_id=project_id,
                    developer_id=principal.user_id,
                    status=status.value,
                    submitted_at=None if as_draft else now,
                    created_at=now,
                    updated_at=now,
                    **clean,
                )
                db.add(proposal)
                db.flush()
                proposal_id = proposal.id

            # the project row must still accept proposals when this commits
            transitioned = self.state_machine.hold_for_submission(
                db, project_id=project_id, actor_id=principal.user_id, receive=not as_draft, now=now
            )
            db.commit()
        except IntegrityError:
            # a concurrent submit from the same developer won the unique key
            db.rollback()
            raise DuplicateProposal("You have already submitted a proposal for this project.")
        except Exception:
            db.rollback()
            raise

        proposal = self.get(db, proposal_id)
        db.refresh(proposal)
        db.refresh(project)

        logger.info(
            "proposal_submitted",
            extra={
                "project_id": str(project_id),
                "proposal_id": str(proposal.id),
                "developer_id": principal.user_id,
                "status": proposal.status,
            },
        )
        if not as_draft:
            dispatch_safely(self.dispatcher, self._submission_events(project, proposal, transitioned))
        return proposal

    def update(
        self,
        db: Session,
        *,
        principal: Principal,
        proposal_id: uuid.UUID,
        changes: Dict[str, Any],
        submit: bool = False,
        now: Optional[datetime] = None,
    ) -> DeveloperProposal:
        """
        Developer edits while draft/submitted. submit=True promotes a draft,
        which counts as a submission for the project transition.
        """
        now = now or utcnow()
        proposal = self.get(db, proposal_id)
        require_proposal_developer(principal, proposal, "update")

        current = ProposalStatus(proposal.status)
        if current not in PROPOSAL_DEVELOPER_EDITABLE:
            raise StateConflict(
                f"Cannot update a proposal in status '{proposal.status}'.",
                current_state=proposal.status,
                action="update_proposal",
            )

        clean = _clean_terms(changes, require_all=False)
        promote = submit and current == ProposalStatus.draft
        project = self.state_machine.get_project(db, proposal.project_id)
        if promote:
            self.state_machine.ensure_accepting_proposals(project)

        new_values: Dict[str, Any] = dict(clean)
        if promote:
            new_values["status"] = ProposalStatus.submitted.value
            new_values["submitted_at"] = now

        transitioned = False
        try:
            res = db.execute(
                update(DeveloperProposal)
                .where(
                    DeveloperProposal.id == proposal.id,
                    DeveloperProposal.status == current.value,
                )
                .values(updated_at=now, **new_values)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise StateConflict(
                    "Proposal status changed concurrently; cannot update.",
                    current_state=None,
                    action="update_proposal",
                )
            if promote:
                transitioned = self.state_machine.hold_for_submission(
                    db, project_id=project.id, actor_id=principal.user_id, receive=True, now=now
                )
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(proposal)
        if promote:
            db.refresh(project)
            dispatch_safely(self.dispatcher, self._submission_events(project, proposal, transitioned))
        return proposal

    def withdraw(
        self,
        db: Session,
        *,
        principal: Principal,
        proposal_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> DeveloperProposal:
        now = now or utcnow()
        proposal = self.get(db, proposal_id)
        require_proposal_developer(principal, proposal, "withdraw")

        self._change_status(
            db,
            proposal,
            expected=PROPOSAL_DEVELOPER_EDITABLE,
            target=ProposalStatus.withdrawn,
            action="withdraw",
            extra={"withdrawn_at": now},
            now=now,
        )
        db.commit()
        db.refresh(proposal)
        logger.info(
            "proposal_withdrawn",
            extra={"proposal_id": str(proposal.id), "developer_id": principal.user_id},
        )
        return proposal

    def delete_draft(self, db: Session, *, principal: Principal, proposal_id: uuid.UUID) -> None:
        proposal = self.get(db, proposal_id)
        require_proposal_developer(principal, proposal, "delete")

        res = db.execute(
            delete(DeveloperProposal)
            .where(
                DeveloperProposal.id == proposal.id,
                DeveloperProposal.status == ProposalStatus.draft.value,
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            db.rollback()
            raise StateConflict(
                "Only draft proposals can be deleted; withdraw a submitted proposal instead.",
                current_state=proposal.status,
                action="delete_proposal",
            )
        db.commit()

    # ---------------------------
    # OWNER OPERATIONS
    # ---------------------------

    def evaluate(
        self,
        db: Session,
        *,
        principal: Principal,
        proposal_id: uuid.UUID,
        technical_score: int,
        financial_score: int,
        timeline_score: int,
        comments: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DeveloperProposal:
        """
        Stores scores + evaluator; status is untouched.
        """
        now = now or utcnow()
        proposal = self.get(db, proposal_id)
        self._owner_guard(db, principal, proposal, "evaluate proposals")

        if ProposalStatus(proposal.status) in NOT_EVALUABLE:
            raise StateConflict(
                f"Cannot evaluate a proposal in status '{proposal.status}'.",
                current_state=proposal.status,
                action="evaluate",
            )

        technical = _score("technicalScore", technical_score)
        financial = _score("financialScore", financial_score)
        timeline = _score("timelineScore", timeline_score)

        proposal.technical_score = technical
        proposal.financial_score = financial
        proposal.timeline_score = timeline
        proposal.overall_score = weighted_overall(technical, financial, timeline)
        proposal.evaluated_by = principal.user_id
        proposal.evaluated_at = now
        proposal.evaluation_comments = comments
        proposal.updated_at = now

        db.commit()
        db.refresh(proposal)
        return proposal

    def start_review(self, db: Session, *, principal: Principal, proposal_id: uuid.UUID) -> DeveloperProposal:
        proposal = self.get(db, proposal_id)
        self._owner_guard(db, principal, proposal, "review proposals")
        self._change_status(
            db,
            proposal,
            expected=REVIEWABLE_FROM,
            target=ProposalStatus.under_review,
            action="start_review",
        )
        db.commit()
        db.refresh(proposal)
        return proposal

    def shortlist(self, db: Session, *, principal: Principal, proposal_id: uuid.UUID) -> DeveloperProposal:
        proposal = self.get(db, proposal_id)
        self._owner_guard(db, principal, proposal, "shortlist proposals")
        self._change_status(
            db,
            proposal,
            expected=SHORTLISTABLE_FROM,
            target=ProposalStatus.shortlisted,
            action="shortlist",
        )
        db.commit()
        db.refresh(proposal)
        return proposal

    def approve(
        self,
        db: Session,
        *,
        principal: Principal,
        proposal_id: uuid.UUID,
        comments: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DeveloperProposal:
        """
        Owner endorsement. Independent of selection: an approved proposal is
        still only a candidate until the selection coordinator picks it.
        """
        now = now or utcnow()
        proposal = self.get(db, proposal_id)
        project = self._owner_guard(db, principal, proposal, "approve proposals")

        if project.selected_proposal_id is not None:
            raise StateConflict(
                "Project already has a selected proposal.",
                current_state=project.status,
                action="approve",
            )

        self._change_status(
            db,
            proposal,
            expected=APPROVABLE_FROM,
            target=ProposalStatus.approved,
            action="approve",
            extra={"approved_by": principal.user_id, "approved_at": now, "owner_comments": comments},
            now=now,
        )
        db.commit()
        db.refresh(proposal)

        dispatch_safely(
            self.dispatcher,
            [
                NotificationEvent(
                    event_type=EventType.PROPOSAL_APPROVED,
                    project_id=project.id,
                    society_id=project.society_id,
                    recipient_id=proposal.developer_id,
                    payload={"proposalId": str(proposal.id), "comments": comments},
                )
            ],
        )
        return proposal

    def reject(
        self,
        db: Session,
        *,
        principal: Principal,
        proposal_id: uuid.UUID,
        reason: str,
        now: Optional[datetime] = None,
    ) -> DeveloperProposal:
        now = now or utcnow()
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A rejection reason is required.")

        proposal = self.get(db, proposal_id)
        project = self._owner_guard(db, principal, proposal, "reject proposals")

        self._change_status(
            db,
            proposal,
            expected=REJECTABLE_FROM,
            target=ProposalStatus.rejected,
            action="reject",
            extra={"rejection_reason": reason, "rejected_by": principal.user_id, "rejected_at": now},
            now=now,
        )
        db.commit()
        db.refresh(proposal)

        dispatch_safely(
            self.dispatcher,
            [
                NotificationEvent(
                    event_type=EventType.PROPOSAL_REJECTED,
                    project_id=project.id,
                    society_id=project.society_id,
                    recipient_id=proposal.developer_id,
                    payload={"proposalId": str(proposal.id), "reason": reason},
                )
            ],
        )
        return proposal
