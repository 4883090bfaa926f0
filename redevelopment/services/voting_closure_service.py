# redevelopment/services/voting_closure_service.py
from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from redevelopment.core.clock import as_utc, utcnow
from redevelopment.core.config import get_settings
from redevelopment.core.errors import StateConflict
from redevelopment.core.project_states import ProjectAction, ProjectStatus
from redevelopment.models.enums import PROPOSAL_SELECTABLE, VotingStatus
from redevelopment.models.project import RedevelopmentProject
from redevelopment.models.proposal import DeveloperProposal
from redevelopment.policies.membership import MembershipOracle
from redevelopment.policies.ownership import require_project_owner
from redevelopment.policies.rbac import ACTION_MANAGE_PROJECT, Principal, require_action
from redevelopment.services.notifications import (
    EventType,
    LoggingDispatcher,
    NotificationDispatcher,
    NotificationEvent,
    dispatch_safely,
)
from redevelopment.services.project_state_machine import ProjectStateMachine
from redevelopment.services.selection_service import SelectionCoordinator, SelectionOutcome
from redevelopment.services.voting_service import ProposalResult, VotingLedger

logger = logging.getLogger(__name__)


class ClosureReason:
    CLOSED_BY_OWNER = "closed_by_owner"
    DEADLINE_PASSED = "deadline_passed"
    MAJORITY_REACHED = "majority_reached"


@dataclass
class ClosureOutcome:
    project_id: uuid.UUID
    reason: str
    # "selected" | "cancelled"
    result: str
    winner: Optional[ProposalResult] = None
    results: List[ProposalResult] = field(default_factory=list)


@dataclass
class SweepReport:
    checked: int = 0
    closed: List[ClosureOutcome] = field(default_factory=list)
    failed: List[uuid.UUID] = field(default_factory=list)


class VotingClosureService:
    """
    Ends a project's voting window and finalises it:
      - best proposal (approval %, then yes ballots, then earliest submission)
        meets the project's minimum approval → selected via SelectionCoordinator
      - otherwise → project cancelled
    voting_status flips to closed inside the same transaction.
    """

    def __init__(
        self,
        dispatcher: Optional[NotificationDispatcher] = None,
        state_machine: Optional[ProjectStateMachine] = None,
        ledger: Optional[VotingLedger] = None,
        selection: Optional[SelectionCoordinator] = None,
    ):
        self.dispatcher = dispatcher or LoggingDispatcher()
        self.state_machine = state_machine or ProjectStateMachine(self.dispatcher)
        self.ledger = ledger or VotingLedger(self.dispatcher, self.state_machine)
        self.selection = selection or SelectionCoordinator(self.dispatcher, self.state_machine)

    def _pick_winner(self, results: List[ProposalResult]) -> Optional[ProposalResult]:
        # tally_proposals already orders best-first
        selectable = {s.value for s in PROPOSAL_SELECTABLE}
        for result in results:
            if result.status in selectable and result.total_votes > 0:
                return result
        return None

    def close_voting(
        self,
        db: Session,
        *,
        project_id: uuid.UUID,
        actor: Optional[Principal] = None,
        reason: str = ClosureReason.CLOSED_BY_OWNER,
        now: Optional[datetime] = None,
    ) -> ClosureOutcome:
        """
        actor=None means a system closure (auto-close / sweep).
        """
        now = now or utcnow()
        project = self.state_machine.get_project(db, project_id)
        if actor is not None:
            require_action(actor, ACTION_MANAGE_PROJECT)
            require_project_owner(actor, project, "close voting")

        if project.status != ProjectStatus.voting.value or project.voting_status != VotingStatus.open.value:
            raise StateConflict(
                "Voting is not open for this project.",
                current_state=project.status,
                action=ProjectAction.CLOSE_VOTING.value,
            )

        session = get_settings().selection_voting_session
        results = self.ledger.tally_proposals(db, project, session=session)
        winner = self._pick_winner(results)
        actor_id = actor.user_id if actor else None
        closed_values = {"voting_status": VotingStatus.closed.value, "voting_closed_at": now}

        selection: Optional[SelectionOutcome] = None
        try:
            if winner is not None and winner.meets_threshold:
                proposal = db.get(DeveloperProposal, winner.proposal_id)
                selection = self.selection.commit_selection(
                    db,
                    project_id=project.id,
                    proposal=proposal,
                    actor_id=actor_id,
                    reason=f"voting_closed:{reason}",
                    project_values=closed_values,
                    now=now,
                )
                result = "selected"
            else:
                self.state_machine.transition(
                    db,
                    project_id=project.id,
                    action=ProjectAction.CANCEL,
                    actor_id=actor_id,
                    reason=f"voting_closed:{reason}:threshold_not_met",
                    values=closed_values,
                    extra_where=[RedevelopmentProject.voting_status == VotingStatus.open.value],
                    now=now,
                )
                result = "cancelled"
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(project)
        logger.info(
            "voting_closed",
            extra={
                "project_id": str(project.id),
                "reason": reason,
                "result": result,
                "winner_proposal_id": str(winner.proposal_id) if winner else None,
                "actor_id": actor_id,
            },
        )

        events = [
            NotificationEvent(
                event_type=EventType.VOTING_CLOSED,
                project_id=project.id,
                society_id=project.society_id,
                payload={
                    "reason": reason,
                    "result": result,
                    "winnerProposalId": str(winner.proposal_id) if winner and selection else None,
                    "approvalPercentage": winner.approval_percentage if winner else 0,
                },
            )
        ]
        if selection is not None:
            events.extend(self.selection.selection_events(selection))
        dispatch_safely(self.dispatcher, events)

        return ClosureOutcome(
            project_id=project.id,
            reason=reason,
            result=result,
            winner=winner,
            results=results,
        )

    def check_and_auto_close(
        self,
        db: Session,
        *,
        project_id: uuid.UUID,
        oracle: MembershipOracle,
        now: Optional[datetime] = None,
    ) -> Optional[ClosureOutcome]:
        """
        Closes when the deadline has passed or at least half the active
        members (rounded up) have cast a ballot in the selection session.
        Returns None when the project stays open.
        """
        now = as_utc(now or utcnow())
        project = self.state_machine.get_project(db, project_id)
        if project.status != ProjectStatus.voting.value or project.voting_status != VotingStatus.open.value:
            return None

        deadline = as_utc(project.voting_deadline)
        if deadline is not None and now >= deadline:
            return self.close_voting(db, project_id=project.id, reason=ClosureReason.DEADLINE_PASSED, now=now)

        active = oracle.count_active_members(project.society_id)
        if active > 0:
            voters = self.ledger.distinct_voters(
                db, project_id=project.id, session=get_settings().selection_voting_session
            )
            if voters >= math.ceil(active / 2):
                return self.close_voting(db, project_id=project.id, reason=ClosureReason.MAJORITY_REACHED, now=now)

        return None

    def sweep(
        self,
        db: Session,
        *,
        oracle: MembershipOracle,
        now: Optional[datetime] = None,
    ) -> SweepReport:
        """
        On-demand pass over every project with open voting.
        One failing project is logged and skipped.
        """
        now = now or utcnow()
        project_ids = list(
            db.execute(
                select(RedevelopmentProject.id).where(
                    RedevelopmentProject.status == ProjectStatus.voting.value,
                    RedevelopmentProject.voting_status == VotingStatus.open.value,
                )
            ).scalars()
        )

        report = SweepReport()
        for project_id in project_ids:
            report.checked += 1
            try:
                outcome = self.check_and_auto_close(db, project_id=project_id, oracle=oracle, now=now)
            except Exception:
                db.rollback()
                logger.exception("voting_sweep_failed", extra={"project_id": str(project_id)})
                report.failed.append(project_id)
                continue
            if outcome is not None:
                report.closed.append(outcome)

        logger.info(
            "voting_sweep_done",
            extra={"checked": report.checked, "closed": len(report.closed), "failed": len(report.failed)},
        )
        return report
