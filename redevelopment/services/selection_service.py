# redevelopment/services/selection_service.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from redevelopment.core.clock import utcnow
from redevelopment.core.config import get_settings
from redevelopment.core.errors import NotFound, StateConflict, ValidationError
from redevelopment.core.project_states import ProjectAction
from redevelopment.models.enums import (
    PROPOSAL_COMPETING,
    PROPOSAL_SELECTABLE,
    ProposalStatus,
    values,
)
from redevelopment.models.project import RedevelopmentProject
from redevelopment.models.proposal import DeveloperProposal
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

logger = logging.getLogger(__name__)

ALREADY_SELECTED = "Project already has a selected proposal."


@dataclass
class SelectionOutcome:
    project_id: uuid.UUID
    society_id: uuid.UUID
    proposal_id: uuid.UUID
    developer_id: str
    # (proposal_id, developer_id) of every competitor moved to rejected
    rejected: List[Tuple[uuid.UUID, str]] = field(default_factory=list)


class SelectionCoordinator:
    """
    Picks exactly one winning proposal per project.

    Order inside the single transaction:
      1) claim the project: UPDATE ... WHERE selected_proposal_id IS NULL AND status = 'voting'
      2) winner → selected (conditional on a selectable status)
      3) remaining open competitors → rejected
    A caller that loses step 1 gets StateConflict and writes nothing.
    """

    def __init__(
        self,
        dispatcher: Optional[NotificationDispatcher] = None,
        state_machine: Optional[ProjectStateMachine] = None,
    ):
        self.dispatcher = dispatcher or LoggingDispatcher()
        self.state_machine = state_machine or ProjectStateMachine(self.dispatcher)

    def _selected_proposal_id(self, db: Session, project_id: uuid.UUID) -> Optional[uuid.UUID]:
        return db.execute(
            select(RedevelopmentProject.selected_proposal_id).where(RedevelopmentProject.id == project_id)
        ).scalar_one_or_none()

    def commit_selection(
        self,
        db: Session,
        *,
        project_id: uuid.UUID,
        proposal: DeveloperProposal,
        actor_id: Optional[str],
        reason: str = "proposal_selected",
        project_values: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> SelectionOutcome:
        """
        Writes the selection inside the caller's transaction. Does NOT commit;
        on any raise the caller must roll back.
        """
        now = now or utcnow()

        if proposal.project_id != project_id:
            raise ValidationError(
                "Proposal does not belong to this project.",
                context={"proposalId": str(proposal.id), "projectId": str(project_id)},
            )

        if self._selected_proposal_id(db, project_id) is not None:
            raise StateConflict(ALREADY_SELECTED, action=ProjectAction.SELECT_PROPOSAL.value)

        if ProposalStatus(proposal.status) not in PROPOSAL_SELECTABLE:
            raise StateConflict(
                f"Cannot select a proposal in status '{proposal.status}'.",
                current_state=proposal.status,
                action=ProjectAction.SELECT_PROPOSAL.value,
            )

        # 1) project claim; the guard on selected_proposal_id makes this single-winner
        try:
            self.state_machine.transition(
                db,
                project_id=project_id,
                action=ProjectAction.SELECT_PROPOSAL,
                actor_id=actor_id,
                reason=reason,
                values={
                    "selected_proposal_id": proposal.id,
                    "selected_developer_id": proposal.developer_id,
                    **(project_values or {}),
                },
                extra_where=[RedevelopmentProject.selected_proposal_id.is_(None)],
                now=now,
            )
        except StateConflict as exc:
            if self._selected_proposal_id(db, project_id) is not None:
                raise StateConflict(
                    ALREADY_SELECTED,
                    current_state=exc.current_state,
                    action=ProjectAction.SELECT_PROPOSAL.value,
                )
            raise

        # 2) winner
        res = db.execute(
            update(DeveloperProposal)
            .where(
                DeveloperProposal.id == proposal.id,
                DeveloperProposal.status.in_(values(PROPOSAL_SELECTABLE)),
            )
            .values(status=ProposalStatus.selected.value, selected_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise StateConflict(
                "Proposal status changed concurrently; cannot select it.",
                action=ProjectAction.SELECT_PROPOSAL.value,
            )

        # 3) competitors
        competitors = db.execute(
            select(DeveloperProposal.id, DeveloperProposal.developer_id).where(
                DeveloperProposal.project_id == project_id,
                DeveloperProposal.id != proposal.id,
                DeveloperProposal.status.in_(values(PROPOSAL_COMPETING)),
            )
        ).all()

        if competitors:
            db.execute(
                update(DeveloperProposal)
                .where(
                    DeveloperProposal.id.in_([row.id for row in competitors]),
                    DeveloperProposal.status.in_(values(PROPOSAL_COMPETING)),
                )
                .values(
                    status=ProposalStatus.rejected.value,
                    rejection_reason=get_settings().selection_rejection_reason,
                    rejected_by=actor_id,
                    rejected_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )

        society_id = db.execute(
            select(RedevelopmentProject.society_id).where(RedevelopmentProject.id == project_id)
        ).scalar_one()

        logger.info(
            "proposal_selected",
            extra={
                "project_id": str(project_id),
                "proposal_id": str(proposal.id),
                "developer_id": proposal.developer_id,
                "rejected_count": len(competitors),
                "actor_id": actor_id,
            },
        )
        return SelectionOutcome(
            project_id=project_id,
            society_id=society_id,
            proposal_id=proposal.id,
            developer_id=proposal.developer_id,
            rejected=[(row.id, row.developer_id) for row in competitors],
        )

    def selection_events(self, outcome: SelectionOutcome) -> List[NotificationEvent]:
        events = [
            NotificationEvent(
                event_type=EventType.PROPOSAL_SELECTED,
                project_id=outcome.project_id,
                society_id=outcome.society_id,
                recipient_id=outcome.developer_id,
                payload={"proposalId": str(outcome.proposal_id)},
            )
        ]
        reason = get_settings().selection_rejection_reason
        for proposal_id, developer_id in outcome.rejected:
            events.append(
                NotificationEvent(
                    event_type=EventType.PROPOSAL_REJECTED,
                    project_id=outcome.project_id,
                    society_id=outcome.society_id,
                    recipient_id=developer_id,
                    payload={"proposalId": str(proposal_id), "reason": reason},
                )
            )
        events.append(
            NotificationEvent(
                event_type=EventType.DEVELOPER_SELECTED,
                project_id=outcome.project_id,
                society_id=outcome.society_id,
                payload={
                    "proposalId": str(outcome.proposal_id),
                    "developerId": outcome.developer_id,
                },
            )
        )
        return events

    def select(
        self,
        db: Session,
        *,
        principal: Principal,
        project_id: uuid.UUID,
        proposal_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> DeveloperProposal:
        require_action(principal, ACTION_MANAGE_PROJECT)
        project = self.state_machine.get_project(db, project_id)
        require_project_owner(principal, project, "select a proposal")

        proposal = db.get(DeveloperProposal, proposal_id)
        if proposal is None:
            raise NotFound("Proposal not found.", context={"proposalId": str(proposal_id)})

        try:
            outcome = self.commit_selection(
                db,
                project_id=project.id,
                proposal=proposal,
                actor_id=principal.user_id,
                now=now,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(project)
        db.refresh(proposal)
        dispatch_safely(self.dispatcher, self.selection_events(outcome))
        return proposal
