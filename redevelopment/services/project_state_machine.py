# redevelopment/services/project_state_machine.py
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from redevelopment.core.clock import as_utc, utcnow
from redevelopment.core.config import get_settings
from redevelopment.core.errors import NotFound, StateConflict, ValidationError, Forbidden
from redevelopment.core.project_states import (
    ACCEPTS_PROPOSALS,
    EDITABLE_DETAILS,
    TERMINAL_STATUSES,
    ProjectAction,
    ProjectStatus,
    allowed_from,
    target_of,
)
from redevelopment.models.enums import VotingStatus
from redevelopment.models.project import ProjectStatusTransition, RedevelopmentProject
from redevelopment.models.society import Society
from redevelopment.policies.ownership import require_project_owner
from redevelopment.policies.rbac import (
    ACTION_CREATE_PROJECT,
    ACTION_MANAGE_PROJECT,
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

logger = logging.getLogger(__name__)

MIN_APPROVAL_FLOOR = 50
MIN_APPROVAL_CEILING = 100


def _values(statuses: Iterable[ProjectStatus]) -> List[str]:
    return sorted(s.value for s in statuses)


def _validate_min_approval(value: int) -> int:
    if not (MIN_APPROVAL_FLOOR <= int(value) <= MIN_APPROVAL_CEILING):
        raise ValidationError(
            f"minimumApprovalPercentage must be between {MIN_APPROVAL_FLOOR} and {MIN_APPROVAL_CEILING}."
        )
    return int(value)


class ProjectStateMachine:
    """
    Owns the RedevelopmentProject lifecycle.

    Every status change is a compare-and-set on the status read at commit
    time (UPDATE ... WHERE status = <current>), never a blind overwrite, and
    writes exactly one ProjectStatusTransition row.

    Public methods:
    - get_project / list_for_society / history
    - create_project / update_details / delete_project
    - open_tender / open_voting / start_construction / complete / cancel
    - transition (used by selection + voting closure, does NOT commit)
    - mark_proposals_received (automatic, idempotent, does NOT commit)
    - hold_for_submission (conditional write for proposal submits, does NOT commit)
    - ensure_accepting_proposals / ensure_voting_open (guards)
    """

    def __init__(self, dispatcher: Optional[NotificationDispatcher] = None):
        self.dispatcher = dispatcher or LoggingDispatcher()

    # ---------------------------
    # READS
    # ---------------------------

    def get_project(self, db: Session, project_id: uuid.UUID) -> RedevelopmentProject:
        project = db.get(RedevelopmentProject, project_id)
        if not project:
            raise NotFound("Redevelopment project not found.", context={"projectId": str(project_id)})
        return project

    def list_for_society(self, db: Session, society_id: uuid.UUID) -> List[RedevelopmentProject]:
        return list(
            db.execute(
                select(RedevelopmentProject)
                .where(RedevelopmentProject.society_id == society_id)
                .order_by(RedevelopmentProject.created_at.desc())
            ).scalars()
        )

    def history(self, db: Session, project_id: uuid.UUID) -> List[ProjectStatusTransition]:
        self.get_project(db, project_id)
        return list(
            db.execute(
                select(ProjectStatusTransition)
                .where(ProjectStatusTransition.project_id == project_id)
                .order_by(ProjectStatusTransition.created_at.asc())
            ).scalars()
        )

    # ---------------------------
    # GUARDS
    # ---------------------------

    def _not_accepting(self, status: Optional[str]) -> StateConflict:
        if status == ProjectStatus.voting.value:
            message = (
                "Proposal submission is closed as voting has started. "
                "No new proposals can be submitted during the voting period."
            )
        else:
            message = f"This project is not accepting proposals in status '{status}'."
        return StateConflict(
            message,
            current_state=status,
            action=ProjectAction.SUBMIT_PROPOSAL.value,
            http_status=400,
        )

    def ensure_accepting_proposals(self, project: RedevelopmentProject) -> None:
        if ProjectStatus(project.status) not in ACCEPTS_PROPOSALS:
            raise self._not_accepting(project.status)

    def voting_block_reason(
        self, project: RedevelopmentProject, now: Optional[datetime] = None
    ) -> Optional[Tuple[str, int]]:
        """
        None when ballots may be cast right now, else (message, http status).
        Point-in-time read: a ballot accepted just before the deadline stays valid.
        """
        now = as_utc(now or utcnow())
        if project.status != ProjectStatus.voting.value:
            return "Voting is not currently open for this project.", 409
        if project.voting_status == VotingStatus.closed.value:
            return "Voting has been closed for this project.", 409
        deadline = as_utc(project.voting_deadline)
        if deadline is not None and now >= deadline:
            return "Voting deadline has passed.", 400
        return None

    def ensure_voting_open(self, project: RedevelopmentProject, now: Optional[datetime] = None) -> None:
        blocked = self.voting_block_reason(project, now)
        if blocked:
            message, http_status = blocked
            raise StateConflict(
                message,
                current_state=project.status,
                action=ProjectAction.CAST_VOTE.value,
                http_status=http_status,
            )

    # ---------------------------
    # TRANSITION PRIMITIVES
    # ---------------------------

    def _record(
        self,
        db: Session,
        *,
        project_id: uuid.UUID,
        from_status: Optional[str],
        to_status: str,
        actor_id: Optional[str],
        reason: Optional[str],
        now: datetime,
    ) -> None:
        db.add(
            ProjectStatusTransition(
                project_id=project_id,
                from_status=from_status,
                to_status=to_status,
                actor_id=actor_id,
                reason=reason,
                created_at=now,
            )
        )

    def _compare_and_set(
        self,
        db: Session,
        *,
        project_id: uuid.UUID,
        current: str,
        target: ProjectStatus,
        values: Dict[str, Any],
        now: datetime,
        extra_where: Iterable = (),
    ) -> bool:
        res = db.execute(
            update(RedevelopmentProject)
            .where(
                RedevelopmentProject.id == project_id,
                RedevelopmentProject.status == current,
                *extra_where,
            )
            .values(status=target.value, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    def transition(
        self,
        db: Session,
        *,
        project_id: uuid.UUID,
        action: ProjectAction,
        actor_id: Optional[str],
        reason: Optional[str] = None,
        values: Optional[Dict[str, Any]] = None,
        extra_where: Iterable = (),
        now: Optional[datetime] = None,
    ) -> str:
        """
        Applies `action` inside the caller's transaction (no commit).
        Returns the status the project moved from.
        Raises StateConflict when the stored status does not allow it.
        """
        now = now or utcnow()
        sources = allowed_from(action)
        target = target_of(action)

        current = db.execute(
            select(RedevelopmentProject.status).where(RedevelopmentProject.id == project_id)
        ).scalar_one_or_none()
        if current is None:
            raise NotFound("Redevelopment project not found.", context={"projectId": str(project_id)})

        if ProjectStatus(current) not in sources:
            raise StateConflict(
                f"Cannot {action.value.replace('_', ' ')} while project is '{current}' "
                f"(allowed from: {', '.join(_values(sources))}).",
                current_state=current,
                action=action.value,
            )

        if not self._compare_and_set(
            db,
            project_id=project_id,
            current=current,
            target=target,
            values=values or {},
            now=now,
            extra_where=extra_where,
        ):
            # someone else moved the project between our read and our write
            latest = db.execute(
                select(RedevelopmentProject.status).where(RedevelopmentProject.id == project_id)
            ).scalar_one_or_none()
            raise StateConflict(
                f"Project status changed concurrently; cannot {action.value.replace('_', ' ')}.",
                current_state=latest,
                action=action.value,
            )

        self._record(
            db,
            project_id=project_id,
            from_status=current,
            to_status=target.value,
            actor_id=actor_id,
            reason=reason or action.value,
            now=now,
        )
        logger.info(
            "project_transition",
            extra={
                "project_id": str(project_id),
                "from_status": current,
                "to_status": target.value,
                "actor_id": actor_id,
            },
        )
        return current

    def mark_proposals_received(
        self,
        db: Session,
        *,
        project_id: uuid.UUID,
        actor_id: Optional[str],
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Automatic planning/tender_open → proposals_received on first submission.
        Idempotent: returns True only for the one caller whose conditional
        update matched; later submitters see False and record nothing.
        Does NOT commit.
        """
        now = now or utcnow()
        current = db.execute(
            select(RedevelopmentProject.status).where(RedevelopmentProject.id == project_id)
        ).scalar_one_or_none()
        if current is None or ProjectStatus(current) not in allowed_from(ProjectAction.RECEIVE_PROPOSAL):
            return False

        if not self._compare_and_set(
            db,
            project_id=project_id,
            current=current,
            target=ProjectStatus.proposals_received,
            values={},
            now=now,
        ):
            return False

        self._record(
            db,
            project_id=project_id,
            from_status=current,
            to_status=ProjectStatus.proposals_received.value,
            actor_id=actor_id,
            reason="first_proposal_submitted",
            now=now,
        )
        logger.info(
            "project_transition",
            extra={
                "project_id": str(project_id),
                "from_status": current,
                "to_status": ProjectStatus.proposals_received.value,
                "actor_id": actor_id,
            },
        )
        return True

    def hold_for_submission(
        self,
        db: Session,
        *,
        project_id: uuid.UUID,
        actor_id: Optional[str],
        receive: bool,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Conditional write on the project row inside the submitting transaction,
        so a proposal only commits while the project still accepts proposals.
        receive=True also runs the automatic proposals_received transition.
        Returns True when this call moved the project. Does NOT commit.
        Raises StateConflict (400) with the fresh status otherwise.
        """
        now = now or utcnow()
        if receive and self.mark_proposals_received(db, project_id=project_id, actor_id=actor_id, now=now):
            return True

        res = db.execute(
            update(RedevelopmentProject)
            .where(
                RedevelopmentProject.id == project_id,
                RedevelopmentProject.status.in_(_values(ACCEPTS_PROPOSALS)),
            )
            .values(updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            latest = db.execute(
                select(RedevelopmentProject.status).where(RedevelopmentProject.id == project_id)
            ).scalar_one_or_none()
            if latest is None:
                raise NotFound("Redevelopment project not found.", context={"projectId": str(project_id)})
            raise self._not_accepting(latest)
        return False

    # ---------------------------
    # OWNER OPERATIONS
    # ---------------------------

    def create_project(
        self,
        db: Session,
        *,
        principal: Principal,
        society_id: uuid.UUID,
        title: str,
        description: str = "",
        estimated_budget: Optional[Decimal] = None,
        minimum_approval_percentage: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> RedevelopmentProject:
        require_action(principal, ACTION_CREATE_PROJECT)

        society = db.get(Society, society_id)
        if not society:
            raise NotFound("Society not found.", context={"societyId": str(society_id)})
        if society.owner_id != principal.user_id:
            raise Forbidden("You can only create projects for societies you own.")

        title = (title or "").strip()
        if not title:
            raise ValidationError("title is required.")

        if minimum_approval_percentage is None:
            minimum_approval_percentage = get_settings().default_minimum_approval_percentage

        now = now or utcnow()
        project = RedevelopmentProject(
            society_id=society_id,
            owner_id=principal.user_id,
            title=title,
            description=description or "",
            estimated_budget=estimated_budget,
            minimum_approval_percentage=_validate_min_approval(minimum_approval_percentage),
            status=ProjectStatus.planning.value,
            voting_status=VotingStatus.open.value,
            created_at=now,
            updated_at=now,
        )
        db.add(project)
        db.flush()
        self._record(
            db,
            project_id=project.id,
            from_status=None,
            to_status=ProjectStatus.planning.value,
            actor_id=principal.user_id,
            reason="created",
            now=now,
        )
        db.commit()
        db.refresh(project)

        dispatch_safely(
            self.dispatcher,
            [
                NotificationEvent(
                    event_type=EventType.PROJECT_CREATED,
                    project_id=project.id,
                    society_id=project.society_id,
                    payload={"title": project.title},
                )
            ],
        )
        return project

    def update_details(
        self,
        db: Session,
        *,
        principal: Principal,
        project_id: uuid.UUID,
        changes: Dict[str, Any],
    ) -> RedevelopmentProject:
        """
        Owner edits descriptive fields. Status is never editable here; it only
        moves through the explicit transition operations.
        """
        project = self.get_project(db, project_id)
        require_project_owner(principal, project, "update this project")

        status = ProjectStatus(project.status)
        if status in TERMINAL_STATUSES:
            raise StateConflict(
                f"Project is '{project.status}' and can no longer be edited.",
                current_state=project.status,
                action="update_details",
            )

        frozen = {"title", "minimum_approval_percentage"}
        if status not in EDITABLE_DETAILS and frozen.intersection(k for k, v in changes.items() if v is not None):
            raise StateConflict(
                "Title and minimum approval cannot change once voting has started.",
                current_state=project.status,
                action="update_details",
            )

        if changes.get("title") is not None:
            title = changes["title"].strip()
            if not title:
                raise ValidationError("title must not be empty.")
            project.title = title
        if changes.get("description") is not None:
            project.description = changes["description"]
        if changes.get("estimated_budget") is not None:
            project.estimated_budget = changes["estimated_budget"]
        if changes.get("progress") is not None:
            progress = int(changes["progress"])
            if not (0 <= progress <= 100):
                raise ValidationError("progress must be between 0 and 100.")
            project.progress = progress
        if changes.get("minimum_approval_percentage") is not None:
            project.minimum_approval_percentage = _validate_min_approval(changes["minimum_approval_percentage"])

        project.updated_at = utcnow()
        db.commit()
        db.refresh(project)
        return project

    def _owner_transition(
        self,
        db: Session,
        *,
        principal: Principal,
        project_id: uuid.UUID,
        action: ProjectAction,
        event_type: str,
        values: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RedevelopmentProject:
        project = self.get_project(db, project_id)
        require_action(principal, ACTION_MANAGE_PROJECT)
        require_project_owner(principal, project, action.value.replace("_", " "))

        try:
            from_status = self.transition(
                db,
                project_id=project_id,
                action=action,
                actor_id=principal.user_id,
                reason=reason,
                values=values,
                now=now,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(project)
        dispatch_safely(
            self.dispatcher,
            [
                NotificationEvent(
                    event_type=event_type,
                    project_id=project.id,
                    society_id=project.society_id,
                    payload={"fromStatus": from_status, "toStatus": project.status},
                )
            ],
        )
        return project

    def open_tender(self, db: Session, *, principal: Principal, project_id: uuid.UUID) -> RedevelopmentProject:
        return self._owner_transition(
            db,
            principal=principal,
            project_id=project_id,
            action=ProjectAction.OPEN_TENDER,
            event_type=EventType.TENDER_OPENED,
        )

    def open_voting(
        self,
        db: Session,
        *,
        principal: Principal,
        project_id: uuid.UUID,
        voting_deadline: datetime,
        minimum_approval_percentage: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> RedevelopmentProject:
        now = as_utc(now or utcnow())
        deadline = as_utc(voting_deadline)
        if deadline is None or deadline <= now:
            raise ValidationError("votingDeadline must be in the future.")

        values: Dict[str, Any] = {
            "voting_deadline": deadline,
            "voting_status": VotingStatus.open.value,
            "voting_closed_at": None,
        }
        if minimum_approval_percentage is not None:
            values["minimum_approval_percentage"] = _validate_min_approval(minimum_approval_percentage)

        return self._owner_transition(
            db,
            principal=principal,
            project_id=project_id,
            action=ProjectAction.OPEN_VOTING,
            event_type=EventType.VOTING_OPENED,
            values=values,
            now=now,
        )

    def start_construction(self, db: Session, *, principal: Principal, project_id: uuid.UUID) -> RedevelopmentProject:
        return self._owner_transition(
            db,
            principal=principal,
            project_id=project_id,
            action=ProjectAction.START_CONSTRUCTION,
            event_type=EventType.PROJECT_UPDATE,
        )

    def complete(self, db: Session, *, principal: Principal, project_id: uuid.UUID) -> RedevelopmentProject:
        return self._owner_transition(
            db,
            principal=principal,
            project_id=project_id,
            action=ProjectAction.COMPLETE,
            event_type=EventType.PROJECT_UPDATE,
            values={"progress": 100},
        )

    def cancel(
        self,
        db: Session,
        *,
        principal: Principal,
        project_id: uuid.UUID,
        reason: Optional[str] = None,
    ) -> RedevelopmentProject:
        return self._owner_transition(
            db,
            principal=principal,
            project_id=project_id,
            action=ProjectAction.CANCEL,
            event_type=EventType.PROJECT_UPDATE,
            values={"voting_status": VotingStatus.closed.value},
            reason=reason or "cancelled_by_owner",
        )

    def delete_project(self, db: Session, *, principal: Principal, project_id: uuid.UUID) -> None:
        """
        Hard delete; proposals, ledger entries, ballots and history cascade.
        """
        project = self.get_project(db, project_id)
        require_project_owner(principal, project, "delete this project")
        db.delete(project)
        db.commit()
        logger.info("project_deleted", extra={"project_id": str(project_id), "actor_id": principal.user_id})
