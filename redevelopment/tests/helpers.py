import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from redevelopment.core.security import create_access_token
from redevelopment.models.enums import MembershipStatus, ParticipantRole
from redevelopment.models.society import Society, SocietyMembership
from redevelopment.policies.membership import SqlMembershipOracle
from redevelopment.policies.rbac import Principal
from redevelopment.services.project_state_machine import ProjectStateMachine
from redevelopment.services.proposals_service import ProposalService

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
# project created, then proposals in, then voting opens at NOW
CREATED_AT = NOW - timedelta(hours=2)
SUBMITTED_AT = NOW - timedelta(hours=1)
DEADLINE = NOW + timedelta(days=7)
SESSION = "proposal_selection"

OWNER = Principal(user_id="owner-1", role=ParticipantRole.SOCIETY_OWNER, display_name="Owner")


def member(n: int) -> Principal:
    return Principal(user_id=f"member-{n}", role=ParticipantRole.SOCIETY_MEMBER)


def developer(n: int) -> Principal:
    return Principal(user_id=f"dev-{n}", role=ParticipantRole.DEVELOPER)


def create_society(db, *, members=3, owner_id=OWNER.user_id, extra_statuses=None):
    """
    Society owned by owner_id with `members` active members (member-1..N).
    extra_statuses maps user_id -> membership status for non-active rows.
    """
    society = Society(id=uuid.uuid4(), name="Sunrise CHS", owner_id=owner_id)
    db.add(society)
    db.flush()
    for n in range(1, members + 1):
        db.add(
            SocietyMembership(
                society_id=society.id,
                user_id=f"member-{n}",
                status=MembershipStatus.active.value,
            )
        )
    for user_id, status in (extra_statuses or {}).items():
        db.add(SocietyMembership(society_id=society.id, user_id=user_id, status=status))
    db.commit()
    return society


def oracle(db):
    return SqlMembershipOracle(db)


def terms(**overrides):
    t = {
        "title": "Tower A rebuild",
        "description": "Two towers, podium parking",
        "corpus_amount": Decimal("2500000"),
        "rent_amount": Decimal("35000"),
        "fsi": Decimal("2.5"),
        "timeline": "36 months",
    }
    t.update(overrides)
    return t


def create_project(db, society, dispatcher=None, **kwargs):
    svc = ProjectStateMachine(dispatcher)
    return svc.create_project(
        db,
        principal=OWNER,
        society_id=society.id,
        title=kwargs.pop("title", "Sunrise redevelopment"),
        now=kwargs.pop("now", CREATED_AT),
        **kwargs,
    )


def submit(db, project, dev: Principal, dispatcher=None, **overrides):
    return ProposalService(dispatcher).submit(
        db,
        principal=dev,
        project_id=project.id,
        terms=terms(title=f"Offer from {dev.user_id}", **overrides),
        now=SUBMITTED_AT,
    )


def project_in_voting(db, society, *, developers=2, dispatcher=None, minimum_approval_percentage=None):
    """
    Project with `developers` submitted proposals and an open voting window.
    Returns (project, [proposals]).
    """
    project = create_project(db, society, dispatcher)
    proposals = [submit(db, project, developer(n), dispatcher) for n in range(1, developers + 1)]
    ProjectStateMachine(dispatcher).open_voting(
        db,
        principal=OWNER,
        project_id=project.id,
        voting_deadline=DEADLINE,
        minimum_approval_percentage=minimum_approval_percentage,
        now=NOW,
    )
    db.refresh(project)
    return project, proposals


def auth(principal: Principal) -> dict:
    token = create_access_token(
        principal.user_id,
        {"role": principal.role.value, "user_id": principal.user_id},
    )
    return {"Authorization": f"Bearer {token}"}
