from datetime import timedelta

import pytest
from sqlalchemy import select

from redevelopment.core.errors import Forbidden, NotFound, StateConflict, ValidationError
from redevelopment.core.project_states import GUARD_ONLY_ACTIONS, TRANSITIONS, ProjectAction, allowed_from, target_of
from redevelopment.models.enums import ParticipantRole
from redevelopment.models.project import ProjectStatusTransition, RedevelopmentProject
from redevelopment.policies.rbac import Principal
from redevelopment.services.notifications import EventType
from redevelopment.services.project_state_machine import ProjectStateMachine
from redevelopment.tests.helpers import (
    DEADLINE,
    NOW,
    OWNER,
    create_project,
    create_society,
    developer,
    member,
    submit,
)


def test_create_project_starts_in_planning_with_history(db, dispatcher):
    society = create_society(db)
    project = create_project(db, society, dispatcher)

    assert project.status == "planning"
    assert project.owner_id == OWNER.user_id
    assert project.minimum_approval_percentage == 75
    assert project.voting_status == "open"

    history = ProjectStateMachine().history(db, project.id)
    assert [(h.from_status, h.to_status, h.reason) for h in history] == [(None, "planning", "created")]
    assert len(dispatcher.of_type(EventType.PROJECT_CREATED)) == 1


def test_only_society_owner_can_create(db):
    society = create_society(db, owner_id="someone-else")
    with pytest.raises(Forbidden):
        create_project(db, society)


def test_member_role_cannot_create(db):
    society = create_society(db)
    with pytest.raises(Forbidden):
        ProjectStateMachine().create_project(db, principal=member(1), society_id=society.id, title="x")


def test_min_approval_out_of_range_rejected(db):
    society = create_society(db)
    with pytest.raises(ValidationError):
        create_project(db, society, minimum_approval_percentage=40)


def test_tender_then_voting_then_illegal_tender(db):
    society = create_society(db)
    project = create_project(db, society)
    svc = ProjectStateMachine()

    svc.open_tender(db, principal=OWNER, project_id=project.id)
    assert svc.get_project(db, project.id).status == "tender_open"

    # tender_open cannot jump straight to voting
    with pytest.raises(StateConflict) as exc:
        svc.open_voting(db, principal=OWNER, project_id=project.id, voting_deadline=DEADLINE, now=NOW)
    assert exc.value.current_state == "tender_open"
    assert exc.value.action == ProjectAction.OPEN_VOTING.value


def test_failed_transition_leaves_no_history(db):
    society = create_society(db)
    project = create_project(db, society)
    svc = ProjectStateMachine()

    with pytest.raises(StateConflict):
        svc.start_construction(db, principal=OWNER, project_id=project.id)

    assert svc.get_project(db, project.id).status == "planning"
    assert len(svc.history(db, project.id)) == 1


def test_non_owner_cannot_transition(db):
    society = create_society(db)
    project = create_project(db, society)
    other_owner = Principal(user_id="owner-2", role=ParticipantRole.SOCIETY_OWNER)

    with pytest.raises(Forbidden):
        ProjectStateMachine().open_tender(db, principal=other_owner, project_id=project.id)


def test_open_voting_requires_future_deadline(db):
    society = create_society(db)
    project = create_project(db, society)

    with pytest.raises(ValidationError):
        ProjectStateMachine().open_voting(
            db, principal=OWNER, project_id=project.id, voting_deadline=NOW - timedelta(minutes=1), now=NOW
        )


def test_three_submissions_move_project_once(db):
    society = create_society(db)
    project = create_project(db, society)

    for n in (1, 2, 3):
        submit(db, project, developer(n))

    rows = db.execute(
        select(ProjectStatusTransition).where(
            ProjectStatusTransition.project_id == project.id,
            ProjectStatusTransition.to_status == "proposals_received",
        )
    ).scalars().all()
    assert len(rows) == 1
    assert rows[0].reason == "first_proposal_submitted"
    assert rows[0].actor_id == "dev-1"


def test_mark_proposals_received_is_idempotent(db):
    society = create_society(db)
    project = create_project(db, society)
    svc = ProjectStateMachine()

    assert svc.mark_proposals_received(db, project_id=project.id, actor_id="dev-1", now=NOW) is True
    db.commit()
    assert svc.mark_proposals_received(db, project_id=project.id, actor_id="dev-2", now=NOW) is False


def test_full_lifecycle_to_completed(db):
    from redevelopment.services.selection_service import SelectionCoordinator

    society = create_society(db)
    project = create_project(db, society)
    proposal = submit(db, project, developer(1))
    svc = ProjectStateMachine()
    svc.open_voting(db, principal=OWNER, project_id=project.id, voting_deadline=DEADLINE, now=NOW)

    SelectionCoordinator().select(db, principal=OWNER, project_id=project.id, proposal_id=proposal.id)
    svc.start_construction(db, principal=OWNER, project_id=project.id)
    done = svc.complete(db, principal=OWNER, project_id=project.id)

    assert done.status == "completed"
    assert done.progress == 100
    assert [h.to_status for h in svc.history(db, project.id)] == [
        "planning",
        "proposals_received",
        "voting",
        "developer_selected",
        "construction",
        "completed",
    ]

    # terminal: nothing moves any more
    with pytest.raises(StateConflict):
        svc.cancel(db, principal=OWNER, project_id=project.id)


def test_cancel_closes_voting(db):
    society = create_society(db)
    project = create_project(db, society)
    svc = ProjectStateMachine()
    svc.open_voting(db, principal=OWNER, project_id=project.id, voting_deadline=DEADLINE, now=NOW)

    cancelled = svc.cancel(db, principal=OWNER, project_id=project.id, reason="members withdrew consent")
    assert cancelled.status == "cancelled"
    assert cancelled.voting_status == "closed"
    assert svc.history(db, project.id)[-1].reason == "members withdrew consent"


def test_update_details_freezes_threshold_during_voting(db):
    society = create_society(db)
    project = create_project(db, society)
    svc = ProjectStateMachine()

    updated = svc.update_details(
        db, principal=OWNER, project_id=project.id, changes={"minimum_approval_percentage": 60, "progress": 5}
    )
    assert updated.minimum_approval_percentage == 60
    assert updated.progress == 5

    svc.open_voting(db, principal=OWNER, project_id=project.id, voting_deadline=DEADLINE, now=NOW)
    with pytest.raises(StateConflict):
        svc.update_details(db, principal=OWNER, project_id=project.id, changes={"minimum_approval_percentage": 80})

    # descriptive fields stay editable
    updated = svc.update_details(db, principal=OWNER, project_id=project.id, changes={"description": "phase 2"})
    assert updated.description == "phase 2"


def test_delete_project_cascades(db):
    society = create_society(db)
    project = create_project(db, society)
    submit(db, project, developer(1))
    svc = ProjectStateMachine()

    svc.delete_project(db, principal=OWNER, project_id=project.id)
    with pytest.raises(NotFound):
        svc.get_project(db, project.id)


def test_voting_block_carries_its_status_code():
    svc = ProjectStateMachine()

    def blocked(**fields):
        return svc.voting_block_reason(RedevelopmentProject(**fields), NOW)

    assert blocked(status="voting", voting_status="open", voting_deadline=DEADLINE) is None
    assert blocked(status="planning", voting_status="open", voting_deadline=None)[1] == 409
    assert blocked(status="voting", voting_status="closed", voting_deadline=DEADLINE)[1] == 409
    assert blocked(status="voting", voting_status="open", voting_deadline=NOW) == ("Voting deadline has passed.", 400)

    with pytest.raises(StateConflict) as exc:
        svc.ensure_voting_open(RedevelopmentProject(status="voting", voting_status="closed"), NOW)
    assert exc.value.http_status == 409
    assert exc.value.action == ProjectAction.CAST_VOTE.value


def test_every_action_is_a_transition_or_a_guard():
    assert set(TRANSITIONS) | GUARD_ONLY_ACTIONS == set(ProjectAction)
    assert not set(TRANSITIONS) & GUARD_ONLY_ACTIONS

    assert target_of(ProjectAction.SELECT_PROPOSAL).value == "developer_selected"
    for action in GUARD_ONLY_ACTIONS:
        with pytest.raises(ValueError):
            allowed_from(action)
