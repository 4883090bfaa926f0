import uuid

import pytest
from sqlalchemy import select, update

from redevelopment.core.errors import Forbidden, NotFound, StateConflict, ValidationError
from redevelopment.models.project import ProjectStatusTransition, RedevelopmentProject
from redevelopment.models.proposal import DeveloperProposal
from redevelopment.services.notifications import EventType
from redevelopment.services.project_state_machine import ProjectStateMachine
from redevelopment.services.proposals_service import ProposalService
from redevelopment.services.selection_service import ALREADY_SELECTED, SelectionCoordinator
from redevelopment.tests.helpers import (
    DEADLINE,
    NOW,
    OWNER,
    create_project,
    create_society,
    developer,
    member,
    project_in_voting,
    submit,
    terms,
)


def test_select_rejects_every_competitor(db, dispatcher):
    society = create_society(db)
    project, (a, b, c) = project_in_voting(db, society, developers=3)
    ProposalService().reject(db, principal=OWNER, proposal_id=c.id, reason="incomplete")

    winner = SelectionCoordinator(dispatcher).select(db, principal=OWNER, project_id=project.id, proposal_id=a.id)

    assert winner.status == "selected"
    assert winner.selected_at is not None
    db.refresh(project)
    assert project.status == "developer_selected"
    assert project.selected_proposal_id == a.id
    assert project.selected_developer_id == "dev-1"

    loser = db.get(DeveloperProposal, b.id)
    db.refresh(loser)
    assert loser.status == "rejected"
    assert loser.rejected_by == OWNER.user_id
    assert loser.rejection_reason == "Another proposal was selected for this project."

    # c kept its own rejection reason
    earlier = db.get(DeveloperProposal, c.id)
    db.refresh(earlier)
    assert earlier.rejection_reason == "incomplete"

    assert dispatcher.of_type(EventType.PROPOSAL_SELECTED)[0].recipient_id == "dev-1"
    assert [e.recipient_id for e in dispatcher.of_type(EventType.PROPOSAL_REJECTED)] == ["dev-2"]
    assert len(dispatcher.of_type(EventType.DEVELOPER_SELECTED)) == 1


def test_second_selection_conflicts_and_changes_nothing(db):
    society = create_society(db)
    project, (a, b) = project_in_voting(db, society)
    coordinator = SelectionCoordinator()
    coordinator.select(db, principal=OWNER, project_id=project.id, proposal_id=a.id)

    with pytest.raises(StateConflict) as exc:
        coordinator.select(db, principal=OWNER, project_id=project.id, proposal_id=b.id)
    assert exc.value.message == ALREADY_SELECTED

    db.refresh(project)
    assert project.selected_proposal_id == a.id
    rows = db.execute(
        select(ProjectStatusTransition).where(
            ProjectStatusTransition.project_id == project.id,
            ProjectStatusTransition.to_status == "developer_selected",
        )
    ).scalars().all()
    assert len(rows) == 1


def test_stale_read_still_loses_at_the_conditional_update(db):
    """The claim landed after our pre-check read; the guarded UPDATE must still refuse."""
    society = create_society(db)
    project, (a, b) = project_in_voting(db, society)
    db.execute(
        update(RedevelopmentProject)
        .where(RedevelopmentProject.id == project.id)
        .values(selected_proposal_id=a.id, selected_developer_id="dev-1")
    )
    db.commit()

    late = SelectionCoordinator()
    real_read = late._selected_proposal_id
    reads = []

    def stale_then_real(session, project_id):
        reads.append(project_id)
        if len(reads) == 1:
            return None
        return real_read(session, project_id)

    late._selected_proposal_id = stale_then_real

    with pytest.raises(StateConflict) as exc:
        late.select(db, principal=OWNER, project_id=project.id, proposal_id=b.id)
    assert exc.value.message == ALREADY_SELECTED
    assert len(reads) == 2

    db.refresh(project)
    assert project.status == "voting"
    loser = db.get(DeveloperProposal, b.id)
    db.refresh(loser)
    assert loser.status == "submitted"
    assert db.execute(
        select(ProjectStatusTransition).where(ProjectStatusTransition.to_status == "developer_selected")
    ).scalars().all() == []


def test_selection_requires_voting(db):
    society = create_society(db)
    project = create_project(db, society)
    proposal = submit(db, project, developer(1))

    with pytest.raises(StateConflict) as exc:
        SelectionCoordinator().select(db, principal=OWNER, project_id=project.id, proposal_id=proposal.id)
    assert exc.value.current_state == "proposals_received"


def test_withdrawn_proposal_cannot_win(db):
    society = create_society(db)
    project = create_project(db, society)
    svc = ProposalService()
    keep = submit(db, project, developer(1))
    gone = submit(db, project, developer(2))
    svc.withdraw(db, principal=developer(2), proposal_id=gone.id)

    ProjectStateMachine().open_voting(db, principal=OWNER, project_id=project.id, voting_deadline=DEADLINE, now=NOW)

    with pytest.raises(StateConflict):
        SelectionCoordinator().select(db, principal=OWNER, project_id=project.id, proposal_id=gone.id)
    db.refresh(project)
    assert project.status == "voting"
    assert project.selected_proposal_id is None

    SelectionCoordinator().select(db, principal=OWNER, project_id=project.id, proposal_id=keep.id)


def test_only_owner_selects(db):
    society = create_society(db)
    project, (a, _) = project_in_voting(db, society)

    with pytest.raises(Forbidden):
        SelectionCoordinator().select(db, principal=member(1), project_id=project.id, proposal_id=a.id)


def test_proposal_from_another_project(db):
    society = create_society(db)
    project, _ = project_in_voting(db, society)
    other = create_project(db, society, title="Wing B")
    foreign = ProposalService().submit(db, principal=developer(5), project_id=other.id, terms=terms())

    with pytest.raises(ValidationError):
        SelectionCoordinator().select(db, principal=OWNER, project_id=project.id, proposal_id=foreign.id)


def test_unknown_proposal(db):
    society = create_society(db)
    project, _ = project_in_voting(db, society)
    with pytest.raises(NotFound):
        SelectionCoordinator().select(db, principal=OWNER, project_id=project.id, proposal_id=uuid.uuid4())
