from datetime import timedelta

import pytest

from redevelopment.core.errors import Forbidden, StateConflict
from redevelopment.models.enums import VoteChoice
from redevelopment.models.proposal import DeveloperProposal
from redevelopment.services.notifications import EventType
from redevelopment.services.voting_closure_service import ClosureReason, VotingClosureService
from redevelopment.services.voting_service import BallotInput, VotingLedger
from redevelopment.tests.helpers import (
    DEADLINE,
    NOW,
    OWNER,
    SESSION,
    create_society,
    member,
    oracle,
    project_in_voting,
)

DURING = NOW + timedelta(hours=1)


def vote(db, project, who, proposal, choice="yes"):
    VotingLedger().submit_vote(
        db,
        principal=who,
        oracle=oracle(db),
        project_id=project.id,
        ballot=BallotInput(vote=VoteChoice(choice), voting_session=SESSION, proposal_id=proposal.id),
        now=DURING,
    )


def test_owner_close_selects_winner_above_threshold(db, dispatcher):
    society = create_society(db, members=4)
    project, (a, b) = project_in_voting(db, society, minimum_approval_percentage=60)
    for n in (1, 2, 3):
        vote(db, project, member(n), a, "yes")
    vote(db, project, member(4), a, "no")
    vote(db, project, member(1), b, "no")

    outcome = VotingClosureService(dispatcher).close_voting(
        db, project_id=project.id, actor=OWNER, now=DURING
    )

    assert outcome.result == "selected"
    assert outcome.winner.proposal_id == a.id
    assert outcome.winner.approval_percentage == 75
    db.refresh(project)
    assert project.status == "developer_selected"
    assert project.voting_status == "closed"
    assert project.voting_closed_at is not None
    assert project.selected_proposal_id == a.id

    loser = db.get(DeveloperProposal, b.id)
    db.refresh(loser)
    assert loser.status == "rejected"

    closed = dispatcher.of_type(EventType.VOTING_CLOSED)
    assert closed[0].payload["result"] == "selected"
    assert len(dispatcher.of_type(EventType.DEVELOPER_SELECTED)) == 1


def test_close_below_threshold_cancels_project(db):
    society = create_society(db, members=4)
    project, (a, b) = project_in_voting(db, society)
    vote(db, project, member(1), a, "yes")
    vote(db, project, member(2), a, "no")

    outcome = VotingClosureService().close_voting(db, project_id=project.id, actor=OWNER, now=DURING)

    assert outcome.result == "cancelled"
    db.refresh(project)
    assert project.status == "cancelled"
    assert project.voting_status == "closed"
    assert project.selected_proposal_id is None
    # proposals stay where they were
    for p in (a, b):
        stored = db.get(DeveloperProposal, p.id)
        db.refresh(stored)
        assert stored.status == "submitted"


def test_close_twice_conflicts(db):
    society = create_society(db)
    project, (a, _) = project_in_voting(db, society)
    svc = VotingClosureService()
    svc.close_voting(db, project_id=project.id, actor=OWNER, now=DURING)

    with pytest.raises(StateConflict):
        svc.close_voting(db, project_id=project.id, actor=OWNER, now=DURING)


def test_member_cannot_close(db):
    society = create_society(db)
    project, _ = project_in_voting(db, society)

    with pytest.raises(Forbidden):
        VotingClosureService().close_voting(db, project_id=project.id, actor=member(1), now=DURING)


def test_auto_close_on_majority(db):
    society = create_society(db, members=5)
    project, (a, _) = project_in_voting(db, society, minimum_approval_percentage=50)
    svc = VotingClosureService()

    vote(db, project, member(1), a)
    vote(db, project, member(2), a)
    assert svc.check_and_auto_close(db, project_id=project.id, oracle=oracle(db), now=DURING) is None

    # 3 of 5 = ceil(5 / 2)
    vote(db, project, member(3), a)
    outcome = svc.check_and_auto_close(db, project_id=project.id, oracle=oracle(db), now=DURING)

    assert outcome.reason == ClosureReason.MAJORITY_REACHED
    assert outcome.result == "selected"
    db.refresh(project)
    assert project.selected_proposal_id == a.id


def test_auto_close_after_deadline(db):
    society = create_society(db, members=10)
    project, (a, _) = project_in_voting(db, society)
    vote(db, project, member(1), a)

    outcome = VotingClosureService().check_and_auto_close(
        db, project_id=project.id, oracle=oracle(db), now=DEADLINE
    )
    assert outcome.reason == ClosureReason.DEADLINE_PASSED
    # 1 yes out of 1 clears the default 75%
    assert outcome.result == "selected"


def test_sweep_closes_every_expired_window(db):
    society = create_society(db, members=10)
    due, (a, _) = project_in_voting(db, society)
    vote(db, due, member(1), a, "no")
    still_open, _ = project_in_voting(db, society)

    report = VotingClosureService().sweep(db, oracle=oracle(db), now=DEADLINE + timedelta(hours=1))

    assert report.checked == 2
    assert report.failed == []
    assert {o.project_id for o in report.closed} == {due.id, still_open.id}
    assert all(o.reason == ClosureReason.DEADLINE_PASSED for o in report.closed)
    assert all(o.result == "cancelled" for o in report.closed)


def test_sweep_skips_projects_with_time_left(db):
    society = create_society(db, members=10)
    project, _ = project_in_voting(db, society)

    report = VotingClosureService().sweep(db, oracle=oracle(db), now=DURING)
    assert report.checked == 1
    assert report.closed == []
    db.refresh(project)
    assert project.status == "voting"
