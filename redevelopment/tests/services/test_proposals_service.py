from decimal import Decimal

import pytest
from sqlalchemy import select

from redevelopment.core.errors import DuplicateProposal, Forbidden, NotFound, StateConflict, ValidationError
from redevelopment.models.proposal import DeveloperProposal
from redevelopment.services.notifications import EventType
from redevelopment.services.project_state_machine import ProjectStateMachine
from redevelopment.services.proposals_service import ProposalService, weighted_overall
from redevelopment.services.selection_service import SelectionCoordinator
from redevelopment.tests.helpers import (
    DEADLINE,
    NOW,
    OWNER,
    create_project,
    create_society,
    developer,
    member,
    oracle,
    project_in_voting,
    submit,
    terms,
)


def test_submit_stores_terms_and_notifies_owner(db, dispatcher):
    society = create_society(db)
    project = create_project(db, society)

    proposal = submit(db, project, developer(1), dispatcher)

    assert proposal.status == "submitted"
    assert proposal.corpus_amount == Decimal("2500000")
    assert proposal.fsi == Decimal("2.5")
    assert proposal.submitted_at is not None

    new = dispatcher.of_type(EventType.NEW_PROPOSAL)
    assert len(new) == 1
    assert new[0].recipient_id == OWNER.user_id
    # first submission moved the project
    assert len(dispatcher.of_type(EventType.PROJECT_UPDATE)) == 1


def test_second_proposal_from_same_developer_is_duplicate(db):
    society = create_society(db)
    project = create_project(db, society)
    first = submit(db, project, developer(1))

    with pytest.raises(DuplicateProposal) as exc:
        submit(db, project, developer(1))
    assert exc.value.context["proposalId"] == str(first.id)


def test_missing_required_terms(db):
    society = create_society(db)
    project = create_project(db, society)
    raw = terms()
    del raw["fsi"]

    with pytest.raises(ValidationError):
        ProposalService().submit(db, principal=developer(1), project_id=project.id, terms=raw)


def test_submission_rejected_once_voting_started(db):
    society = create_society(db)
    project = create_project(db, society)
    submit(db, project, developer(1))
    ProjectStateMachine().open_voting(db, principal=OWNER, project_id=project.id, voting_deadline=DEADLINE, now=NOW)

    with pytest.raises(StateConflict) as exc:
        submit(db, project, developer(2))
    assert exc.value.http_status == 400
    assert "voting has started" in exc.value.message


def test_only_developers_submit(db):
    society = create_society(db)
    project = create_project(db, society)
    with pytest.raises(Forbidden):
        ProposalService().submit(db, principal=member(1), project_id=project.id, terms=terms())


def test_draft_does_not_move_project_until_submitted(db, dispatcher):
    society = create_society(db)
    project = create_project(db, society)
    svc = ProposalService(dispatcher)

    draft = svc.submit(db, principal=developer(1), project_id=project.id, terms=terms(), as_draft=True)
    assert draft.status == "draft"
    assert ProjectStateMachine().get_project(db, project.id).status == "planning"
    assert dispatcher.events == []

    promoted = svc.update(db, principal=developer(1), proposal_id=draft.id, changes={"rent_amount": 40000}, submit=True)
    assert promoted.status == "submitted"
    assert promoted.rent_amount == Decimal("40000")
    assert ProjectStateMachine().get_project(db, project.id).status == "proposals_received"


def test_withdrawn_proposal_is_revived_in_place(db):
    society = create_society(db)
    project = create_project(db, society)
    svc = ProposalService()
    original = submit(db, project, developer(1))
    svc.evaluate(db, principal=OWNER, proposal_id=original.id, technical_score=80, financial_score=70, timeline_score=75)

    svc.withdraw(db, principal=developer(1), proposal_id=original.id)
    revived = svc.submit(
        db, principal=developer(1), project_id=project.id, terms=terms(title="Second attempt", rent_amount=50000)
    )

    assert revived.id == original.id
    assert revived.status == "submitted"
    assert revived.title == "Second attempt"
    assert revived.overall_score is None
    assert revived.withdrawn_at is None


def test_only_drafts_can_be_deleted(db):
    society = create_society(db)
    project = create_project(db, society)
    svc = ProposalService()
    submitted = submit(db, project, developer(1))
    draft = svc.submit(db, principal=developer(2), project_id=project.id, terms=terms(), as_draft=True)

    with pytest.raises(StateConflict):
        svc.delete_draft(db, principal=developer(1), proposal_id=submitted.id)

    draft_id = draft.id
    svc.delete_draft(db, principal=developer(2), proposal_id=draft_id)
    with pytest.raises(NotFound):
        svc.get(db, draft_id)


def test_stale_submit_loses_at_the_project_row(db, dispatcher):
    """The accepts-proposals read passed earlier; a selection landed before our commit."""
    society = create_society(db)
    project, (winner,) = project_in_voting(db, society, developers=1)
    SelectionCoordinator().select(db, principal=OWNER, project_id=project.id, proposal_id=winner.id)

    late = ProposalService(dispatcher)
    late.state_machine.ensure_accepting_proposals = lambda project: None

    with pytest.raises(StateConflict) as exc:
        late.submit(db, principal=developer(2), project_id=project.id, terms=terms(), now=NOW)
    assert exc.value.http_status == 400
    assert exc.value.current_state == "developer_selected"
    assert exc.value.action == "submit_proposal"

    rows = db.execute(select(DeveloperProposal).where(DeveloperProposal.project_id == project.id)).scalars().all()
    assert [(p.developer_id, p.status) for p in rows] == [("dev-1", "selected")]
    assert dispatcher.of_type(EventType.NEW_PROPOSAL) == []


def test_stale_draft_promotion_loses_at_the_project_row(db):
    society = create_society(db)
    project = create_project(db, society)
    svc = ProposalService()
    submit(db, project, developer(1))
    draft = svc.submit(db, principal=developer(2), project_id=project.id, terms=terms(), as_draft=True)
    draft_id = draft.id
    ProjectStateMachine().open_voting(db, principal=OWNER, project_id=project.id, voting_deadline=DEADLINE, now=NOW)

    svc.state_machine.ensure_accepting_proposals = lambda project: None
    with pytest.raises(StateConflict) as exc:
        svc.update(db, principal=developer(2), proposal_id=draft_id, changes={}, submit=True, now=NOW)
    assert exc.value.http_status == 400
    assert exc.value.current_state == "voting"

    assert svc.get(db, draft_id).status == "draft"
    assert svc.get(db, draft_id).submitted_at is None


def test_developer_cannot_touch_someone_elses_proposal(db):
    society = create_society(db)
    project = create_project(db, society)
    proposal = submit(db, project, developer(1))

    with pytest.raises(Forbidden):
        ProposalService().withdraw(db, principal=developer(2), proposal_id=proposal.id)


def test_weighted_overall_default_weights():
    assert weighted_overall(80, 70, 75) == 75
    assert weighted_overall(80, 70, 71) == 74
    assert weighted_overall(100, 100, 99) == 100


def test_evaluate_stores_scores_and_keeps_status(db):
    society = create_society(db)
    project = create_project(db, society)
    proposal = submit(db, project, developer(1))

    scored = ProposalService().evaluate(
        db,
        principal=OWNER,
        proposal_id=proposal.id,
        technical_score=80,
        financial_score=70,
        timeline_score=75,
        comments="solid",
    )
    assert scored.overall_score == 75
    assert scored.evaluated_by == OWNER.user_id
    assert scored.status == "submitted"


def test_evaluate_rejects_out_of_range_score(db):
    society = create_society(db)
    project = create_project(db, society)
    proposal = submit(db, project, developer(1))

    with pytest.raises(ValidationError):
        ProposalService().evaluate(
            db, principal=OWNER, proposal_id=proposal.id, technical_score=101, financial_score=70, timeline_score=75
        )


def test_review_shortlist_approve_reject_path(db, dispatcher):
    society = create_society(db)
    project = create_project(db, society)
    svc = ProposalService(dispatcher)
    a = submit(db, project, developer(1))
    b = submit(db, project, developer(2))

    assert svc.start_review(db, principal=OWNER, proposal_id=a.id).status == "under_review"
    assert svc.shortlist(db, principal=OWNER, proposal_id=a.id).status == "shortlisted"
    approved = svc.approve(db, principal=OWNER, proposal_id=a.id, comments="best offer")
    assert approved.status == "approved"
    assert approved.approved_by == OWNER.user_id

    with pytest.raises(ValidationError):
        svc.reject(db, principal=OWNER, proposal_id=b.id, reason="  ")
    rejected = svc.reject(db, principal=OWNER, proposal_id=b.id, reason="FSI too low")
    assert rejected.status == "rejected"
    assert rejected.rejection_reason == "FSI too low"

    assert dispatcher.of_type(EventType.PROPOSAL_APPROVED)[0].recipient_id == "dev-1"
    assert dispatcher.of_type(EventType.PROPOSAL_REJECTED)[0].recipient_id == "dev-2"

    # rejected is terminal
    with pytest.raises(StateConflict):
        svc.approve(db, principal=OWNER, proposal_id=b.id)


def test_member_cannot_evaluate(db):
    society = create_society(db)
    project = create_project(db, society)
    proposal = submit(db, project, developer(1))

    with pytest.raises(Forbidden):
        ProposalService().start_review(db, principal=member(1), proposal_id=proposal.id)


def test_comparison_orders_by_score_and_hides_drafts(db):
    society = create_society(db)
    project = create_project(db, society)
    svc = ProposalService()
    low = submit(db, project, developer(1))
    high = submit(db, project, developer(2))
    unscored = submit(db, project, developer(3))
    svc.submit(db, principal=developer(4), project_id=project.id, terms=terms(), as_draft=True)
    svc.evaluate(db, principal=OWNER, proposal_id=low.id, technical_score=50, financial_score=50, timeline_score=50)
    svc.evaluate(db, principal=OWNER, proposal_id=high.id, technical_score=90, financial_score=90, timeline_score=90)

    rows = svc.comparison(db, principal=member(1), project_id=project.id, oracle=oracle(db))
    assert [p.id for p in rows] == [high.id, low.id, unscored.id]


def test_draft_is_hidden_from_members(db):
    society = create_society(db)
    project = create_project(db, society)
    svc = ProposalService()
    draft = svc.submit(db, principal=developer(1), project_id=project.id, terms=terms(), as_draft=True)

    assert svc.get_visible(db, principal=developer(1), proposal_id=draft.id, oracle=oracle(db)).id == draft.id
    with pytest.raises(NotFound):
        svc.get_visible(db, principal=member(1), proposal_id=draft.id, oracle=oracle(db))
