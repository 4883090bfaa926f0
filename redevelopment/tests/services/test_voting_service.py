import uuid
from datetime import timedelta

import pytest
from sqlalchemy import insert, select

from redevelopment.core.errors import AlreadyVoted, Forbidden, NotFound, StateConflict, ValidationError
from redevelopment.models.enums import MembershipStatus, VoteChoice
from redevelopment.models.member_vote import Ballot, MemberVote
from redevelopment.services.notifications import EventType
from redevelopment.services.voting_service import BallotInput, VotingLedger, half_up_percent
from redevelopment.tests.helpers import (
    DEADLINE,
    NOW,
    OWNER,
    SESSION,
    create_society,
    developer,
    member,
    oracle,
    project_in_voting,
)

DURING = NOW + timedelta(hours=1)


def cast(db, ledger, project, who, vote="yes", proposal=None, session=SESSION):
    return ledger.submit_vote(
        db,
        principal=who,
        oracle=oracle(db),
        project_id=project.id,
        ballot=BallotInput(
            vote=VoteChoice(vote),
            voting_session=session,
            proposal_id=proposal.id if proposal is not None else None,
        ),
        now=DURING,
    )


def test_half_up_percent():
    assert half_up_percent(6, 10) == 60
    assert half_up_percent(1, 8) == 13
    assert half_up_percent(2, 3) == 67
    assert half_up_percent(1, 200) == 1
    assert half_up_percent(0, 0) == 0


def test_vote_is_recorded_with_statistics(db, dispatcher):
    society = create_society(db, members=4)
    project, (proposal, _) = project_in_voting(db, society)
    ledger = VotingLedger(dispatcher)

    ballot, stats = cast(db, ledger, project, member(1), proposal=proposal)

    assert ballot.member_id == "member-1"
    assert ballot.vote is True
    assert ballot.is_verified is False
    assert stats.total_votes == 1
    assert stats.yes_votes == 1
    assert stats.total_members == 4
    assert stats.participation_rate == 25
    assert stats.hours_remaining == 7 * 24 - 1
    assert dispatcher.of_type(EventType.VOTE_CAST)[0].recipient_id == OWNER.user_id

    entry = db.execute(select(MemberVote).where(MemberVote.member_id == "member-1")).scalar_one()
    assert entry.total_votes == 1


def test_second_vote_on_same_key_is_rejected(db):
    society = create_society(db)
    project, (proposal, _) = project_in_voting(db, society)
    ledger = VotingLedger()
    cast(db, ledger, project, member(1), proposal=proposal)

    with pytest.raises(AlreadyVoted) as exc:
        cast(db, ledger, project, member(1), vote="no", proposal=proposal)
    assert exc.value.context["existingVote"]["vote"] == "yes"

    ballots = db.execute(select(Ballot).where(Ballot.member_id == "member-1")).scalars().all()
    assert len(ballots) == 1


def test_conflicting_row_written_behind_our_back_wins(db):
    """A ballot that lands between any read and our insert still deduplicates."""
    society = create_society(db)
    project, (proposal, _) = project_in_voting(db, society)
    entry_id = uuid.uuid4()
    db.execute(
        insert(MemberVote.__table__).values(
            id=entry_id, project_id=project.id, member_id="member-1", total_votes=1, created_at=DURING
        )
    )
    db.execute(
        insert(Ballot.__table__).values(
            id=uuid.uuid4(),
            member_vote_id=entry_id,
            project_id=project.id,
            member_id="member-1",
            proposal_id=proposal.id,
            proposal_key=str(proposal.id),
            voting_session=SESSION,
            vote=False,
            voted_at=DURING,
            is_verified=False,
        )
    )
    db.commit()

    with pytest.raises(AlreadyVoted):
        cast(db, VotingLedger(), project, member(1), proposal=proposal)

    entry = db.get(MemberVote, entry_id)
    db.refresh(entry)
    assert entry.total_votes == 1


def test_same_member_may_vote_per_proposal_and_per_session(db):
    society = create_society(db)
    project, (a, b) = project_in_voting(db, society)
    ledger = VotingLedger()

    cast(db, ledger, project, member(1), proposal=a)
    cast(db, ledger, project, member(1), proposal=b)
    cast(db, ledger, project, member(1), proposal=a, session="second_round")
    cast(db, ledger, project, member(1))

    entry = db.execute(select(MemberVote).where(MemberVote.member_id == "member-1")).scalar_one()
    assert entry.total_votes == 4


def test_non_member_cannot_vote(db):
    society = create_society(db, extra_statuses={"member-9": MembershipStatus.pending.value})
    project, (proposal, _) = project_in_voting(db, society)
    ledger = VotingLedger()

    with pytest.raises(Forbidden):
        cast(db, ledger, project, member(9), proposal=proposal)
    with pytest.raises(Forbidden):
        cast(db, ledger, project, member(42), proposal=proposal)
    # developers hold no vote at all
    with pytest.raises(Forbidden):
        cast(db, ledger, project, developer(1), proposal=proposal)

    assert db.execute(select(Ballot)).scalars().all() == []


def test_deadline_boundary(db):
    society = create_society(db)
    project, (proposal, _) = project_in_voting(db, society)
    ledger = VotingLedger()

    def at(when, who):
        return ledger.submit_vote(
            db,
            principal=who,
            oracle=oracle(db),
            project_id=project.id,
            ballot=BallotInput(vote=VoteChoice.yes, voting_session=SESSION, proposal_id=proposal.id),
            now=when,
        )

    ballot, _ = at(DEADLINE - timedelta(milliseconds=1), member(1))
    assert ballot is not None

    with pytest.raises(StateConflict) as exc:
        at(DEADLINE + timedelta(milliseconds=1), member(2))
    assert exc.value.http_status == 400


def test_vote_outside_voting_status_conflicts(db):
    from redevelopment.tests.helpers import create_project

    society = create_society(db)
    project = create_project(db, society)
    with pytest.raises(StateConflict) as exc:
        cast(db, VotingLedger(), project, member(1))
    assert exc.value.current_state == "planning"
    assert exc.value.http_status == 409


def test_ballot_for_foreign_proposal_is_not_found(db):
    society = create_society(db)
    project, _ = project_in_voting(db, society)
    _, (foreign, _) = project_in_voting(db, society)

    with pytest.raises(NotFound):
        cast(db, VotingLedger(), project, member(1), proposal=foreign)


def test_ballot_for_withdrawn_proposal_conflicts(db):
    from redevelopment.services.proposals_service import ProposalService

    society = create_society(db)
    project, (kept, gone) = project_in_voting(db, society)
    ProposalService().withdraw(db, principal=developer(2), proposal_id=gone.id)

    with pytest.raises(StateConflict) as exc:
        cast(db, VotingLedger(), project, member(1), proposal=gone)
    assert exc.value.current_state == "withdrawn"
    assert db.execute(select(Ballot)).scalars().all() == []

    ballot, _ = cast(db, VotingLedger(), project, member(1), proposal=kept)
    assert ballot.proposal_id == kept.id


def test_reason_length_limit(db):
    society = create_society(db)
    project, (proposal, _) = project_in_voting(db, society)

    with pytest.raises(ValidationError):
        VotingLedger().submit_vote(
            db,
            principal=member(1),
            oracle=oracle(db),
            project_id=project.id,
            ballot=BallotInput(vote=VoteChoice.no, voting_session=SESSION, proposal_id=proposal.id, reason="x" * 501),
            now=DURING,
        )


def test_batch_partial_success(db):
    society = create_society(db)
    project, (a, b, c) = project_in_voting(db, society, developers=3)
    ledger = VotingLedger()
    cast(db, ledger, project, member(1), proposal=a)

    result = ledger.submit_votes_batch(
        db,
        principal=member(1),
        oracle=oracle(db),
        project_id=project.id,
        ballots=[
            BallotInput(vote=VoteChoice.no, voting_session=SESSION, proposal_id=a.id),
            BallotInput(vote=VoteChoice.yes, voting_session=SESSION, proposal_id=b.id),
            BallotInput(vote=VoteChoice.abstain, voting_session=SESSION, proposal_id=c.id),
            # repeated inside the same request
            BallotInput(vote=VoteChoice.no, voting_session=SESSION, proposal_id=c.id),
        ],
        now=DURING,
    )

    assert len(result.added) == 2
    assert {x.proposal_id for x in result.added} == {b.id, c.id}
    assert [d["proposalId"] for d in result.duplicates] == [str(a.id), str(c.id)]
    assert result.statistics.voting_session == SESSION
    assert result.statistics.total_votes == 3

    # the earlier ballot for `a` kept its value
    stored_a = db.execute(
        select(Ballot).where(Ballot.member_id == "member-1", Ballot.proposal_id == a.id)
    ).scalar_one()
    assert stored_a.vote is True

    entry = db.execute(select(MemberVote).where(MemberVote.member_id == "member-1")).scalar_one()
    assert entry.total_votes == 3


def test_batch_of_only_duplicates_fails_and_writes_nothing(db):
    society = create_society(db)
    project, (a, b) = project_in_voting(db, society)
    ledger = VotingLedger()
    cast(db, ledger, project, member(1), proposal=a)
    cast(db, ledger, project, member(1), proposal=b)

    with pytest.raises(AlreadyVoted) as exc:
        ledger.submit_votes_batch(
            db,
            principal=member(1),
            oracle=oracle(db),
            project_id=project.id,
            ballots=[
                BallotInput(vote=VoteChoice.no, voting_session=SESSION, proposal_id=a.id),
                BallotInput(vote=VoteChoice.no, voting_session=SESSION, proposal_id=b.id),
            ],
            now=DURING,
        )
    assert exc.value.context["duplicates"] == 2

    assert len(db.execute(select(Ballot)).scalars().all()) == 2
    entry = db.execute(select(MemberVote).where(MemberVote.member_id == "member-1")).scalar_one()
    assert entry.total_votes == 2


def test_statistics_approval_math(db):
    society = create_society(db, members=10)
    project, (proposal, _) = project_in_voting(db, society)
    ledger = VotingLedger()
    votes = ["yes"] * 6 + ["no"] * 2 + ["abstain"] * 2
    for n, vote in enumerate(votes, start=1):
        cast(db, ledger, project, member(n), vote=vote, proposal=proposal)

    stats = ledger.get_statistics(
        db, principal=OWNER, oracle=oracle(db), project_id=project.id, session=SESSION, now=DURING
    )
    assert (stats.yes_votes, stats.no_votes, stats.abstain_votes) == (6, 2, 2)
    assert stats.approval_percentage == 60
    assert stats.participation_rate == 100
    assert stats.minimum_approval_required == 75
    assert stats.is_approved is False


def test_statistics_for_outsider_forbidden(db):
    society = create_society(db)
    project, _ = project_in_voting(db, society)

    with pytest.raises(Forbidden):
        VotingLedger().get_statistics(db, principal=member(99), oracle=oracle(db), project_id=project.id)


def test_tally_orders_best_first(db):
    society = create_society(db, members=4)
    project, (a, b) = project_in_voting(db, society, minimum_approval_percentage=50)
    ledger = VotingLedger()
    for n, vote in enumerate(["yes", "no", "no"], start=1):
        cast(db, ledger, project, member(n), vote=vote, proposal=a)
    for n, vote in enumerate(["yes", "yes", "no"], start=1):
        cast(db, ledger, project, member(n), vote=vote, proposal=b)

    results = ledger.tally_proposals(db, project)
    assert [r.proposal_id for r in results] == [b.id, a.id]
    assert results[0].approval_percentage == 67
    assert results[0].meets_threshold is True
    assert results[1].approval_percentage == 33
    assert results[1].meets_threshold is False


def test_verify_vote_is_owner_only_and_keeps_value(db):
    society = create_society(db)
    project, (proposal, _) = project_in_voting(db, society)
    ledger = VotingLedger()
    ballot, _ = cast(db, ledger, project, member(1), vote="no", proposal=proposal)

    with pytest.raises(Forbidden):
        ledger.verify_vote(db, principal=member(2), ballot_id=ballot.id)

    verified = ledger.verify_vote(db, principal=OWNER, ballot_id=ballot.id, now=DURING)
    assert verified.is_verified is True
    assert verified.verified_by == OWNER.user_id
    assert verified.vote is False


def test_member_reads(db):
    society = create_society(db)
    project, (a, b) = project_in_voting(db, society)
    ledger = VotingLedger()
    cast(db, ledger, project, member(1), proposal=a)
    cast(db, ledger, project, member(1), proposal=b)

    mine = ledger.get_my_vote(db, principal=member(1), project_id=project.id, session=SESSION, proposal_id=b.id)
    assert mine.proposal_id == b.id

    with pytest.raises(NotFound):
        ledger.get_my_vote(db, principal=member(2), project_id=project.id, session=SESSION)

    rows, total = ledger.my_votes(db, principal=member(1), project_id=project.id, page=1, limit=1)
    assert total == 2
    assert len(rows) == 1

    with pytest.raises(ValidationError):
        ledger.my_votes(db, principal=member(1), page=1, limit=101)

    assert ledger.has_voted(db, principal=member(1), project_id=project.id) is not None
    assert ledger.has_voted(db, principal=member(2), project_id=project.id) is None


def test_eligibility_reports_reason(db):
    society = create_society(db)
    project, _ = project_in_voting(db, society)
    ledger = VotingLedger()

    ok = ledger.check_eligibility(db, principal=member(1), oracle=oracle(db), project_id=project.id, now=DURING)
    assert ok.eligible is True

    late = ledger.check_eligibility(
        db, principal=member(1), oracle=oracle(db), project_id=project.id, now=DEADLINE
    )
    assert late.eligible is False
    assert late.code == "STATE_CONFLICT"

    outsider = ledger.check_eligibility(
        db, principal=member(77), oracle=oracle(db), project_id=project.id, now=DURING
    )
    assert outsider.eligible is False
    assert outsider.code == "FORBIDDEN"


def test_failing_dispatcher_does_not_undo_the_vote(db):
    class Broken:
        def enqueue(self, event):
            raise RuntimeError("queue down")

    society = create_society(db)
    project, (proposal, _) = project_in_voting(db, society)

    ballot, _ = cast(db, VotingLedger(Broken()), project, member(1), proposal=proposal)
    assert db.get(Ballot, ballot.id) is not None
