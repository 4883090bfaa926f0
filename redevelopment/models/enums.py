#redevelopment/models/enums.py
from __future__ import annotations
from enum import Enum

from redevelopment.core.project_states import ProjectStatus  # noqa: F401  (re-export)


class ParticipantRole(str, Enum):
    SOCIETY_OWNER = "SOCIETY_OWNER"
    DEVELOPER = "DEVELOPER"
    SOCIETY_MEMBER = "SOCIETY_MEMBER"


class ProposalStatus(str, Enum):
    draft = "draft"
    submitted = "submitted"
    under_review = "under_review"
    shortlisted = "shortlisted"
    approved = "approved"
    selected = "selected"
    rejected = "rejected"
    withdrawn = "withdrawn"


class VotingStatus(str, Enum):
    open = "open"
    closed = "closed"


class MembershipStatus(str, Enum):
    active = "active"
    pending = "pending"
    removed = "removed"
    suspended = "suspended"


class VoteChoice(str, Enum):
    yes = "yes"
    no = "no"
    abstain = "abstain"

    def to_stored(self):
        """yes/no/abstain → True/False/None"""
        if self is VoteChoice.yes:
            return True
        if self is VoteChoice.no:
            return False
        return None

    @classmethod
    def from_stored(cls, value) -> "VoteChoice":
        if value is True:
            return cls.yes
        if value is False:
            return cls.no
        return cls.abstain


# proposal lifecycle groupings
PROPOSAL_TERMINAL = frozenset(
    {ProposalStatus.selected, ProposalStatus.rejected, ProposalStatus.withdrawn}
)
PROPOSAL_DEVELOPER_EDITABLE = frozenset({ProposalStatus.draft, ProposalStatus.submitted})
PROPOSAL_SELECTABLE = frozenset(
    {
        ProposalStatus.submitted,
        ProposalStatus.under_review,
        ProposalStatus.shortlisted,
        ProposalStatus.approved,
    }
)
# everything still open when a competitor wins
PROPOSAL_COMPETING = frozenset(
    {
        ProposalStatus.draft,
        ProposalStatus.submitted,
        ProposalStatus.under_review,
        ProposalStatus.shortlisted,
        ProposalStatus.approved,
    }
)
PROPOSAL_VISIBLE_FOR_COMPARISON = frozenset(
    {
        ProposalStatus.submitted,
        ProposalStatus.under_review,
        ProposalStatus.shortlisted,
        ProposalStatus.approved,
        ProposalStatus.selected,
    }
)


def values(statuses) -> list:
    return [s.value for s in statuses]
