# redevelopment/core/project_states.py
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet


class ProjectStatus(str, Enum):
    planning = "planning"
    tender_open = "tender_open"
    proposals_received = "proposals_received"
    voting = "voting"
    developer_selected = "developer_selected"
    construction = "construction"
    completed = "completed"
    cancelled = "cancelled"


class ProjectAction(str, Enum):
    OPEN_TENDER = "open_tender"
    RECEIVE_PROPOSAL = "receive_proposal"
    OPEN_VOTING = "open_voting"
    SELECT_PROPOSAL = "select_proposal"
    START_CONSTRUCTION = "start_construction"
    COMPLETE = "complete"
    CANCEL = "cancel"
    # guard-only: named in errors, never move the project themselves
    SUBMIT_PROPOSAL = "submit_proposal"
    CAST_VOTE = "cast_vote"
    CLOSE_VOTING = "close_voting"


GUARD_ONLY_ACTIONS: FrozenSet[ProjectAction] = frozenset(
    {ProjectAction.SUBMIT_PROPOSAL, ProjectAction.CAST_VOTE, ProjectAction.CLOSE_VOTING}
)

TERMINAL_STATUSES: FrozenSet[ProjectStatus] = frozenset(
    {ProjectStatus.completed, ProjectStatus.cancelled}
)

NON_TERMINAL_STATUSES: FrozenSet[ProjectStatus] = frozenset(
    s for s in ProjectStatus if s not in TERMINAL_STATUSES
)

# action → (statuses it may start from, status it lands in)
TRANSITIONS: Dict[ProjectAction, tuple] = {
    ProjectAction.OPEN_TENDER: (
        frozenset({ProjectStatus.planning}),
        ProjectStatus.tender_open,
    ),
    ProjectAction.RECEIVE_PROPOSAL: (
        frozenset({ProjectStatus.planning, ProjectStatus.tender_open}),
        ProjectStatus.proposals_received,
    ),
    ProjectAction.OPEN_VOTING: (
        frozenset({ProjectStatus.planning, ProjectStatus.proposals_received}),
        ProjectStatus.voting,
    ),
    ProjectAction.SELECT_PROPOSAL: (
        frozenset({ProjectStatus.voting}),
        ProjectStatus.developer_selected,
    ),
    ProjectAction.START_CONSTRUCTION: (
        frozenset({ProjectStatus.developer_selected}),
        ProjectStatus.construction,
    ),
    ProjectAction.COMPLETE: (
        frozenset({ProjectStatus.construction}),
        ProjectStatus.completed,
    ),
    ProjectAction.CANCEL: (
        NON_TERMINAL_STATUSES,
        ProjectStatus.cancelled,
    ),
}

# guards that do not move the project
ACCEPTS_PROPOSALS: FrozenSet[ProjectStatus] = frozenset(
    {
        ProjectStatus.planning,
        ProjectStatus.tender_open,
        ProjectStatus.proposals_received,
    }
)

# details (title, threshold, ...) are frozen once members start voting
EDITABLE_DETAILS: FrozenSet[ProjectStatus] = frozenset(
    {
        ProjectStatus.planning,
        ProjectStatus.tender_open,
        ProjectStatus.proposals_received,
    }
)


def _transition(action: ProjectAction) -> tuple:
    if action in GUARD_ONLY_ACTIONS:
        raise ValueError(f"{action.value} is a guard, not a status transition")
    return TRANSITIONS[action]


def allowed_from(action: ProjectAction) -> FrozenSet[ProjectStatus]:
    return _transition(action)[0]


def target_of(action: ProjectAction) -> ProjectStatus:
    return _transition(action)[1]
