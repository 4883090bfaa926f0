#redevelopment/policies/rbac.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Set

from redevelopment.core.errors import Forbidden
from redevelopment.models.enums import ParticipantRole


@dataclass(frozen=True)
class Principal:
    """
    Capability carried by the bearer token. Says WHO and in which role;
    never says what they own. Ownership is checked against the entity.
    """
    user_id: str
    role: ParticipantRole
    display_name: str = "Unknown"


# --- Core action constants ---
ACTION_CREATE_PROJECT = "CREATE_PROJECT"
ACTION_MANAGE_PROJECT = "MANAGE_PROJECT"
ACTION_SUBMIT_PROPOSAL = "SUBMIT_PROPOSAL"
ACTION_EVALUATE_PROPOSAL = "EVALUATE_PROPOSAL"
ACTION_CAST_VOTE = "CAST_VOTE"


def allowed_actions(role: ParticipantRole) -> Set[str]:
    """
    Pure RBAC: which actions a role may attempt.
    """

    if role == ParticipantRole.SOCIETY_OWNER:
        return {
            ACTION_CREATE_PROJECT,
            ACTION_MANAGE_PROJECT,
            ACTION_EVALUATE_PROPOSAL,
            ACTION_CAST_VOTE,
        }

    if role == ParticipantRole.DEVELOPER:
        return {ACTION_SUBMIT_PROPOSAL}

    if role == ParticipantRole.SOCIETY_MEMBER:
        return {ACTION_CAST_VOTE}

    return set()


def require_action(principal: Principal, action: str) -> None:
    if action not in allowed_actions(principal.role):
        raise Forbidden(
            f"Role {principal.role.value} not permitted for action {action}."
        )
