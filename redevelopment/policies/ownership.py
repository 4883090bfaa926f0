#redevelopment/policies/ownership.py
from __future__ import annotations

from redevelopment.core.errors import Forbidden
from redevelopment.models.project import RedevelopmentProject
from redevelopment.models.proposal import DeveloperProposal
from redevelopment.policies.membership import MembershipOracle
from redevelopment.policies.rbac import Principal


def is_project_owner(principal: Principal, project: RedevelopmentProject) -> bool:
    return project.owner_id == principal.user_id


def require_project_owner(principal: Principal, project: RedevelopmentProject, action: str) -> None:
    if not is_project_owner(principal, project):
        raise Forbidden(f"Only the project owner may {action}.")


def require_proposal_developer(principal: Principal, proposal: DeveloperProposal, action: str) -> None:
    if proposal.developer_id != principal.user_id:
        raise Forbidden(f"You can only {action} your own proposals.")


def require_owner_or_member(
    oracle: MembershipOracle,
    principal: Principal,
    project: RedevelopmentProject,
) -> bool:
    """
    Returns True for the owner, False for an active member, raises otherwise.
    """
    if is_project_owner(principal, project):
        return True
    if oracle.is_active_member(project.society_id, principal.user_id):
        return False
    raise Forbidden("Access denied: you are neither the owner nor an active member of this society.")
