from __future__ import annotations

import hashlib
import json
import uuid
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session
from starlette.requests import Request

from redevelopment.models.audit_log import AuditLogRecord
from redevelopment.policies.rbac import Principal


class AuditAction:
    # Project lifecycle
    PROJECT_CREATED = "PROJECT_CREATED"
    PROJECT_UPDATED = "PROJECT_UPDATED"
    PROJECT_DELETED = "PROJECT_DELETED"
    TENDER_OPENED = "TENDER_OPENED"
    VOTING_OPENED = "VOTING_OPENED"
    VOTING_CLOSED = "VOTING_CLOSED"
    VOTING_SWEEP = "VOTING_SWEEP"
    CONSTRUCTION_STARTED = "CONSTRUCTION_STARTED"
    PROJECT_COMPLETED = "PROJECT_COMPLETED"
    PROJECT_CANCELLED = "PROJECT_CANCELLED"

    # Proposals
    PROPOSAL_SUBMITTED = "PROPOSAL_SUBMITTED"
    PROPOSAL_UPDATED = "PROPOSAL_UPDATED"
    PROPOSAL_WITHDRAWN = "PROPOSAL_WITHDRAWN"
    PROPOSAL_DELETED = "PROPOSAL_DELETED"
    PROPOSAL_EVALUATED = "PROPOSAL_EVALUATED"
    PROPOSAL_REVIEW_STARTED = "PROPOSAL_REVIEW_STARTED"
    PROPOSAL_SHORTLISTED = "PROPOSAL_SHORTLISTED"
    PROPOSAL_APPROVED = "PROPOSAL_APPROVED"
    PROPOSAL_REJECTED = "PROPOSAL_REJECTED"
    PROPOSAL_SELECTED = "PROPOSAL_SELECTED"

    # Votes
    VOTE_CAST = "VOTE_CAST"
    VOTE_BATCH_CAST = "VOTE_BATCH_CAST"
    VOTE_VERIFIED = "VOTE_VERIFIED"


def _payload_hash(payload: Dict[str, Any]) -> str:
    # sorted keys, no whitespace: equal summaries hash equal
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def audit_event(
    db: Session,
    *,
    request: Request,
    principal: Principal,
    project_id: Optional[uuid.UUID],
    action: str,
    payload_summary: Dict[str, Any],
    status: str = "ok",
    ref_id: Optional[str] = None,
) -> AuditLogRecord:
    """
    Append-only audit record insert.

    payload_summary MUST be safe: never include how an individual member voted.
    Audit stores hash + safe summary only.
    """
    rid = getattr(request.state, "request_id", None) or "missing"

    row = AuditLogRecord(
        request_id=rid,
        route=str(request.url.path),
        method=request.method,
        actor_id=principal.user_id,
        actor_role=principal.role.value,
        project_id=project_id,
        action=action,
        status=status,
        payload_hash=_payload_hash(payload_summary),
        payload_summary_json=payload_summary,
        ref_id=ref_id,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row
