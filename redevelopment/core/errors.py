# redevelopment/core/errors.py
from __future__ import annotations

from typing import Any, Dict, Optional


class DomainError(Exception):
    """
    Base for every business-rule violation raised by the service layer.

    - code: machine readable, stable across releases
    - http_status: what the API layer answers with
    - context: extra JSON-safe fields merged into the error body
    """

    code = "DOMAIN_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        *,
        http_status: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if http_status is not None:
            self.http_status = http_status
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code, **self.context}


class ValidationError(DomainError):
    code = "VALIDATION_ERROR"
    http_status = 400


class NotFound(DomainError):
    code = "NOT_FOUND"
    http_status = 404


class Forbidden(DomainError):
    code = "FORBIDDEN"
    http_status = 403


class StateConflict(DomainError):
    """
    Operation is illegal in the current project/proposal state.
    Always names the current state and the attempted action.
    """

    code = "STATE_CONFLICT"
    http_status = 409

    def __init__(
        self,
        message: str,
        *,
        current_state: Optional[str] = None,
        action: Optional[str] = None,
        http_status: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = dict(context or {})
        if current_state is not None:
            ctx["currentState"] = current_state
        if action is not None:
            ctx["action"] = action
        super().__init__(message, http_status=http_status, context=ctx)
        self.current_state = current_state
        self.action = action


class AlreadyVoted(DomainError):
    code = "ALREADY_VOTED"
    http_status = 409


class DuplicateProposal(DomainError):
    code = "DUPLICATE_PROPOSAL"
    http_status = 409


class Unexpected(DomainError):
    code = "UNEXPECTED"
    http_status = 500
