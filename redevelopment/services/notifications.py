# redevelopment/services/notifications.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from sqlalchemy.orm import Session

from redevelopment.models.notification import NotificationOutbox

logger = logging.getLogger(__name__)


class EventType:
    PROJECT_CREATED = "project_created"
    PROJECT_UPDATE = "project_update"
    TENDER_OPENED = "tender_opened"
    NEW_PROPOSAL = "new_proposal"
    PROPOSAL_APPROVED = "proposal_approved"
    PROPOSAL_REJECTED = "proposal_rejected"
    PROPOSAL_SELECTED = "proposal_selected"
    DEVELOPER_SELECTED = "developer_selected"
    VOTING_OPENED = "voting_opened"
    VOTE_CAST = "vote_cast"
    VOTING_CLOSED = "voting_closed"


@dataclass(frozen=True)
class NotificationEvent:
    event_type: str
    project_id: Optional[uuid.UUID] = None
    society_id: Optional[uuid.UUID] = None
    recipient_id: Optional[str] = None  # None = broadcast to society/project
    payload: Dict[str, Any] = field(default_factory=dict)


class NotificationDispatcher(Protocol):
    def enqueue(self, event: NotificationEvent) -> None:
        ...


class LoggingDispatcher:
    """Writes events to the log only. Useful where no outbox is provisioned."""

    def enqueue(self, event: NotificationEvent) -> None:
        logger.info(
            "notification",
            extra={
                "event_type": event.event_type,
                "project_id": str(event.project_id) if event.project_id else None,
                "recipient_id": event.recipient_id,
            },
        )


class InMemoryDispatcher:
    def __init__(self):
        self.events: List[NotificationEvent] = []

    def enqueue(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[NotificationEvent]:
        return [e for e in self.events if e.event_type == event_type]


class OutboxDispatcher:
    """
    Persists events to notification_outbox using its OWN session, so a
    failed enqueue can never touch the caller's transaction.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def enqueue(self, event: NotificationEvent) -> None:
        db = self.session_factory()
        try:
            db.add(
                NotificationOutbox(
                    event_type=event.event_type,
                    recipient_id=event.recipient_id,
                    society_id=event.society_id,
                    project_id=event.project_id,
                    payload_json=event.payload,
                )
            )
            db.commit()
        finally:
            db.close()


def dispatch_safely(dispatcher: NotificationDispatcher, events: Iterable[NotificationEvent]) -> int:
    """
    Best-effort fan-out. Call only AFTER the core transaction committed.
    Failures are logged and swallowed; returns how many were enqueued.
    """
    sent = 0
    for event in events:
        try:
            dispatcher.enqueue(event)
            sent += 1
        except Exception:
            logger.exception(
                "notification_enqueue_failed",
                extra={
                    "event_type": event.event_type,
                    "project_id": str(event.project_id) if event.project_id else None,
                    "recipient_id": event.recipient_id,
                },
            )
    return sent
