#redevelopment/models/notification.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import String, DateTime, Uuid, Index, func
from sqlalchemy.orm import Mapped, mapped_column

from redevelopment.core.clock import utcnow
from redevelopment.db.base import Base
from redevelopment.db.types import JSONDict


class NotificationOutbox(Base):
    """
    Outbound queue of decision events. Written after the core transaction
    commits, in its own session; a delivery worker drains it.
    No FK to projects: events outlive deleted projects.
    """
    __tablename__ = "notification_outbox"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    society_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    payload_json: Mapped[Dict[str, Any]] = mapped_column(JSONDict, nullable=False, default=dict)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")  # pending | delivered | failed

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_outbox_status_created", "status", "created_at"),
        Index("ix_outbox_recipient", "recipient_id"),
    )
