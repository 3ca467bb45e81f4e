"""
Module: guarantee_kernel.models.outbox
Responsibility: Transactional outbox for post-commit notifications.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - A message row is written in the same transaction as the transition it
      announces, so a rolled-back transition never leaves a message behind.
    - dispatched_at is set only after the dispatcher accepted the message.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from guarantee_kernel.db.base import Base, UUIDString


class OutboxMessageModel(Base):
    """One notification waiting to be (or already) dispatched."""

    __tablename__ = "guarantee_outbox_messages"

    __table_args__ = (
        Index("ix_guarantee_outbox_messages_pending", "dispatched_at", "created_at"),
    )

    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(50), nullable=False)
    aggregate_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    recipient_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    dispatched_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<OutboxMessage {self.id} {self.event_type} "
            f"{self.aggregate_type}={self.aggregate_id}>"
        )
