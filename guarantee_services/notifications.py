"""
guarantee_services.notifications -- Outbox-backed notification dispatch.

Responsibility:
    Defines the NotificationDispatcher collaborator interface, the message
    DTO read back from the outbox, a logging dispatcher for deployments
    without a delivery channel, and OutboxRelay, which hands committed
    outbox rows to the dispatcher and records the outcome.

Architecture position:
    Services layer.  Imports kernel models and logging only.

Invariants enforced:
    - Only committed outbox rows are ever dispatched.  The coordinator calls
      ``dispatch_committed`` strictly after its commit succeeded; the relay
      reads rows through its own session.
    - Dispatch is fire-and-forget: a dispatcher failure is logged and the
      row stays undispatched for the next relay pass.  It never propagates
      into the operation that produced the message.
    - Delivery is at-least-once.  A row is marked dispatched only after the
      dispatcher returned.

Failure modes:
    - Dispatcher exceptions: logged as ``notification_dispatch_failed``,
      attempts incremented, last_error recorded.
    - Rows that reach ``max_attempts`` are skipped by the relay and logged
      as ``notification_dead_lettered``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Protocol, Sequence, runtime_checkable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from guarantee_kernel.domain.clock import Clock, SystemClock
from guarantee_kernel.logging_config import get_logger
from guarantee_kernel.models.outbox import OutboxMessageModel

logger = get_logger("services.notifications")

DEFAULT_MAX_ATTEMPTS = 10


@dataclass(frozen=True)
class NotificationMessage:
    """A notification as committed to the outbox."""

    message_id: UUID
    event_type: str
    aggregate_type: str
    aggregate_id: UUID
    actor_id: UUID
    recipient_ids: tuple[str, ...] = ()
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: OutboxMessageModel) -> NotificationMessage:
        return cls(
            message_id=model.id,
            event_type=model.event_type,
            aggregate_type=model.aggregate_type,
            aggregate_id=model.aggregate_id,
            actor_id=model.actor_id,
            recipient_ids=tuple(model.recipient_ids or ()),
            payload=dict(model.payload or {}),
            created_at=model.created_at,
        )


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Outbound delivery channel (push, e-mail, in-app).  Fire-and-forget."""

    def dispatch(self, message: NotificationMessage) -> None:
        ...


class LoggingNotificationDispatcher:
    """Dispatcher that only records the notification in the structured log."""

    def dispatch(self, message: NotificationMessage) -> None:
        logger.info(
            "notification_dispatched",
            extra={
                "message_id": str(message.message_id),
                "event_type": message.event_type,
                "aggregate_type": message.aggregate_type,
                "aggregate_id": str(message.aggregate_id),
                "recipient_count": len(message.recipient_ids),
            },
        )


@dataclass(frozen=True)
class RelayResult:
    dispatched: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.dispatched + self.failed


class OutboxRelay:
    """
    Hands committed outbox rows to a NotificationDispatcher.

    Used twice: by the ConsistencyCoordinator right after a commit
    (``dispatch_committed``) and by ``scripts/relay_outbox.py`` to redeliver
    rows whose first dispatch failed (``relay``).
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        dispatcher: NotificationDispatcher,
        clock: Clock | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._clock = clock or SystemClock()
        self._max_attempts = max_attempts

    def pending(self, limit: int = 100) -> list[NotificationMessage]:
        """Committed, undispatched messages below the attempt limit, oldest first."""
        session = self._session_factory()
        try:
            stmt = (
                select(OutboxMessageModel)
                .where(
                    OutboxMessageModel.dispatched_at.is_(None),
                    OutboxMessageModel.attempts < self._max_attempts,
                )
                .order_by(OutboxMessageModel.created_at, OutboxMessageModel.id)
                .limit(limit)
            )
            return [NotificationMessage.from_model(m) for m in session.scalars(stmt)]
        finally:
            session.close()

    def relay(self, limit: int = 100) -> RelayResult:
        """Redeliver up to ``limit`` pending messages."""
        messages = self.pending(limit)
        result = self.dispatch_committed(messages)
        logger.info(
            "outbox_relay_completed",
            extra={"dispatched": result.dispatched, "failed": result.failed},
        )
        return result

    def dispatch_committed(self, messages: Sequence[NotificationMessage]) -> RelayResult:
        """Dispatch already-committed messages and record each outcome."""
        dispatched = 0
        failed = 0
        for message in messages:
            try:
                self._dispatcher.dispatch(message)
            except Exception as exc:  # noqa: BLE001 -- fire-and-forget
                failed += 1
                logger.warning(
                    "notification_dispatch_failed",
                    extra={
                        "message_id": str(message.message_id),
                        "event_type": message.event_type,
                        "error": str(exc),
                    },
                )
                self._record_outcome(message.message_id, error=str(exc))
                continue
            dispatched += 1
            self._record_outcome(message.message_id, error=None)
        return RelayResult(dispatched=dispatched, failed=failed)

    def _record_outcome(self, message_id: UUID, error: str | None) -> None:
        session = self._session_factory()
        try:
            model = session.get(OutboxMessageModel, message_id)
            if model is None:
                return
            model.attempts = (model.attempts or 0) + 1
            if error is None:
                model.dispatched_at = self._clock.now()
                model.last_error = None
            else:
                model.last_error = error[:4000]
                if model.attempts >= self._max_attempts:
                    logger.error(
                        "notification_dead_lettered",
                        extra={"message_id": str(message_id), "attempts": model.attempts},
                    )
            session.commit()
        except SQLAlchemyError:
            # The row stays undispatched; the relay will deliver it again.
            session.rollback()
            logger.warning(
                "notification_outcome_not_recorded",
                extra={"message_id": str(message_id)},
                exc_info=True,
            )
        finally:
            session.close()
