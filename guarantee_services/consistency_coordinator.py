"""
guarantee_services.consistency_coordinator -- Atomic unit of work.

Responsibility:
    The single writer of cross-entity state.  ``unit_of_work`` opens one
    session, hands the caller a UnitOfWork (session, ledger, row locking
    and ``notify``), commits exactly once, translates storage and
    collaborator failures into typed errors, and dispatches the unit's
    outbox messages only after the commit succeeded.

Architecture position:
    Services layer.  Owns the transaction boundary for every public
    workflow operation; the state machine services and SqlLedger only
    flush.

Invariants enforced:
    - All-or-nothing: the transition, the ledger movement and the outbox
      rows of one operation commit together or not at all.
    - Notifications are never dispatched for a rolled-back unit.
    - Stale writes are detected, not overwritten: optimistic version
      mismatches surface as StaleStateError.
    - The one-open-refund rule is backed by a unique index; a violation
      surfaces as ConflictingRefundRequestError.

Failure modes:
    - Domain errors (GuaranteeKernelError): rolled back, re-raised unchanged.
    - StaleDataError -> StaleStateError.
    - IntegrityError on the open-refund index -> ConflictingRefundRequestError.
    - Any other SQLAlchemyError -> DependencyFailureError("store", ...).
    - Ledger exceptions that are not domain errors ->
      DependencyFailureError("ledger", ...).

Audit relevance:
    ``unit_of_work_committed`` and ``unit_of_work_rolled_back`` records carry
    the operation name, actor and duration.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Generator, Sequence, TypeVar
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from guarantee_kernel.domain.clock import Clock, SystemClock
from guarantee_kernel.domain.dtos import SlotHolding
from guarantee_kernel.domain.roles import Actor
from guarantee_kernel.exceptions import (
    ConflictingRefundRequestError,
    DependencyFailureError,
    EntityNotFoundError,
    GuaranteeKernelError,
    StaleStateError,
)
from guarantee_kernel.logging_config import LogContext, get_logger
from guarantee_kernel.models.outbox import OutboxMessageModel
from guarantee_services.ledger import LedgerPort, SqlLedger
from guarantee_services.notifications import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    NotificationMessage,
    OutboxRelay,
)

logger = get_logger("services.consistency_coordinator")

ModelT = TypeVar("ModelT")

OPEN_REFUND_INDEX = "ix_guarantee_refund_requests_open_unique"


def _is_open_refund_violation(exc: IntegrityError) -> bool:
    message = str(exc.orig) if exc.orig is not None else str(exc)
    if OPEN_REFUND_INDEX in message:
        return True
    # SQLite reports the columns rather than the index name.
    return "guarantee_refund_requests.slot_id" in message


class UnitOfWork:
    """
    One atomic operation in progress.

    Contract:
        Callers mutate rows through ``session``, move money through
        ``hold``/``release``/``settle`` and announce the outcome through
        ``notify``.  They never commit.
    """

    def __init__(
        self,
        session: Session,
        ledger: LedgerPort,
        actor: Actor,
        operation: str,
        now: datetime,
        notifications_enabled: bool = True,
    ):
        self.session = session
        self.ledger = ledger
        self.actor = actor
        self.operation = operation
        self.now = now
        self.entity_type: str | None = None
        self.entity_id: Any = None
        self._notifications_enabled = notifications_enabled
        self._outbox: list[OutboxMessageModel] = []

    # -------------------------------------------------------------------------
    # Rows
    # -------------------------------------------------------------------------

    def lock(self, model_cls: type[ModelT], entity_id: UUID, entity_type: str) -> ModelT:
        """Load a row with SELECT ... FOR UPDATE, refreshing any copy already
        in the session.

        The first locked row becomes the unit's subject for error reporting.

        Raises:
            EntityNotFoundError: No row with that id.
        """
        model = self.session.scalars(
            select(model_cls)
            .where(model_cls.id == entity_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).one_or_none()
        if model is None:
            raise EntityNotFoundError(entity_type, str(entity_id))
        if self.entity_id is None:
            self.entity_type = entity_type
            self.entity_id = entity_id
        return model

    def add(self, model: Any) -> None:
        self.session.add(model)

    def flush(self) -> None:
        self.session.flush()

    # -------------------------------------------------------------------------
    # Ledger
    # -------------------------------------------------------------------------

    def _ledger_call(self, name: str, fn: Callable[..., SlotHolding], **kwargs: Any) -> SlotHolding:
        try:
            return fn(**kwargs)
        except (GuaranteeKernelError, SQLAlchemyError):
            raise
        except Exception as exc:
            raise DependencyFailureError("ledger", f"{self.operation}.{name}", str(exc)) from exc

    def hold(self, **kwargs: Any) -> SlotHolding:
        return self._ledger_call("hold", self.ledger.hold, actor_id=self.actor.actor_id, **kwargs)

    def release(self, **kwargs: Any) -> SlotHolding:
        return self._ledger_call("release", self.ledger.release, actor_id=self.actor.actor_id, **kwargs)

    def settle(self, **kwargs: Any) -> SlotHolding:
        return self._ledger_call("settle", self.ledger.settle, actor_id=self.actor.actor_id, **kwargs)

    # -------------------------------------------------------------------------
    # Outbox
    # -------------------------------------------------------------------------

    def notify(
        self,
        event_type: str,
        *,
        aggregate_type: str,
        aggregate_id: UUID,
        recipients: Sequence[UUID | None] = (),
        payload: dict[str, Any] | None = None,
    ) -> None:
        """Queue a notification.  It is written with this unit and sent after commit."""
        if not self._notifications_enabled:
            return
        message = OutboxMessageModel(
            id=uuid4(),
            event_type=event_type,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            recipient_ids=sorted({str(r) for r in recipients if r is not None}),
            payload={k: _jsonable(v) for k, v in (payload or {}).items()},
            actor_id=self.actor.actor_id,
            created_at=self.now,
            attempts=0,
        )
        self.session.add(message)
        self._outbox.append(message)

    def committed_messages(self) -> list[NotificationMessage]:
        return [NotificationMessage.from_model(m) for m in self._outbox]


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return str(value)


class ConsistencyCoordinator:
    """
    Owns the transaction boundary of every workflow operation.

    Args:
        session_factory: Callable returning a new Session (sessionmaker).
        dispatcher: Post-commit notification channel.
        clock: Source of ``UnitOfWork.now``.
        ledger_factory: Builds the LedgerPort bound to the unit's session.
        notifications_enabled: When False no outbox rows are written.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        dispatcher: NotificationDispatcher | None = None,
        clock: Clock | None = None,
        ledger_factory: Callable[[Session], LedgerPort] | None = None,
        notifications_enabled: bool = True,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._ledger_factory = ledger_factory or SqlLedger
        self._notifications_enabled = notifications_enabled
        self.relay = OutboxRelay(
            session_factory,
            dispatcher or LoggingNotificationDispatcher(),
            clock=self._clock,
        )

    @property
    def clock(self) -> Clock:
        return self._clock

    @contextmanager
    def read_session(self) -> Generator[Session, None, None]:
        """Session for read-only queries; never committed."""
        session = self._session_factory()
        try:
            yield session
        finally:
            session.rollback()
            session.close()

    @contextmanager
    def unit_of_work(self, actor: Actor, operation: str) -> Generator[UnitOfWork, None, None]:
        """
        Run one atomic operation.

        Postconditions: On normal exit the unit is flushed, committed and
            its notifications dispatched.  On any exception it is rolled
            back, nothing is dispatched, and a typed error is raised.
        """
        t0 = time.monotonic()
        session = self._session_factory()
        try:
            uow = UnitOfWork(
                session=session,
                ledger=self._ledger_factory(session),
                actor=actor,
                operation=operation,
                now=self._clock.now(),
                notifications_enabled=self._notifications_enabled,
            )
        except Exception:
            session.close()
            raise

        with LogContext.bind(
            actor_id=str(actor.actor_id),
            correlation_id=LogContext.get_all().get("correlation_id") or str(uuid4()),
        ):
            try:
                yield uow
                session.flush()
                session.commit()
            except GuaranteeKernelError as exc:
                self._rollback(session, uow, t0, exc)
                raise
            except StaleDataError as exc:
                self._rollback(session, uow, t0, exc)
                raise StaleStateError(
                    entity_type=uow.entity_type or "unknown",
                    entity_id=str(uow.entity_id),
                    action=operation,
                ) from exc
            except IntegrityError as exc:
                self._rollback(session, uow, t0, exc)
                if _is_open_refund_violation(exc):
                    raise ConflictingRefundRequestError(slot_id=str(uow.entity_id)) from exc
                raise DependencyFailureError("store", operation, str(exc.orig)) from exc
            except SQLAlchemyError as exc:
                self._rollback(session, uow, t0, exc)
                raise DependencyFailureError("store", operation, str(exc)) from exc
            except Exception as exc:
                self._rollback(session, uow, t0, exc)
                raise
            finally:
                session.close()

            logger.info(
                "unit_of_work_committed",
                extra={
                    "operation": operation,
                    "entity_type": uow.entity_type,
                    "entity_id": str(uow.entity_id) if uow.entity_id else None,
                    "outbox_messages": len(uow._outbox),
                    "duration_ms": round((time.monotonic() - t0) * 1000, 3),
                },
            )

        # Strictly after commit.
        messages = uow.committed_messages()
        if messages:
            self.relay.dispatch_committed(messages)

    @staticmethod
    def _rollback(session: Session, uow: UnitOfWork, t0: float, exc: BaseException) -> None:
        session.rollback()
        logger.warning(
            "unit_of_work_rolled_back",
            extra={
                "operation": uow.operation,
                "entity_type": uow.entity_type,
                "entity_id": str(uow.entity_id) if uow.entity_id else None,
                "error_type": type(exc).__name__,
                "error_code": getattr(exc, "code", None),
                "duration_ms": round((time.monotonic() - t0) * 1000, 3),
            },
        )
