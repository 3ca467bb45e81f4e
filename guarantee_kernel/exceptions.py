"""
Typed Exception Hierarchy for the Guarantee Workflow Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every transition failure must be actionable by the caller without parsing
message strings.  Each exception therefore:
  1. Has its own class (catch by type, not message)
  2. Has a CODE class attribute (machine-readable, API-safe)
  3. Carries structured DATA (entity id, current status, required status)

Example:
    try:
        slots.approve(actor, slot_id)
    except InvalidTransitionError as e:
        api_response(
            code=e.code,
            entity_id=e.entity_id,
            current=e.current_status,
            allowed=e.allowed_statuses,
        )

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    GuaranteeKernelError (base)
    |
    +-- EntityNotFoundError
    +-- PermissionDeniedError
    +-- InvalidTransitionError
    |   +-- StaleStateError
    |   +-- MissingNegotiatedTermsError   (also a ValidationError)
    +-- ConflictingRefundRequestError
    +-- ValidationError
    |   +-- RefundNotAllowedError
    |   +-- RefundAmountExceededError
    |   +-- InsufficientBalanceError
    +-- DependencyFailureError
    +-- ConfigurationError
    +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Code                        | When Raised
----------------------------|--------------------------------------------------
ENTITY_NOT_FOUND            | Request / slot / refund id does not exist
PERMISSION_DENIED           | Role level or ownership check failed
INVALID_TRANSITION          | Action not legal from the entity's current status
STALE_STATE                 | Concurrent writer changed the row first
MISSING_NEGOTIATED_TERMS    | Accepting a request without final amounts/dates
CONFLICTING_REFUND_REQUEST  | Slot already has an open refund request
VALIDATION_ERROR            | Missing/invalid payload field
REFUND_NOT_ALLOWED          | Campaign refund policy forbids the refund
REFUND_AMOUNT_EXCEEDED      | Refund larger than the refundable remainder
INSUFFICIENT_BALANCE        | Buyer cash balance below the contracted total
DEPENDENCY_FAILURE          | Store / ledger / metadata collaborator failed
ENGINE_CONFIGURATION_ERROR  | Engine YAML config is malformed
IMMUTABILITY_VIOLATION      | UPDATE/DELETE of a slot transaction record

===============================================================================
HANDLING PATTERNS
===============================================================================

1. PermissionDeniedError is surfaced verbatim and never retried.
2. InvalidTransitionError (including StaleStateError) means the caller
   should re-fetch the entity before retrying.
3. DependencyFailureError means the unit of work was rolled back in full;
   the whole operation is safe to retry.
"""


class GuaranteeKernelError(Exception):
    """
    Base exception for all guarantee workflow errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "GUARANTEE_KERNEL_ERROR"


class EntityNotFoundError(GuaranteeKernelError):
    """Requested entity does not exist."""

    code: str = "ENTITY_NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class PermissionDeniedError(GuaranteeKernelError):
    """Actor's role level or ownership does not permit the action."""

    code: str = "PERMISSION_DENIED"

    def __init__(
        self,
        actor_id: str,
        role: str,
        action: str,
        entity_type: str,
        entity_id: str,
        reason: str,
    ):
        self.actor_id = actor_id
        self.role = role
        self.action = action
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Actor {actor_id} ({role}) may not {action} {entity_type} "
            f"{entity_id}: {reason}"
        )


class InvalidTransitionError(GuaranteeKernelError):
    """The action is not legal from the entity's current status."""

    code: str = "INVALID_TRANSITION"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        current_status: str,
        allowed_statuses: tuple[str, ...] = (),
        reason: str | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.action = action
        self.current_status = current_status
        self.allowed_statuses = allowed_statuses
        self.reason = reason
        message = (
            f"Cannot {action} {entity_type} {entity_id} in status "
            f"'{current_status}'"
        )
        if allowed_statuses:
            message += f" (allowed from: {', '.join(allowed_statuses)})"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class StaleStateError(InvalidTransitionError):
    """
    The row was modified by another writer between read and write.

    Raised by the coordinator when the optimistic version check fails.
    The caller must re-fetch before retrying.
    """

    code: str = "STALE_STATE"

    def __init__(self, entity_type: str, entity_id: str, action: str):
        super().__init__(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            current_status="unknown",
            reason="entity was modified concurrently; re-fetch and retry",
        )


class ValidationError(GuaranteeKernelError):
    """A required field is missing or invalid for the transition."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, entity_type: str, entity_id: str, field: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.field = field
        self.reason = reason
        super().__init__(
            f"Invalid {field} for {entity_type} {entity_id}: {reason}"
        )


class MissingNegotiatedTermsError(ValidationError, InvalidTransitionError):
    """
    Accept attempted before the final amounts and dates were agreed.

    Both a ValidationError (missing fields) and an InvalidTransitionError
    (the accept transition is not yet permitted).
    """

    code: str = "MISSING_NEGOTIATED_TERMS"

    def __init__(self, entity_id: str, missing_fields: tuple[str, ...]):
        self.entity_type = "QuoteRequest"
        self.entity_id = entity_id
        self.field = ", ".join(missing_fields)
        self.missing_fields = missing_fields
        self.action = "accept"
        self.current_status = "negotiating"
        self.allowed_statuses = ("negotiating",)
        self.reason = "final terms are required before accepting"
        GuaranteeKernelError.__init__(
            self,
            f"Cannot accept QuoteRequest {entity_id}: missing "
            f"{', '.join(missing_fields)}",
        )


class RefundNotAllowedError(ValidationError):
    """The campaign's refund policy forbids this refund."""

    code: str = "REFUND_NOT_ALLOWED"

    def __init__(self, slot_id: str, reason: str):
        super().__init__("GuaranteeSlot", slot_id, "refund", reason)


class RefundAmountExceededError(ValidationError):
    """Requested refund exceeds the refundable remainder of the slot."""

    code: str = "REFUND_AMOUNT_EXCEEDED"

    def __init__(self, slot_id: str, requested: str, refundable: str):
        self.requested = requested
        self.refundable = refundable
        super().__init__(
            "GuaranteeSlot",
            slot_id,
            "refund_amount",
            f"requested {requested} exceeds refundable {refundable}",
        )


class InsufficientBalanceError(ValidationError):
    """Buyer's cash balance cannot cover the hold."""

    code: str = "INSUFFICIENT_BALANCE"

    def __init__(self, user_id: str, required: str, available: str):
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(
            "CashBalance",
            user_id,
            "cash_amount",
            f"required {required}, available {available}",
        )


class ConflictingRefundRequestError(GuaranteeKernelError):
    """An open refund request already exists for the slot."""

    code: str = "CONFLICTING_REFUND_REQUEST"

    def __init__(self, slot_id: str, open_refund_id: str | None = None):
        self.slot_id = slot_id
        self.open_refund_id = open_refund_id
        detail = f" ({open_refund_id})" if open_refund_id else ""
        super().__init__(
            f"GuaranteeSlot {slot_id} already has an open refund request{detail}"
        )


class DependencyFailureError(GuaranteeKernelError):
    """
    A collaborator (store, ledger, campaign metadata) failed.

    The unit of work has been rolled back in full and the operation is
    safe to retry.
    """

    code: str = "DEPENDENCY_FAILURE"

    def __init__(self, dependency: str, operation: str, detail: str):
        self.dependency = dependency
        self.operation = operation
        self.detail = detail
        super().__init__(f"{dependency} failed during {operation}: {detail}")


class ConfigurationError(GuaranteeKernelError):
    """Engine configuration is malformed."""

    code: str = "ENGINE_CONFIGURATION_ERROR"

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Invalid engine configuration ({source}): {reason}")


class ImmutabilityViolationError(GuaranteeKernelError):
    """Attempt to modify or delete an append-only ledger record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"{entity_type} {entity_id} is immutable: {reason}")
