"""
Typed Exception Hierarchy for the Expense Kernel.

Every error the kernel raises has a typed class, a machine-readable ``code``
attribute, and structured data fields. Callers catch by type and read the
fields; they never parse messages.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ExpenseKernelError (base)
    |
    +-- ValidationError
    |
    +-- RequestError
    |   +-- RequestNotFoundError
    |   +-- DuplicateRequestError
    |   +-- InvalidTransitionError
    |
    +-- ExternalServiceError
    |   +-- LedgerAppendError
    |   +-- NotificationDeliveryError
    |   +-- ExternalServiceTimeoutError
    |
    +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | VALIDATION_FAILED           | Submission/decision input rejected
----------------|-----------------------------|-----------------------------------------
Request         | REQUEST_NOT_FOUND           | Request id doesn't exist
                | DUPLICATE_REQUEST_ID        | Request id already stored
                | INVALID_TRANSITION          | Decision on a non-Pending request
----------------|-----------------------------|-----------------------------------------
External        | LEDGER_APPEND_FAILED        | Ledger store rejected/failed the row
                | NOTIFICATION_FAILED         | Channel could not deliver
                | EXTERNAL_SERVICE_TIMEOUT    | External call exceeded its bound
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Update/delete of a ledger row

===============================================================================
HANDLING PATTERNS
===============================================================================

1. Validation errors block submission entirely; nothing is created:

    try:
        result = workflow.submit(form)
    except ValidationError as e:
        render_field_errors(e.field_errors)

2. Transition errors are recoverable no-ops with an explanation:

    except InvalidTransitionError as e:
        flash(f"Request already {e.current_status}")

3. External failures after a committed decision are NOT raised by the
   workflow service. They come back as warnings on the result and can be
   re-issued with ``retry_side_effects``. Recorders and channels raise the
   ExternalServiceError subclasses; the service converts them.
"""


class ExpenseKernelError(Exception):
    """
    Base exception for all expense kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "EXPENSE_KERNEL_ERROR"


# Validation


class ValidationError(ExpenseKernelError):
    """Input rejected; carries every violated field at once."""

    code: str = "VALIDATION_FAILED"

    def __init__(self, field_errors: dict[str, str]):
        self.field_errors = dict(field_errors)
        fields = ", ".join(sorted(self.field_errors))
        super().__init__(f"Validation failed for: {fields}")


# Request lifecycle


class RequestError(ExpenseKernelError):
    """Base exception for request lifecycle errors."""

    code: str = "REQUEST_ERROR"


class RequestNotFoundError(RequestError):
    """The request id is not present in the repository."""

    code: str = "REQUEST_NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Expense request not found: {request_id}")


class DuplicateRequestError(RequestError):
    """A request with this id is already stored."""

    code: str = "DUPLICATE_REQUEST_ID"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Expense request already exists: {request_id}")


class InvalidTransitionError(RequestError):
    """
    Status change not allowed from the request's current state.

    Raised for any decision on an Approved or Rejected request; the
    request is left untouched.
    """

    code: str = "INVALID_TRANSITION"

    def __init__(self, request_id: str, current_status: str, target_status: str):
        self.request_id = request_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Cannot move request {request_id} from {current_status} "
            f"to {target_status}: request is already {current_status}"
        )


# External collaborators


class ExternalServiceError(ExpenseKernelError):
    """Base exception for ledger and notification failures."""

    code: str = "EXTERNAL_SERVICE_FAILURE"

    def __init__(self, service: str, reason: str):
        self.service = service
        self.reason = reason
        super().__init__(f"{service} failed: {reason}")


class LedgerAppendError(ExternalServiceError):
    """The ledger store failed to append a row."""

    code: str = "LEDGER_APPEND_FAILED"

    def __init__(self, request_id: str, reason: str):
        self.request_id = request_id
        super().__init__("ledger", reason)


class NotificationDeliveryError(ExternalServiceError):
    """A channel could not deliver a notification to one recipient."""

    code: str = "NOTIFICATION_FAILED"

    def __init__(self, recipient: str, reason: str):
        self.recipient = recipient
        super().__init__("notification", reason)


class ExternalServiceTimeoutError(ExternalServiceError):
    """An external call did not finish within its bound."""

    code: str = "EXTERNAL_SERVICE_TIMEOUT"

    def __init__(self, service: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(service, f"timed out after {timeout_seconds}s")


# Immutability


class ImmutabilityViolationError(ExpenseKernelError):
    """Attempted to modify or delete an append-only ledger row."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
