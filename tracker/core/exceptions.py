"""
Service-wide exception hierarchy.

Services raise these types; blueprints register one handler against
TrackingError (see tracker.utils.errors.register_error_handlers) and every
failure leaves the API in the same envelope:

    {"code": "TERMINAL_STATUS", "message": "...", "status_code": 403, "details": ...}

Usage:
    from tracker.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Application", resource_id=app_id)
    raise ValidationError("action is required")
    raise ForbiddenError("Application is in a terminal state", code="TERMINAL_STATUS")
"""


class TrackingError(Exception):
    """Base for all expected, user-visible failures.

    Args:
        message: Human-readable explanation.
        code: Stable machine-readable code; defaults to the class code.
        details: Optional supplementary context (string or dict).
    """

    code = "INTERNAL"
    status_code = 500

    def __init__(self, message: str, code: str | None = None, details=None) -> None:
        if code is not None:
            self.code = code
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(TrackingError):
    """Malformed input or bad enum value. Maps to HTTP 400."""

    code = "VALIDATION"
    status_code = 400


class UnauthorizedError(TrackingError):
    """Missing or invalid caller identity. Maps to HTTP 401."""

    code = "UNAUTHORIZED"
    status_code = 401


class ForbiddenError(TrackingError):
    """Caller is identified but the operation is not allowed. Maps to HTTP 403.

    The code distinguishes the reason: FORBIDDEN (capability / role),
    TENANT_MISMATCH, TERMINAL_STATUS, EVALUATIONS_INCOMPLETE,
    SIGNALS_NOT_MET, FEEDBACK_REQUIRED.
    """

    code = "FORBIDDEN"
    status_code = 403


class NotFoundError(TrackingError):
    """Raised when a requested resource does not exist within the given scope.

    Args:
        resource: Human-readable entity name (e.g. "Application", "Pipeline").
        resource_id: The id that was looked up. Included in logs, not in the message.
        message: Optional message override.
    """

    code = "NOT_FOUND"
    status_code = 404

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(message or f"{resource} not found")


class ConflictError(TrackingError):
    """Raised when an operation would violate a uniqueness rule. Maps to HTTP 409.

    Args:
        resource: Entity name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
        message: Optional message override.
    """

    code = "CONFLICT"
    status_code = 409

    def __init__(
        self,
        resource: str,
        field: str,
        value: str | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(message or f"{resource} with {field}={value!r} already exists")


class TransitionError(TrackingError):
    """A requested transition is not legal from the current state.

    Codes: INVALID_ACTION, INVALID_STATUS, INVALID_STAGE. Maps to HTTP 400.
    """

    code = "INVALID_ACTION"
    status_code = 400
