"""
Engine-wide exception hierarchy.

Services raise these; blueprints register handlers against them once
(``itsm.utils.errors.register_error_handlers``) and get consistent HTTP
status codes everywhere. No service builds an HTTP response itself.

Usage:
    from itsm.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Change", resource_id=change_id)
    raise ValidationError("Title is required", details={"title": "required"})
"""


class NotFoundError(Exception):
    """A change or notification is missing, or belongs to someone else.

    Cross-organization lookups raise this too, so a 404 never confirms that
    another organization's change exists. ``resource_id`` reaches the logs
    but not the response body.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        label = resource if resource_id is None else f"{resource} {resource_id}"
        super().__init__(f"{label} not found")


class ValidationError(Exception):
    """Rejected input or an illegal status move (HTTP 422).

    ``details`` maps field names to what was wrong with them. ``transition``
    marks state-machine rejections so they get their own error code.
    """

    def __init__(self, message: str, details: dict | None = None, *, transition: bool = False) -> None:
        self.details = details or {}
        self.transition = transition
        super().__init__(message)


class AuthenticationError(Exception):
    """Raised when the caller cannot be identified. Maps to HTTP 401."""


class AuthorizationError(Exception):
    """Raised when an identified actor lacks the role an operation needs. Maps to HTTP 403."""


class ConcurrencyConflictError(Exception):
    """Raised when a change's status moved underneath a conditional write.

    The caller read the change in ``expected_status`` but by the time the
    guarded UPDATE ran the stored status was different. Nothing was
    written; re-reading and retrying is safe. Maps to HTTP 409.

    Args:
        change_id: The change whose status moved.
        expected_status: The status the caller based its decision on.
        actual_status: The stored status when the conflict was detected, if known.
    """

    retryable = True

    def __init__(self, change_id: str, expected_status: str, actual_status: str | None = None) -> None:
        self.change_id = change_id
        self.expected_status = expected_status
        self.actual_status = actual_status
        msg = f"Change status is no longer '{expected_status}'"
        if actual_status is not None:
            msg += f" (now '{actual_status}')"
        msg += "; reload and try again"
        super().__init__(msg)
