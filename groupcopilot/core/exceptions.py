"""
Service-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from groupcopilot.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Room", resource_id="ABC123")
    raise ValidationError("Message is required", details={"content": "empty"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Room", "ApprovalRequest").
        resource_id: The key that was looked up. Included in logs and message.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidTransitionError(ValidationError):
    """Raised when a session is asked to move to a state that is not a legal successor.

    Always raised before anything is written, so stored state is untouched.
    """

    def __init__(self, current: str, target: str, allowed: list[str] | None = None) -> None:
        self.current = current
        self.target = target
        self.allowed = allowed or []
        super().__init__(
            f"Invalid transition: {current} → {target}",
            details={"current": current, "target": target, "allowed": self.allowed},
        )


class ConflictError(Exception):
    """Raised when an operation collides with existing state.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field or condition that conflicts.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class GateAlreadyOpenError(ConflictError):
    """A session already has a pending approval request."""

    def __init__(self, session_id: int, request_id: int) -> None:
        self.session_id = session_id
        self.request_id = request_id
        super().__init__("ApprovalRequest", "session_id", str(session_id))
        self.args = (f"Session {session_id} already has pending approval request {request_id}",)


class GateResolvedError(ConflictError):
    """A vote was cast on an approval request that is no longer pending."""

    def __init__(self, request_id: int, status: str) -> None:
        self.request_id = request_id
        self.status = status
        super().__init__("ApprovalRequest", "status", status)
        self.args = (f"Approval request {request_id} is already resolved ({status})",)


class ConcurrencyConflictError(ConflictError):
    """An optimistic version check failed; the caller should reload and retry."""

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        super().__init__(resource, "version", str(resource_id))
        self.args = (f"{resource} id={resource_id} was modified concurrently; retry the request",)
