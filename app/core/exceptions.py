"""
Service-layer exception hierarchy.

Services raise these; blueprints register one handler per type and get
consistent HTTP status codes everywhere.  Callers never import exception
classes from service modules.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="OperationTemplate", resource_id=42)
    raise ValidationError("Title is required", details={"title": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested record does not exist.  Maps to HTTP 404.

    Args:
        resource: Human-readable model name (e.g. "Client", "OperationCycle").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = resource
        if resource_id is not None:
            msg += f" id={resource_id}"
        super().__init__(f"{msg} not found")


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.  Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown, keyed by field name.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when a write would duplicate a unique value.  Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")
