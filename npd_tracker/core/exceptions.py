"""
Service-layer exception hierarchy.

Services raise these types; ``create_app`` registers one handler per
type so every blueprint gets the same HTTP status codes.

Usage:
    from npd_tracker.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="NPD", resource_id=42)
    raise ValidationError("Alasan penolakan wajib diisi", details={"reason": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested record does not exist within the caller's organization.

    Used for BOTH genuinely missing records AND cross-organization access.
    A 403 would confirm the record exists; a 404 does not.

    Args:
        resource: Human-readable entity name (e.g. "NPD", "SP2D").
        resource_id: The PK that was looked up. Logged, not returned.
        organization_id: Optional scope that was enforced, for debug logging.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        organization_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.organization_id = organization_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if organization_id is not None:
            msg += f" (organization={organization_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional structured breakdown (field -> problem, missing ids, ...).
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised on duplicate unique values or a stale optimistic-lock version.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class StaleVersionError(ConflictError):
    """Raised when the client's expected version no longer matches the record."""

    def __init__(self, resource: str, resource_id, expected, actual) -> None:
        super().__init__(resource, "version", str(expected))
        self.resource_id = resource_id
        self.expected = expected
        self.actual = actual
        self.args = (
            f"{resource} id={resource_id} was modified concurrently "
            f"(expected version {expected}, current {actual})",
        )


class AuthenticationError(Exception):
    """Raised when a request carries no valid identity. Maps to HTTP 401."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)
