"""
Engine-wide exception hierarchy.

Services raise these canonical types; blueprints register handlers
against them once and get consistent HTTP status codes everywhere.

Every exception carries a machine-readable ``code`` (see
``diagnostic.utils.errors.E``) so callers can tell an incomplete
questionnaire apart from a closed cycle without parsing messages.

Usage:
    from diagnostic.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Assessment", resource_id=assessment_id)
    raise ValidationError("Plan must have exactly 3 actions", code="PLAN_INVALID")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND lookups scoped to another
    company, so a 404 never confirms that a foreign assessment exists.

    Args:
        resource: Human-readable entity name (e.g. "Assessment", "Gap").
        resource_id: The key that was looked up. Included in the message.
    """

    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint): the data
    was well-formed but violated a rule (incomplete answers, wrong plan
    shape, missing checklist items).

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional structured breakdown for API responses.
        code: Machine-readable error code.
    """

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        code: str = "VALIDATION",
    ) -> None:
        self.details = details or {}
        self.code = code
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a write-once record.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
        code: Machine-readable error code.
    """

    def __init__(
        self,
        resource: str,
        field: str,
        value: str | None = None,
        code: str = "CONFLICT",
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        self.code = code
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class StateConflictError(Exception):
    """Raised when the assessment or slot is in the wrong lifecycle state.

    Examples: mutating a closed cycle, submitting twice, replacing a plan
    that already has progress. Maps to HTTP 409.
    """

    def __init__(self, message: str, code: str = "CONFLICT", details: dict | None = None) -> None:
        self.code = code
        self.details = details or {}
        super().__init__(message)


class CatalogIntegrityError(Exception):
    """Raised when a reference catalog fails structural validation.

    Fatal at startup: ``create_app()`` lets it propagate so the process
    never serves partial catalog data.

    Args:
        errors: Every validation problem found, in discovery order.
        source: Catalog name the errors belong to.
    """

    code = "CATALOG_INTEGRITY"

    def __init__(self, errors: list[str], source: str = "catalog") -> None:
        self.errors = list(errors)
        self.source = source
        preview = "; ".join(self.errors[:5])
        more = f" (+{len(self.errors) - 5} more)" if len(self.errors) > 5 else ""
        super().__init__(f"{source} integrity check failed: {preview}{more}")
