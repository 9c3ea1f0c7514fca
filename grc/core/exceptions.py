"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them
once and map each to a stable HTTP status:

    ValidationError    -> 400
    NotFoundError      -> 404
    InvalidStateError  -> 409
    ConflictError      -> 409

Usage:
    from grc.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ApprovalItem", resource_id=42)
    raise ValidationError("reasoning is required", details={"reasoning": "blank"})
"""


class NotFoundError(Exception):
    """Raised when a referenced item, plan or entity does not exist.

    Args:
        resource: Human-readable model name (e.g. "AuditPlan", "ApprovalItem").
        resource_id: The PK that was looked up.
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
    """Raised when input is missing or out of range.

    Examples: blank rejection reasoning, strategicPriority outside 1-3,
    an unknown risk level. Never retried automatically.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidStateError(Exception):
    """Raised when a transition is not allowed from the current state.

    Args:
        resource: Model name.
        current_state: State the record is in.
        action: Transition that was attempted (approve, reject, escalate).
    """

    def __init__(self, resource: str, current_state: str, action: str) -> None:
        self.resource = resource
        self.current_state = current_state
        self.action = action
        super().__init__(f"Cannot {action} {resource} in '{current_state}' state")


class ConflictError(Exception):
    """Raised when another actor changed the record first.

    Covers both a stale optimistic-concurrency version and a unique key
    that would be duplicated. The client is expected to refetch and retry.

    Args:
        resource: Model name.
        field: The field whose precondition failed (``version``, ``code``...).
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | int | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        if field == "version":
            msg = f"{resource} was modified concurrently (expected version={value!r})"
        else:
            msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)
