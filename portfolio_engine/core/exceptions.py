"""
Engine-wide exception hierarchy.

Every service raises these types instead of ad-hoc exception classes, so the
governance engine can turn any of them into a diagnostic REJECTED decision
with a single handler and callers never need to import from service modules.

Usage:
    from portfolio_engine.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ScheduledItem", resource_id="item-7")
    raise ValidationError("duration is required", details={"duration": "missing"})
"""


class NotFoundError(Exception):
    """Raised when a change request references something that does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Team", "ScheduledItem").
        resource_id: The id that was looked up.
        scenario_id: Optional scenario the lookup was scoped to.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        scenario_id: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.scenario_id = scenario_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if scenario_id is not None:
            msg += f" (scenario={scenario_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is malformed or violates a request-level rule.

    Distinct from a constraint violation: a violation says the *scenario* is
    infeasible, this says the *request* cannot even be evaluated (missing
    fields, wrong types, unknown change kind).

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names; values
                 are error descriptions.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class DataIntegrityError(ValidationError):
    """Raised when a scenario references a team or item it does not contain.

    Evaluators and the validator catch this and surface it as a violation, so
    a dangling reference never escapes as a crash.
    """

    def __init__(self, reference: str, reference_id: str, *, owner: str | None = None) -> None:
        self.reference = reference
        self.reference_id = reference_id
        self.owner = owner
        msg = f"Unknown {reference} '{reference_id}'"
        if owner:
            msg += f" referenced by {owner}"
        super().__init__(msg, details={"reference": reference, "reference_id": reference_id})


class ConflictError(Exception):
    """Raised when an operation collides with existing state.

    Used for duplicate item ids on ADD_ITEM and for stale commits, where the
    baseline scenario changed between evaluation and apply.

    Args:
        resource: Entity name.
        field: The field that collides (e.g. "id", "version").
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | int | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} conflicts with current state"
        super().__init__(msg)
