"""
Platform-wide exception hierarchy.

Services raise these; blueprints register handlers against them once and
get consistent HTTP status codes everywhere.

Usage:
    from greatloom.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="LoomInstance", resource_id="9f2c…")
    raise ValidationError("weeks must be between 1 and 16", details={"weeks": 40})

Loom-specific errors follow the recovery rules of the engine:
    RuleExpansionError         per rule; logged, rule skipped, batch continues
    ReferentialIntegrityError  per instance; stored as a warning, never fatal
    ArchivalTransactionError   per instance; rolled back, retried next run
    ConflictResolverBlock      synchronous rejection of a rule edit (409)
    LoomLockBusyError          another projector/archiver pass holds the lock (409)
    HistoryImmutableError      attempted update/delete of a ribbon row
    OverrideViolationError     engine tried to write an overridden row (bug)
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "ProgramRule").
        resource_id: The PK that was looked up. Included in logs and message.
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
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when a write collides with current state (duplicate, stale version).

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} conflict on {field}={value!r}"
        super().__init__(msg)


# ── Loom engine ──────────────────────────────────────────────────────────────


class LoomError(Exception):
    """Base class for projection / archival engine errors."""


class RuleExpansionError(LoomError):
    """A rule's recurrence or exceptions could not be expanded."""

    def __init__(self, rule_id: int | None, message: str) -> None:
        self.rule_id = rule_id
        super().__init__(f"Rule {rule_id}: {message}")


class ReferentialIntegrityError(LoomError):
    """An instance references a missing or retired venue/vehicle/staff/participant."""

    def __init__(self, kind: str, ref_id: int, state: str = "missing") -> None:
        self.kind = kind
        self.ref_id = ref_id
        self.state = state
        super().__init__(f"{kind} {ref_id} is {state}")

    def to_warning(self) -> dict:
        return {"kind": self.kind, "ref_id": self.ref_id, "state": self.state,
                "message": str(self)}


class ArchivalTransactionError(LoomError):
    """Snapshot-and-delete of one instance failed and was rolled back."""

    def __init__(self, instance_id: str, cause: Exception) -> None:
        self.instance_id = instance_id
        self.cause = cause
        super().__init__(f"Archival of instance {instance_id} failed: {cause}")


class ConflictResolverBlock(LoomError):
    """A proposed rule change collides with overridden instances."""

    def __init__(self, conflicts: list[dict]) -> None:
        self.conflicts = conflicts
        blocking = [c for c in conflicts if c.get("blocking")]
        first = blocking[0]["message"] if blocking else "blocking conflict"
        more = f" (+{len(blocking) - 1} more)" if len(blocking) > 1 else ""
        super().__init__(f"Rule change rejected: {first}{more}")


class LoomLockBusyError(LoomError):
    """The named loom-writes lock is held by another pass."""

    def __init__(self, name: str, holder: str | None = None) -> None:
        self.name = name
        self.holder = holder
        super().__init__(f"Lock {name!r} is held by {holder or 'another worker'}")


class HistoryImmutableError(LoomError):
    """History ribbon rows are append-only."""


class OverrideViolationError(AssertionError):
    """The projector attempted to write an attachment an operator has overridden.

    A programming bug, not a runtime condition: never caught by the engine.
    """
