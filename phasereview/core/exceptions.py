"""
Phase review exception hierarchy.

Every service in ``phasereview.services`` raises one of these types, and the
dispatch blueprint maps each of them to a single error code and HTTP status.
Callers never need to import exception classes from service modules.

Usage:
    from phasereview.core.exceptions import IllegalTransitionError, NotFoundError

    raise NotFoundError(resource="RevisionRequest", resource_id=42)
    raise IllegalTransitionError("approve", current_status, instance_id=7)

Failure taxonomy:
    IllegalTransitionError   event not legal from the current status (reported, never retried)
    ReviewGuardError         legal transition blocked by a review policy
    AlreadyAnsweredError     revision request already carries a revised file
    NotFoundError            unknown id
    PartialCommitError       request_revision step 1 committed, step 2 failed
    ExternalUnavailableError backend/network failure (the only nondeterministic one)
"""

from __future__ import annotations


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "PhaseInstance").
        resource_id: The id that was looked up.
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

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when a write loses a race against a concurrent writer.

    Maps to HTTP 409. Used for the (template, project) uniqueness rule and for
    two review outcomes racing on the same phase instance.
    """

    def __init__(
        self,
        resource: str,
        field: str,
        value: str | int | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(message or f"{resource} with {field}={value!r} already exists")


class PermissionDenied(Exception):
    """Raised when the actor's role does not grant the requested event."""

    def __init__(self, actor_id: int | str | None, role: str, event: str) -> None:
        super().__init__(f"User {actor_id} with role '{role}' may not perform '{event}'")
        self.actor_id = actor_id
        self.role = role
        self.event = event


class IllegalTransitionError(Exception):
    """Raised when an event is not in the transition table for the current status.

    The message always names the status the instance is actually in, so the
    actor learns why the action was refused.
    """

    def __init__(
        self,
        event: str,
        current_status: str,
        *,
        instance_id: int | None = None,
        reason: str | None = None,
    ) -> None:
        self.event = event
        self.current_status = str(current_status)
        self.instance_id = instance_id
        self.reason = reason
        target = f"phase instance {instance_id}" if instance_id is not None else "phase"
        msg = f"Cannot '{event}' {target}: current status is '{self.current_status}'"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class ReviewGuardError(Exception):
    """Raised when a legal transition is blocked by a review policy.

    Example: approving before any revision pass was recorded, or sending a
    phase back to review while the latest revision request is unanswered.
    """

    def __init__(self, event: str, instance_id: int | None, reason: str) -> None:
        self.event = event
        self.instance_id = instance_id
        self.reason = reason
        super().__init__(f"Cannot '{event}' phase instance {instance_id}: {reason}")


class AlreadyAnsweredError(Exception):
    """Raised when a revision request already carries a revised file."""

    def __init__(self, revision_id: int, revised_file: str | None = None) -> None:
        self.revision_id = revision_id
        self.revised_file = revised_file
        msg = f"Revision request {revision_id} has already been answered"
        if revised_file:
            msg += f" with '{revised_file}'"
        super().__init__(msg)


class PartialCommitError(Exception):
    """Raised when a two-step write committed its first step only.

    The caller retries ``pending_operation`` alone; re-running the whole
    sequence would create a duplicate revision request.
    """

    def __init__(
        self,
        instance_id: int,
        revision_id: int,
        pending_operation: str,
        cause: Exception | None = None,
    ) -> None:
        self.instance_id = instance_id
        self.revision_id = revision_id
        self.pending_operation = pending_operation
        self.cause = cause
        msg = (
            f"Revision request {revision_id} was created for phase instance "
            f"{instance_id} but '{pending_operation}' failed"
        )
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


class ExternalUnavailableError(Exception):
    """Raised when the persistence backend cannot be reached or fails internally.

    Recoverable: no local state was changed, the caller may retry.
    """

    def __init__(self, operation: str, detail: str, status_code: int | None = None) -> None:
        self.operation = operation
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"Backend unavailable for '{operation}': {detail}")


class UnknownStatusError(ValueError):
    """Raised when a status string is not one of the known phase statuses."""

    def __init__(self, value: object) -> None:
        self.value = value
        super().__init__(f"Unknown phase status: {value!r}")
