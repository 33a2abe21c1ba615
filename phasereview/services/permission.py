"""
Phase Review: Role-Based Access Control

Every state-changing operation receives an explicit ``Actor``.  The role is
never looked up from a session or other ambient state; the caller states who
is acting and this module decides whether that role may perform the event.

Usage:
    from phasereview.services.permission import Actor, Role, check_permission

    actor = Actor(id=12, role=Role.TEACHER)
    check_permission(actor, "approve")          # raises PermissionDenied

    if has_permission(actor, "respond_to_revision"):
        ...
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from phasereview.core.exceptions import PermissionDenied, ValidationError


class Role(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value) -> "Role":
        """Case-insensitive role lookup; unknown roles raise ValidationError."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Unknown role: {value!r}", details={"role": value},
            ) from None


# Event → roles allowed to perform it.  Admins are read-only.
EVENT_ROLES: dict[str, frozenset[Role]] = {
    "start": frozenset({Role.STUDENT}),
    "send_to_review": frozenset({Role.TEACHER}),
    "approve": frozenset({Role.TEACHER}),
    "decline": frozenset({Role.TEACHER}),
    "request_revision": frozenset({Role.TEACHER}),
    "respond_to_revision": frozenset({Role.STUDENT}),
    "post_discussion": frozenset({Role.STUDENT, Role.TEACHER}),
    "upload_attachment": frozenset({Role.STUDENT, Role.TEACHER}),
}


@dataclass(frozen=True)
class Actor:
    """The user performing an operation, with the role they act in."""
    id: int
    role: Role

    @classmethod
    def of(cls, actor_id, role) -> "Actor":
        """Build an Actor from wire values (``role`` as a string)."""
        if actor_id in (None, ""):
            raise ValidationError("actor_id is required")
        return cls(id=int(actor_id), role=Role.parse(role))

    def to_dict(self) -> dict:
        return {"actor_id": self.id, "actor_role": self.role.value}


def has_permission(actor: Actor, event: str) -> bool:
    """Return True if the actor's role may perform ``event``."""
    return actor.role in EVENT_ROLES.get(event, frozenset())


def check_permission(actor: Actor, event: str) -> None:
    """
    Assert the actor may perform ``event``.

    Raises:
        PermissionDenied: If the role is not granted the event.
    """
    if not has_permission(actor, event):
        raise PermissionDenied(actor.id, actor.role.value, event)


def get_role_events(role: Role) -> set[str]:
    """Get every event the role may perform."""
    return {event for event, roles in EVENT_ROLES.items() if role in roles}
