"""Mapping status transitions.

    pending_verification --verify ok--> active
    active --persistent health failure--> error
    error --verify ok--> active
    error --re-initiate--> pending_verification
    any non-deleting --remove--> deleting

A failed verification leaves the mapping in pending_verification; the
verification workflow schedules rechecks instead of changing status.
"""

from __future__ import annotations

from tenantgate.domains.errors import InvalidTransition
from tenantgate.domains.models import MappingStatus

TRANSITIONS: dict[MappingStatus, frozenset[MappingStatus]] = {
    MappingStatus.PENDING_VERIFICATION: frozenset(
        {MappingStatus.ACTIVE, MappingStatus.DELETING}
    ),
    MappingStatus.ACTIVE: frozenset({MappingStatus.ERROR, MappingStatus.DELETING}),
    MappingStatus.ERROR: frozenset(
        {
            MappingStatus.ACTIVE,
            MappingStatus.PENDING_VERIFICATION,
            MappingStatus.DELETING,
        }
    ),
    MappingStatus.DELETING: frozenset(),
}


def can_transition(current: MappingStatus, target: MappingStatus) -> bool:
    """Same-status writes are not transitions and are always allowed, except on deleting."""
    if current == target:
        return current != MappingStatus.DELETING
    return target in TRANSITIONS[current]


def ensure_transition(current: MappingStatus, target: MappingStatus) -> None:
    """Raise InvalidTransition unless ``current -> target`` is allowed."""
    if not can_transition(current, target):
        raise InvalidTransition(current=current.value, attempted=target.value)
