"""Specimen status state machine.

Transitions:
    available        -> unavailable | unsatisfactory
    unavailable      -> available
    unsatisfactory   -> available | entered-in-error
    entered-in-error -> (terminal)

Re-asserting the current status (e.g., checking an available specimen in at a
new station) is not a transition and is always accepted, except that nothing
leaves entered-in-error. A specimen with no recorded status is treated as
available.
"""

from lims_custody_engine.core.errors import InvalidStatusTransitionError

DEFAULT_STATUS = "available"
TERMINAL_STATUS = "entered-in-error"

_TRANSITIONS: dict[str, frozenset[str]] = {
    "available": frozenset({"unavailable", "unsatisfactory"}),
    "unavailable": frozenset({"available"}),
    "unsatisfactory": frozenset({"available", "entered-in-error"}),
    "entered-in-error": frozenset(),
}

_DISPLAY: dict[str, str] = {
    "available": "Available",
    "unavailable": "Unavailable",
    "unsatisfactory": "Unsatisfactory",
    "entered-in-error": "Entered in Error",
}


def effective_status(status: str | None) -> str:
    """Return the status used for transition checks."""
    return status or DEFAULT_STATUS


def allowed_transitions(status: str | None) -> list[str]:
    """Return the statuses reachable from ``status`` in one transition.

    Args:
        status: Current status (None reads as available).

    Returns:
        Sorted list of target statuses. Empty for terminal or unknown statuses.
    """
    return sorted(_TRANSITIONS.get(effective_status(status), frozenset()))


def status_display(status: str | None) -> str:
    """Return the human-readable label for a status."""
    current = effective_status(status)
    return _DISPLAY.get(current, current)


def is_known_status(status: str) -> bool:
    """Return True if ``status`` is one of the specimen statuses."""
    return status in _TRANSITIONS


def validate_transition(specimen_id: str, current: str | None, target: str) -> None:
    """Check that moving a specimen from ``current`` to ``target`` is permitted.

    Args:
        specimen_id: Specimen being changed (for error context).
        current: Status on the stored snapshot.
        target: Requested status.

    Raises:
        InvalidStatusTransitionError: If ``target`` is unknown, the specimen is
            in a terminal status, or the transition is not in the table.
    """
    source = effective_status(current)

    if not is_known_status(target):
        raise InvalidStatusTransitionError(
            f"Unknown specimen status '{target}'. Known statuses: {sorted(_TRANSITIONS)}",
            specimen_id=specimen_id,
            from_status=source,
            to_status=target,
        )

    if source == TERMINAL_STATUS:
        raise InvalidStatusTransitionError(
            f"Specimen {specimen_id} is {TERMINAL_STATUS}; no further status changes are allowed",
            specimen_id=specimen_id,
            from_status=source,
            to_status=target,
        )

    if source == target:
        return

    if target not in _TRANSITIONS.get(source, frozenset()):
        raise InvalidStatusTransitionError(
            f"Specimen {specimen_id} cannot move from '{source}' to '{target}'. "
            f"Allowed: {allowed_transitions(source)}",
            specimen_id=specimen_id,
            from_status=source,
            to_status=target,
        )
