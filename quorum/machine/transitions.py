"""Machine status transitions.

    pending -> running    (start)
    running -> paused     (operator pause)
    paused  -> running    (operator resume)
    running -> completed  (last state acknowledged)
    *       -> failed     (retries exhausted or explicit failure)
    *       -> cancelled  (operator cancel)

Retries keep the machine in ``running``; they are state changes, not
status changes.
"""

from __future__ import annotations

from typing import Optional

from ..errors import InvalidTransition
from ..persistence import MachineStatus

VALID_TRANSITIONS: dict[str, frozenset[str]] = {
    MachineStatus.PENDING: frozenset(
        [MachineStatus.RUNNING, MachineStatus.FAILED, MachineStatus.CANCELLED]
    ),
    MachineStatus.RUNNING: frozenset(
        [
            MachineStatus.PAUSED,
            MachineStatus.COMPLETED,
            MachineStatus.FAILED,
            MachineStatus.CANCELLED,
        ]
    ),
    MachineStatus.PAUSED: frozenset(
        [MachineStatus.RUNNING, MachineStatus.FAILED, MachineStatus.CANCELLED]
    ),
    # Terminal states: no outgoing transitions
    MachineStatus.COMPLETED: frozenset(),
    MachineStatus.FAILED: frozenset(),
    MachineStatus.CANCELLED: frozenset(),
}


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, frozenset())


def validate_transition(
    from_status: str, to_status: str, machine_id: Optional[str] = None
) -> None:
    """Raise InvalidTransition if ``from_status -> to_status`` is not allowed."""
    if not can_transition(from_status, to_status):
        raise InvalidTransition(from_status, to_status, machine_id)


def is_terminal(status: str) -> bool:
    return status in MachineStatus.TERMINAL
