"""SweepStatus state machine for the ephemeral group lifecycle.

State flow:
    PENDING → EXPORTING → NOTIFYING → ERASING → PURGED

FAILED is reachable from every non-terminal state once the retry budget is
spent. It is not terminal: the next tick resumes the group at the stage
after its last durable checkpoint (see resume_status).

EXPORTING → PENDING is the one backward edge. It is taken when building
the archive fails, which leaves no durable side effect behind.
"""

from enum import Enum
from typing import Dict, List

from .errors import StateTransitionError


class SweepStatus(str, Enum):
    """Sweep run status enum"""
    PENDING = "PENDING"        # Group expired, nothing done yet
    EXPORTING = "EXPORTING"    # Archive being built
    NOTIFYING = "NOTIFYING"    # Artifact recorded, members being emailed
    ERASING = "ERASING"        # Attachment files being securely erased
    PURGED = "PURGED"          # All rows deleted (terminal)
    FAILED = "FAILED"          # Retry budget exhausted (retried next tick)


ALLOWED_TRANSITIONS: Dict[SweepStatus, List[SweepStatus]] = {
    SweepStatus.PENDING: [SweepStatus.EXPORTING, SweepStatus.FAILED],
    SweepStatus.EXPORTING: [SweepStatus.NOTIFYING, SweepStatus.PENDING, SweepStatus.FAILED],
    SweepStatus.NOTIFYING: [SweepStatus.ERASING, SweepStatus.FAILED],
    SweepStatus.ERASING: [SweepStatus.PURGED, SweepStatus.FAILED],
    SweepStatus.PURGED: [],  # Terminal state
    SweepStatus.FAILED: [
        SweepStatus.EXPORTING,
        SweepStatus.NOTIFYING,
        SweepStatus.ERASING,
    ],
}

TERMINAL_STATES = frozenset({SweepStatus.PURGED})

# Stages that may only run once an export artifact exists
POST_EXPORT_STATES = frozenset({
    SweepStatus.NOTIFYING,
    SweepStatus.ERASING,
    SweepStatus.PURGED,
})


def can_transition(current_status: SweepStatus, new_status: SweepStatus) -> bool:
    """Check if a state transition is allowed without raising exception.

    Example:
        >>> can_transition(SweepStatus.NOTIFYING, SweepStatus.ERASING)
        True
        >>> can_transition(SweepStatus.PURGED, SweepStatus.PENDING)
        False
    """
    return new_status in ALLOWED_TRANSITIONS.get(current_status, [])


def validate_transition(current_status: SweepStatus, new_status: SweepStatus) -> None:
    """Validate that a state transition is allowed.

    Raises:
        StateTransitionError: If transition is not allowed
    """
    if not can_transition(current_status, new_status):
        allowed = ALLOWED_TRANSITIONS.get(current_status, [])
        raise StateTransitionError(
            f"Invalid transition: {current_status.value} -> {new_status.value}. "
            f"Allowed transitions from {current_status.value}: "
            f"{[s.value for s in allowed]}"
        )


def get_allowed_transitions(status: SweepStatus) -> List[SweepStatus]:
    """Get list of allowed transitions from a given status."""
    return ALLOWED_TRANSITIONS.get(status, [])


def resume_status(has_export_artifact: bool, notified: bool) -> SweepStatus:
    """Stage a FAILED run restarts at, derived from its durable checkpoints.

    Args:
        has_export_artifact: Whether an export artifact row exists for the group
        notified: Whether the notification stage already completed

    Returns:
        EXPORTING, NOTIFYING or ERASING
    """
    if not has_export_artifact:
        return SweepStatus.EXPORTING
    if not notified:
        return SweepStatus.NOTIFYING
    return SweepStatus.ERASING
