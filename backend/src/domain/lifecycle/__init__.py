"""Lifecycle domain module - sweep state machine, error taxonomy, ports"""

from .sweep_status import (
    SweepStatus,
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    POST_EXPORT_STATES,
    can_transition,
    validate_transition,
    get_allowed_transitions,
    resume_status,
)
from .errors import (
    LifecycleError,
    ConfigError,
    CryptoError,
    ArchiveError,
    SecureDeleteError,
    TransientIOError,
    StateTransitionError,
)
from .ports import NotificationResult, NotifierPort, Clock, SystemClock

__all__ = [
    "SweepStatus",
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATES",
    "POST_EXPORT_STATES",
    "StateTransitionError",
    "can_transition",
    "validate_transition",
    "get_allowed_transitions",
    "resume_status",
    "LifecycleError",
    "ConfigError",
    "CryptoError",
    "ArchiveError",
    "SecureDeleteError",
    "TransientIOError",
    "NotificationResult",
    "NotifierPort",
    "Clock",
    "SystemClock",
]
