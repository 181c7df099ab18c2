"""Observability module for DropDeck.

Provides structured logging, sweep correlation IDs, metrics and health checks.
"""

from .logging_config import configure_logging, get_logger
from .metrics import (
    sweeps_total,
    sweep_duration_seconds,
    group_pipelines_total,
    groups_in_sweep,
    files_erased_total,
    notifications_total,
    export_archive_bytes,
)
from .request_id import (
    request_id_var,
    sweep_id_var,
    get_request_id,
    set_request_id,
    get_sweep_id,
    set_sweep_id,
    generate_request_id,
)
from .health import HealthStatus, ComponentHealth

__all__ = [
    # Logging
    "configure_logging",
    "get_logger",
    # Metrics
    "sweeps_total",
    "sweep_duration_seconds",
    "group_pipelines_total",
    "groups_in_sweep",
    "files_erased_total",
    "notifications_total",
    "export_archive_bytes",
    # Correlation IDs
    "request_id_var",
    "sweep_id_var",
    "get_request_id",
    "set_request_id",
    "get_sweep_id",
    "set_sweep_id",
    "generate_request_id",
    # Health
    "HealthStatus",
    "ComponentHealth",
]
