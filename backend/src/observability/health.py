"""Health check utilities for DropDeck.

Checks the two resources the lifecycle engine cannot work without: the
database and a writable export directory.
"""

import os
import time
from enum import Enum
from typing import Dict, Optional
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .logging_config import get_logger

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    """Health check status enum."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DEGRADED = "degraded"


@dataclass
class ComponentHealth:
    """Health status for a single component."""
    status: HealthStatus
    message: Optional[str] = None
    latency_ms: Optional[float] = None


def check_database_health(db: Session) -> ComponentHealth:
    """Check database connectivity with a trivial query."""
    try:
        start = time.time()
        db.execute(text("SELECT 1"))
        latency_ms = (time.time() - start) * 1000

        return ComponentHealth(
            status=HealthStatus.HEALTHY,
            message="Database connection OK",
            latency_ms=round(latency_ms, 2)
        )
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}", exc_info=True)
        return ComponentHealth(
            status=HealthStatus.UNHEALTHY,
            message=f"Database error: {str(e)}"
        )


def check_export_dir_health(export_dir: str) -> ComponentHealth:
    """Check that archives can be written to the export directory.

    A missing directory is only degraded: the archive builder creates it.
    """
    if not os.path.isdir(export_dir):
        return ComponentHealth(
            status=HealthStatus.DEGRADED,
            message=f"Export directory {export_dir} does not exist yet"
        )
    if not os.access(export_dir, os.W_OK):
        return ComponentHealth(
            status=HealthStatus.UNHEALTHY,
            message=f"Export directory {export_dir} is not writable"
        )
    return ComponentHealth(status=HealthStatus.HEALTHY, message="Export directory OK")


def get_overall_health(components: Dict[str, ComponentHealth]) -> HealthStatus:
    """Determine overall health from component statuses."""
    if all(c.status == HealthStatus.HEALTHY for c in components.values()):
        return HealthStatus.HEALTHY

    if any(c.status == HealthStatus.UNHEALTHY for c in components.values()):
        return HealthStatus.UNHEALTHY

    return HealthStatus.DEGRADED
