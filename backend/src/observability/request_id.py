"""Correlation IDs for request and sweep log lines.

request_id tags log lines of one HTTP request; sweep_id tags every log
line emitted while one sweep-once cycle runs, including its worker
threads (the scheduler copies the context into each worker).
"""

import uuid
from contextvars import ContextVar
from typing import Optional

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
sweep_id_var: ContextVar[Optional[str]] = ContextVar("sweep_id", default=None)


def generate_request_id() -> str:
    """Generate a new unique correlation ID (UUID v4)."""
    return str(uuid.uuid4())


def get_request_id() -> str:
    """Current request ID or "no-request-id" if not set."""
    return request_id_var.get() or "no-request-id"


def set_request_id(request_id: str) -> None:
    request_id_var.set(request_id)


def get_sweep_id() -> Optional[str]:
    """Current sweep ID, None outside of a sweep."""
    return sweep_id_var.get()


def set_sweep_id(sweep_id: Optional[str]):
    """Set the sweep ID; returns the token for ContextVar.reset."""
    return sweep_id_var.set(sweep_id)
