"""Retry of database units of work on transient failures.

Every database interaction of the sweep runs as a unit of work: a fresh
session, one callable, commit inside the callable, session closed
afterwards. Connection-level failures are translated to TransientIOError
and the whole unit is retried with exponential backoff via tenacity. A
failed unit leaves nothing behind because its transaction never commits.
"""

import logging
import time
from typing import Callable, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from domain.lifecycle.errors import TransientIOError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 0.5  # seconds
DEFAULT_MAX_DELAY = 5.0  # seconds


def is_transient_db_error(exc: BaseException) -> bool:
    """Whether a SQLAlchemy error is worth retrying.

    Example:
        >>> is_transient_db_error(OperationalError("SELECT 1", {}, Exception("gone")))
        True
    """
    if isinstance(exc, OperationalError):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


class DatabaseRetry:
    """Runs a unit of work against a fresh session, retrying transient failures.

    Args:
        attempts: Total tries, not retries (attempts=3 means try, retry, retry)
        base_delay: First backoff delay in seconds, doubled per retry
        max_delay: Upper bound for a single backoff delay
        sleep: Sleep function (tests pass a no-op)
    """

    def __init__(
        self,
        attempts: int = DEFAULT_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.attempts = attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    def run(self, session_factory: Callable[[], Session], operation: Callable[[Session], T]) -> T:
        """Execute operation(session) with retry.

        Raises:
            TransientIOError: If every attempt hit a transient database error
            SQLAlchemyError: Non-transient database errors, not retried
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            retry=retry_if_exception_type(TransientIOError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        return retrying(self._run_once, session_factory, operation)

    @staticmethod
    def _run_once(session_factory: Callable[[], Session], operation: Callable[[Session], T]) -> T:
        session = session_factory()
        try:
            return operation(session)
        except SQLAlchemyError as e:
            if is_transient_db_error(e):
                raise TransientIOError(f"Transient database error: {e}") from e
            raise
        finally:
            # close() rolls back anything left uncommitted
            session.close()
