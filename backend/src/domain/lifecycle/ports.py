"""Ports consumed by the sweep orchestrator.

Architecture: Hexagonal - interfaces live in the domain layer, adapters in
infrastructure. Tests substitute fakes for both.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


@dataclass
class NotificationResult:
    """Outcome of a single notification send.

    Attributes:
        recipient: Address the notification was sent to
        success: Whether the transport accepted the message
        error: Failure reason when success is False
    """
    recipient: str
    success: bool
    error: Optional[str] = None


class NotifierPort(ABC):
    """Delivers export notifications to group members.

    Implementations must isolate failures per call: a failed send is
    reported through NotificationResult and never raised.
    """

    @abstractmethod
    def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        attachment_path: Optional[str] = None,
        attachment_name: Optional[str] = None,
    ) -> NotificationResult:
        """Send one message, optionally with a file attached.

        attachment_name is the file name recipients see; it defaults to
        the base name of attachment_path.
        """
        pass


class Clock(ABC):
    """Source of the current time for expiry decisions."""

    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware UTC time."""
        pass


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)
