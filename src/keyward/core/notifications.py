"""
Notification collaborator.

The core never sends email itself. Services that must reach the user
(recovery tokens) call an injected Notifier; delivery, retries and
timeouts belong to the implementation behind it.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from ..vault.models import User

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Delivers out-of-band messages to a user."""

    @abstractmethod
    def send_recovery_token(self, user: "User", token: str, expires_at: datetime) -> None:
        """Deliver a raw recovery token. Raise NotificationError on failure."""


class NullNotifier(Notifier):
    """Drops every message. For deployments that hand tokens to the caller."""

    def send_recovery_token(self, user: "User", token: str, expires_at: datetime) -> None:
        logger.debug("Recovery token delivery skipped (no notifier configured)")


class MemoryNotifier(Notifier):
    """Keeps delivered tokens in memory, e.g. for integration tests."""

    def __init__(self):
        self.sent: List[Tuple[str, str, datetime]] = []

    def send_recovery_token(self, user: "User", token: str, expires_at: datetime) -> None:
        self.sent.append((user.email, token, expires_at))
