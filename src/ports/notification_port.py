"""Notification port — abstract interface for push delivery to user devices.

Core modules depend on this protocol, never on a specific messaging provider.
Adapters translate provider failures into PushDeliveryError.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol


class PushFailure(Enum):
    INVALID_TOKEN = "invalid_token"     # unregistered / unknown recipient
    PROVIDER_AUTH = "provider_auth"     # our credentials rejected by the provider
    OTHER = "other"


class PushDeliveryError(Exception):
    """Raised when a push message could not be delivered."""

    def __init__(self, message: str, failure: PushFailure = PushFailure.OTHER) -> None:
        super().__init__(message)
        self.failure = failure


@dataclass
class PushMessage:
    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)
    badge: int | None = None


class NotificationPort(Protocol):
    """Abstract notification interface used by core modules."""

    async def send_push(self, token: str, message: PushMessage) -> None: ...
