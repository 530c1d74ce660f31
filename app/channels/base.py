"""Base abstractions for chat channel adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from ..conversations.models import ChannelChange


class DispatchError(RuntimeError):
    """Outbound send failure carrying the HTTP status that best describes it."""

    status_code = 500

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class ChannelConfigurationError(DispatchError):
    """The clinic's channel is disabled or incompletely configured."""

    status_code = 422


class ProviderError(DispatchError):
    """The messaging provider rejected the request or could not be reached."""

    status_code = 502


class EnvelopeError(ValueError):
    """Raised when an inbound provider payload does not match the envelope shape."""


class ChannelAdapter(ABC):
    """Abstract base class encapsulating channel-specific behaviour."""

    #: Lowercase channel identifier used in routes, logs and the notification log.
    channel_name: str

    @abstractmethod
    def parse_incoming(self, payload: Mapping[str, Any]) -> list[ChannelChange]:
        """Convert a webhook payload into validated channel changes."""

    def verify_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        config: Mapping[str, Any],
    ) -> bool:
        """Validate authenticity of the webhook payload.

        Adapters can override this to implement signature checks. The default
        implementation returns ``True``.
        """

        return True

    @abstractmethod
    def build_outgoing_payload(
        self, to: str, kind: str, payload: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Prepare an outbound payload for the channel API."""
