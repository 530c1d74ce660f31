"""Channel adapters and provider transports for outbound/inbound messaging."""

from __future__ import annotations

from .base import (
    ChannelAdapter,
    ChannelConfigurationError,
    DispatchError,
    EnvelopeError,
    ProviderError,
)
from .whatsapp import GraphApiClient, WhatsAppAdapter

__all__ = [
    "ChannelAdapter",
    "ChannelConfigurationError",
    "DispatchError",
    "EnvelopeError",
    "GraphApiClient",
    "ProviderError",
    "WhatsAppAdapter",
]
