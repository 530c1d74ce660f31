"""WhatsApp conversation sessions, inbound routing and outbound dispatch."""

from . import models, schemas

__all__ = ["models", "schemas"]
