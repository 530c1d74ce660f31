"""AI decision engine for WhatsApp conversations."""

from . import schemas
from .service import DecisionEngine

__all__ = [
    "DecisionEngine",
    "schemas",
]
