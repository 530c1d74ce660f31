"""Runtime configuration for the WhatsApp messaging core."""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache


@dataclasses.dataclass(frozen=True)
class MessagingSettings:
    """Environment-driven settings shared by the webhook, dispatcher and jobs."""

    meta_app_secret: str | None
    meta_graph_base_url: str = "https://graph.facebook.com"
    meta_graph_api_version: str = "v19.0"
    send_timeout_seconds: float = 15.0
    openrouter_api_key: str | None = None
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    default_ai_model: str = "openai/gpt-4o-mini"
    ai_timeout_seconds: float = 20.0
    clinic_timezone: str = "America/Sao_Paulo"
    context_window: int = 10
    ai_history_turns: int = 8
    max_upcoming_appointments: int = 3
    internal_service_key: str | None = None
    message_retention_days: int = 730

    @property
    def graph_messages_url_template(self) -> str:
        base = self.meta_graph_base_url.rstrip("/")
        return f"{base}/{self.meta_graph_api_version}/{{phone_number_id}}/messages"


def _optional(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


@lru_cache(maxsize=1)
def get_settings() -> MessagingSettings:
    """Load settings from the environment."""

    return MessagingSettings(
        meta_app_secret=_optional("META_APP_SECRET"),
        meta_graph_base_url=os.getenv(
            "META_GRAPH_BASE_URL", "https://graph.facebook.com"
        ),
        meta_graph_api_version=os.getenv("META_GRAPH_API_VERSION", "v19.0"),
        send_timeout_seconds=float(os.getenv("WHATSAPP_SEND_TIMEOUT_SECONDS", "15")),
        openrouter_api_key=_optional("OPENROUTER_API_KEY"),
        openrouter_base_url=os.getenv(
            "OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1"
        ),
        default_ai_model=os.getenv("WA_DEFAULT_AI_MODEL", "openai/gpt-4o-mini"),
        ai_timeout_seconds=float(os.getenv("AI_TIMEOUT_SECONDS", "20")),
        clinic_timezone=os.getenv("CLINIC_TIMEZONE", "America/Sao_Paulo"),
        context_window=int(os.getenv("WA_CONTEXT_WINDOW", "10")),
        ai_history_turns=int(os.getenv("WA_AI_HISTORY_TURNS", "8")),
        max_upcoming_appointments=int(os.getenv("WA_MAX_UPCOMING", "3")),
        internal_service_key=_optional("INTERNAL_SERVICE_KEY"),
        message_retention_days=int(os.getenv("MESSAGE_RETENTION_DAYS", "730")),
    )


def reset_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_settings.cache_clear()


__all__ = ["MessagingSettings", "get_settings", "reset_settings_cache"]
