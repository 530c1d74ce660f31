"""Process-wide outbound clients shared by routers and command-line tools."""

from __future__ import annotations

from functools import lru_cache

from ..agents.providers import CompletionClient, build_completion_client
from ..channels.whatsapp import GraphApiClient
from .settings import get_settings


@lru_cache(maxsize=1)
def get_graph_client() -> GraphApiClient:
    settings = get_settings()
    return GraphApiClient(
        settings.graph_messages_url_template,
        timeout=settings.send_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_completion_client() -> CompletionClient:
    return build_completion_client(get_settings())


def reset_clients() -> None:
    get_graph_client.cache_clear()
    get_completion_client.cache_clear()


__all__ = ["get_completion_client", "get_graph_client", "reset_clients"]
