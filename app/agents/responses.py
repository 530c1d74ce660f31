"""Completion parameter defaults for the decision engine."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any


class ResponseParameterStore:
    """Maintain completion parameter defaults keyed by model family.

    Model identifiers are OpenRouter style (``vendor/model``); the vendor
    prefix selects the defaults.
    """

    _BASE: Mapping[str, Any] = {
        "temperature": 0.2,
        "max_tokens": 512,
        "response_format": {"type": "json_object"},
    }
    _DEFAULTS: Mapping[str, dict[str, Any]] = {
        "openai": {},
        "anthropic": {"temperature": 0.1},
        "google": {"temperature": 0.2},
        "meta-llama": {"temperature": 0.1, "max_tokens": 384},
    }

    def __init__(self, overrides: Mapping[str, Mapping[str, Any]] | None = None):
        self._defaults: dict[str, dict[str, Any]] = {
            vendor: dict(params) for vendor, params in self._DEFAULTS.items()
        }
        if overrides:
            for vendor, params in overrides.items():
                merged = self._defaults.setdefault(vendor.lower(), {})
                merged.update(params)

    def defaults_for_model(self, model: str) -> dict[str, Any]:
        """Return parameters for ``model`` layered over the shared base."""

        vendor = model.split("/", 1)[0].lower() if "/" in model else model.lower()
        params = dict(self._BASE)
        params.update(self._defaults.get(vendor, {}))
        return params
