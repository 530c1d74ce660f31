"""Brazilian phone number canonicalisation."""

from __future__ import annotations

import re

COUNTRY_CODE = "55"
MATCH_SUFFIX_LENGTH = 9

_NON_DIGITS = re.compile(r"\D")


class PhoneNormalizationError(ValueError):
    """Raised when a phone string cannot be turned into a dialable number."""


def digits_only(raw: str | None) -> str:
    return _NON_DIGITS.sub("", raw or "")


def normalize_phone(raw: str | None) -> str:
    """Return ``raw`` as country code plus subscriber digits, e.g. ``5511991234567``.

    National numbers with 10 or 11 digits get the ``55`` prefix; numbers that
    already carry it with 12 or more digits are returned unchanged.  Any other
    length raises :class:`PhoneNormalizationError`.
    """

    digits = digits_only(raw)
    if digits.startswith(COUNTRY_CODE) and len(digits) >= 12:
        return digits
    if len(digits) in (10, 11):
        return COUNTRY_CODE + digits
    raise PhoneNormalizationError(f"Cannot normalise phone with {len(digits)} digits")


def try_normalize_phone(raw: str | None) -> str | None:
    try:
        return normalize_phone(raw)
    except PhoneNormalizationError:
        return None


def match_suffix(raw: str | None) -> str:
    """Trailing digits used to fuzzy-match a sender against stored patient phones."""

    return digits_only(raw)[-MATCH_SUFFIX_LENGTH:]


__all__ = [
    "COUNTRY_CODE",
    "MATCH_SUFFIX_LENGTH",
    "PhoneNormalizationError",
    "digits_only",
    "match_suffix",
    "normalize_phone",
    "try_normalize_phone",
]
