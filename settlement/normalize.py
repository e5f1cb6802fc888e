"""
Identifier normalization shared by the parser and the matching engine.
"""
from __future__ import annotations

import re

_NON_DIGIT = re.compile(r"\D")


def digits_only(value: str | None) -> str:
    if not value:
        return ""
    return _NON_DIGIT.sub("", value)


def normalize_phone(value: str | None) -> str:
    """Reduce a phone number to its national digits.

    ``+7 (902) 397-02-35`` and ``89023970235`` both become ``9023970235``.
    The leading country digit is stripped only for 11-digit numbers.
    """
    digits = digits_only(value)
    if len(digits) == 11 and digits[0] in ("7", "8"):
        return digits[1:]
    return digits


def card_suffix(value: str | None, length: int = 4) -> str:
    """Return the trailing *length* digits of a (masked) card number."""
    digits = digits_only(value)
    if len(digits) < length:
        return ""
    return digits[-length:]
