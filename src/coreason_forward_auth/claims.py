# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_forward_auth

"""
Flattening of verified token claims into strings for downstream headers.
"""

from collections.abc import Callable, Collection, Mapping
from decimal import Decimal
from enum import StrEnum
from typing import Any


class ClaimKind(StrEnum):
    STRING = "string"
    BOOLEAN = "boolean"
    NUMBER = "number"
    STRING_ARRAY = "string_array"


def claim_kind(value: Any) -> ClaimKind | None:
    """
    Classifies a decoded JSON claim value.

    Returns None for kinds that cannot be exposed (objects, mixed arrays, null).
    """
    match value:
        case bool():
            return ClaimKind.BOOLEAN
        case str():
            return ClaimKind.STRING
        case int() | float():
            return ClaimKind.NUMBER
        case list() | tuple() if all(isinstance(item, str) for item in value):
            return ClaimKind.STRING_ARRAY
        case _:
            return None


def format_number(value: int | float) -> str:
    """Plain decimal notation: integral values without a fraction, never an exponent."""
    if isinstance(value, int):
        return str(value)
    if value.is_integer():
        return str(int(value))
    return format(Decimal(repr(value)), "f")


_FORMATTERS: dict[ClaimKind, Callable[[Any], str]] = {
    ClaimKind.STRING: lambda v: v,
    ClaimKind.BOOLEAN: lambda v: "true" if v else "false",
    ClaimKind.NUMBER: format_number,
    ClaimKind.STRING_ARRAY: ", ".join,
}


def flatten_claim(value: Any) -> str | None:
    kind = claim_kind(value)
    if kind is None:
        return None
    return _FORMATTERS[kind](value)


def select_claims(claims: Mapping[str, Any], whitelist: Collection[str]) -> dict[str, str]:
    """
    Keeps the whitelisted claims and flattens their values.

    Args:
        claims: The verified token claims.
        whitelist: Claim names the application may see.

    Returns:
        dict[str, str]: The flattened claims. Claims of unsupported kinds are dropped.
    """
    selected: dict[str, str] = {}
    for name, value in claims.items():
        if name not in whitelist:
            continue
        flattened = flatten_claim(value)
        if flattened is not None:
            selected[name] = flattened
    return selected
