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
Nonce and State: the stateless CSRF protection carried through the IdP redirect.

The nonce is sent twice: inside the opaque ``state`` parameter that the IdP
echoes back to the callback, and as the ``AUTH_NONCE`` browser cookie. The
callback accepts the sign-in only when both copies agree.
"""

import base64
import binascii
import hmac
import json
import secrets

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from coreason_forward_auth.exceptions import StateDecodeError
from coreason_forward_auth.models import OriginUrl

NONCE_BYTES = 16


class Nonce(BaseModel):
    """Single-use random CSRF token."""

    model_config = ConfigDict(frozen=True)

    value: str = Field(min_length=1)

    @classmethod
    def generate(cls) -> "Nonce":
        """
        Generates a fresh nonce from the OS CSPRNG.

        Returns:
            Nonce: 32 lowercase hex characters (128 bits).
        """
        return cls(value=secrets.token_hex(NONCE_BYTES))

    def matches(self, candidate: str | None) -> bool:
        """Constant-time comparison against a received value (e.g. the nonce cookie)."""
        if not candidate:
            return False
        return hmac.compare_digest(self.value.encode("utf-8"), candidate.encode("utf-8"))

    def __str__(self) -> str:
        return self.value


class State(BaseModel):
    """
    The origin URL and nonce, serialized into the OAuth2 ``state`` parameter.

    Wire format: unpadded URL-safe base64 of ``{"p": protocol, "h": host, "u": uri, "n": nonce}``.
    """

    model_config = ConfigDict(frozen=True)

    origin_url: OriginUrl
    nonce: Nonce

    @classmethod
    def create(cls, origin_url: OriginUrl, nonce: Nonce) -> "State":
        return cls(origin_url=origin_url, nonce=nonce)

    def encode(self) -> str:
        document = {
            "p": self.origin_url.protocol,
            "h": self.origin_url.host,
            "u": self.origin_url.uri,
            "n": self.nonce.value,
        }
        raw = json.dumps(document, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")

    @classmethod
    def decode(cls, value: str | None) -> "State":
        """
        Decodes a value produced by `encode`.

        Args:
            value: The raw ``state`` query parameter.

        Returns:
            State: The decoded origin URL and nonce.

        Raises:
            StateDecodeError: If the value is missing or malformed in any way.
        """
        if not value or not isinstance(value, str):
            raise StateDecodeError("state parameter is missing")

        try:
            padded = value.encode("ascii") + b"=" * (-len(value) % 4)
            raw = base64.b64decode(padded, altchars=b"-_", validate=True)
        except (UnicodeEncodeError, binascii.Error, ValueError) as e:
            raise StateDecodeError(f"state is not valid base64: {e}") from e

        try:
            document = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StateDecodeError(f"state is not a valid document: {e}") from e

        if not isinstance(document, dict):
            raise StateDecodeError("state is not a valid document")

        try:
            origin_url = OriginUrl(protocol=document["p"], host=document["h"], uri=document["u"])
            return cls(origin_url=origin_url, nonce=Nonce(value=document["n"]))
        except KeyError as e:
            raise StateDecodeError(f"state is missing field {e}") from e
        except ValidationError as e:
            raise StateDecodeError(f"state has invalid fields: {e.error_count()} error(s)") from e
