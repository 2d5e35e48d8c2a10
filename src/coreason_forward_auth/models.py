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
Data models for the coreason-forward-auth package.
"""

from collections.abc import Mapping
from enum import StrEnum
from typing import Any
from urllib.parse import quote_plus

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


class CookieName(StrEnum):
    ACCESS_TOKEN = "ACCESS_TOKEN"
    JWT_TOKEN = "JWT_TOKEN"
    AUTH_NONCE = "AUTH_NONCE"


DEFAULT_RESTRICTED_METHODS = frozenset({"DELETE", "GET", "HEAD", "OPTIONS", "PATCH", "POST", "PUT"})
CLAIM_HEADER_PREFIX = "X-Forwardauth-"


def header_suffix(claim: str) -> str:
    """Claim name as a header name suffix: characters outside [A-Za-z0-9-] become '-'."""
    return "".join(ch if ch.isascii() and (ch.isalnum() or ch == "-") else "-" for ch in claim)


class OriginUrl(BaseModel):
    """
    The request being protected, as reported by the forwarding proxy.

    Two origins are equal when their canonical (lowercase) forms are equal.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    protocol: str
    host: str
    uri: str

    def canonical_string(self) -> str:
        return f"{self.protocol}://{self.host}{self.uri}".lower()

    def starts_with(self, prefix: str) -> bool:
        """Case-insensitive prefix test against the canonical form."""
        return self.canonical_string().startswith(prefix.lower())

    def to_redirect_target(self) -> str:
        """
        Percent-encodes the whole canonical URL, scheme and slashes included.

        Uses form encoding (space becomes '+', only alphanumerics and '*-._' stay
        literal) so the value matches redirect URIs already registered at the IdP.
        """
        return quote_plus(self.canonical_string(), safe="*").replace("~", "%7E")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, OriginUrl):
            return NotImplemented
        return self.canonical_string() == other.canonical_string()

    def __hash__(self) -> int:
        return hash(self.canonical_string())

    def __str__(self) -> str:
        return self.canonical_string()


class ApplicationPolicy(BaseModel):
    """
    Per-host security policy.

    Attributes:
        name (str): The host name this policy applies to (or "default").
        cookie_domain (str): Domain the session cookies are scoped to.
        client_id (str): The OAuth2 client id, also the expected ID token audience.
        client_secret (SecretStr): The OAuth2 client secret.
        redirect_uri (str): The callback URI registered at the IdP. Never restricted.
        audience (str): The expected access token audience.
        scope (str): The scopes requested at the authorize endpoint.
        authorize_url (str | None): The IdP authorize endpoint. Filled from the global config when omitted.
        restricted_methods (frozenset[str]): HTTP methods that require authentication.
        claims (frozenset[str]): Claim names exposed to the downstream application.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    cookie_domain: str
    client_id: str
    client_secret: SecretStr
    redirect_uri: str
    audience: str
    scope: str = "openid profile email"
    authorize_url: str | None = None
    restricted_methods: frozenset[str] = DEFAULT_RESTRICTED_METHODS
    claims: frozenset[str] = frozenset()

    @field_validator("name")
    @classmethod
    def normalize_name(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("Application name must not be empty.")
        return v

    @field_validator("restricted_methods")
    @classmethod
    def normalize_methods(cls, v: frozenset[str]) -> frozenset[str]:
        return frozenset(method.strip().upper() for method in v if method.strip())

    @field_validator("claims")
    @classmethod
    def reject_colliding_claims(cls, v: frozenset[str]) -> frozenset[str]:
        """
        Rejects whitelists where two claims would render to the same (case-insensitive) header.
        """
        seen: dict[str, str] = {}
        for claim in sorted(v):
            key = header_suffix(claim).casefold()
            if key in seen:
                raise ValueError(f"Claims '{seen[key]}' and '{claim}' map to the same header.")
            seen[key] = claim
        return v

    def is_restricted_method(self, method: str) -> bool:
        return method.upper() in self.restricted_methods


class VerifiedToken(BaseModel):
    """A JWT whose signature, audience, issuer and expiry have been checked."""

    model_config = ConfigDict(frozen=True)

    claims: dict[str, Any] = Field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        return self.claims.get(name, default)

    @property
    def subject(self) -> str | None:
        sub = self.claims.get("sub")
        return str(sub) if sub is not None else None


class TokenResponse(BaseModel):
    """
    Response of the IdP token endpoint.

    Attributes:
        access_token (str): The access token issued by the authorization server.
        id_token (str | None): The ID token, if issued.
        refresh_token (str | None): The refresh token, if issued.
        token_type (str): The type of the token (e.g. "Bearer").
        expires_in (int | None): The lifetime in seconds of the access token.
        scope (str | None): The granted scopes.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1)
    id_token: str | None = None
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None
    scope: str | None = None


class CookieSpec(BaseModel):
    """A Set-Cookie directive, independent of the web framework."""

    model_config = ConfigDict(frozen=True)

    name: str
    value: str
    domain: str | None = None
    path: str = "/"
    http_only: bool = True
    secure: bool = True
    max_age: int | None = None
    expires: int | None = None

    def __repr__(self) -> str:
        # Token values stay out of logs
        return f"CookieSpec(name={self.name!r}, domain={self.domain!r}, max_age={self.max_age!r})"


class SigninResult(BaseModel):
    """Outcome of a completed sign-in: where to send the browser and which cookies to set."""

    model_config = ConfigDict(frozen=True)

    redirect_url: str
    cookies: tuple[CookieSpec, ...]

    def cookie(self, name: str) -> CookieSpec | None:
        return next((c for c in self.cookies if c.name == name), None)


def claims_as_headers(claims: Mapping[str, str], prefix: str = CLAIM_HEADER_PREFIX) -> dict[str, str]:
    """
    Renders flattened claims as HTTP headers for the downstream application.

    Characters not allowed in header names are replaced by '-'. Values that are
    not printable ASCII are percent-encoded.
    """
    headers: dict[str, str] = {}
    for name, value in claims.items():
        headers[prefix + header_suffix(name)] = value if value.isascii() and value.isprintable() else quote_plus(value)
    return headers
