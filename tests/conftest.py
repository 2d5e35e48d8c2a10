# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_forward_auth

import socket
import time
from collections.abc import Callable, Generator
from typing import Any
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest
from authlib.jose import JsonWebKey, jwt
from pydantic import SecretStr

from coreason_forward_auth.config import ForwardAuthConfig
from coreason_forward_auth.models import ApplicationPolicy
from coreason_forward_auth.oidc_provider import OIDCProvider
from coreason_forward_auth.validator import TokenVerifier

DOMAIN = "test.auth0.com"
ISSUER = f"https://{DOMAIN}/"
USERINFO_AUDIENCE = f"https://{DOMAIN}/userinfo"

TokenFactory = Callable[..., str]


@pytest.fixture(autouse=True)
def mock_dns_resolution() -> Generator[MagicMock, None, None]:
    """
    Globally patches socket.getaddrinfo to return a safe public IP by default,
    so the SSRF check in ForwardAuthConfig accepts dummy domains (e.g., test.auth0.com).

    Tests verifying SSRF logic patch socket.getaddrinfo again or configure this mock.
    """
    safe_response = [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("8.8.8.8", 443))]

    with patch("socket.getaddrinfo", return_value=safe_response) as mock:
        yield mock


def make_policy(**overrides: Any) -> ApplicationPolicy:
    values: dict[str, Any] = {
        "name": "default",
        "cookie_domain": "example.com",
        "client_id": "default-client",
        "client_secret": SecretStr("default-secret"),
        "redirect_uri": "https://auth.example.com/signin",
        "audience": "https://api.example.com",
        "restricted_methods": frozenset({"GET", "POST", "PUT", "DELETE", "PATCH"}),
        "claims": frozenset({"email", "roles", "name"}),
    }
    values.update(overrides)
    return ApplicationPolicy(**values)


@pytest.fixture
def policy_factory() -> Callable[..., ApplicationPolicy]:
    return make_policy


@pytest.fixture
def whoami_policy() -> ApplicationPolicy:
    return make_policy(
        name="whoami.example.com",
        cookie_domain="whoami.example.com",
        client_id="whoami-client",
        client_secret=SecretStr("whoami-secret"),
        redirect_uri="https://whoami.example.com/signin",
        audience="https://whoami.example.com/api",
        restricted_methods=frozenset({"GET", "POST"}),
    )


@pytest.fixture
def opaque_policy() -> ApplicationPolicy:
    return make_policy(
        name="opaque.example.com",
        cookie_domain="opaque.example.com",
        client_id="opaque-client",
        redirect_uri="https://opaque.example.com/signin",
        audience=USERINFO_AUDIENCE,
    )


@pytest.fixture
def config(whoami_policy: ApplicationPolicy, opaque_policy: ApplicationPolicy) -> ForwardAuthConfig:
    return ForwardAuthConfig(
        domain=DOMAIN,
        http_timeout=5.0,
        default_app=make_policy(),
        apps=(whoami_policy, opaque_policy),
    )


@pytest.fixture(scope="session")
def rsa_key() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True, options={"kid": "test-key"})


@pytest.fixture(scope="session")
def other_rsa_key() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True, options={"kid": "test-key"})


@pytest.fixture
def jwks(rsa_key: Any) -> dict[str, Any]:
    return {"keys": [rsa_key.as_dict(is_private=False)]}


@pytest.fixture
def make_token(rsa_key: Any) -> TokenFactory:
    """Builds signed RS256 tokens; claims default to a valid token for `aud`."""

    def _make(aud: str, key: Any = None, **claims: Any) -> str:
        now = int(time.time())
        payload: dict[str, Any] = {
            "sub": "auth0|123456",
            "aud": aud,
            "iss": ISSUER,
            "iat": now,
            "exp": now + 3600,
        }
        payload.update(claims)
        payload = {k: v for k, v in payload.items() if v is not None}
        signing_key = key or rsa_key
        header = {"alg": "RS256", "kid": "test-key"}
        token: bytes = jwt.encode(header, payload, signing_key)
        return token.decode("utf-8")

    return _make


@pytest.fixture
def mock_oidc_provider(jwks: dict[str, Any]) -> Mock:
    provider = Mock(spec=OIDCProvider)
    provider.get_jwks = AsyncMock(return_value=jwks)
    return provider


@pytest.fixture
def verifier(mock_oidc_provider: Mock) -> TokenVerifier:
    return TokenVerifier(
        oidc_provider=mock_oidc_provider,
        pii_salt=SecretStr("test-salt"),
        allowed_algorithms=["RS256"],
    )
