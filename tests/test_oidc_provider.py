# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_forward_auth

import asyncio
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from coreason_forward_auth.exceptions import ForwardAuthError, OversizedResponseError
from coreason_forward_auth.oidc_provider import OIDCProvider

from conftest import ISSUER

DISCOVERY_URL = f"{ISSUER}.well-known/openid-configuration"
JWKS_URL = f"{ISSUER}.well-known/jwks.json"

DISCOVERY = {
    "issuer": ISSUER,
    "jwks_uri": JWKS_URL,
    "authorization_endpoint": f"{ISSUER}authorize",
    "token_endpoint": f"{ISSUER}oauth/token",
}

Handler = Callable[[httpx.Request], httpx.Response]


class IdPStub:
    """Serves discovery and JWKS documents and counts requests per path."""

    def __init__(self, jwks: dict[str, Any], discovery: Any = DISCOVERY) -> None:
        self.jwks: Any = jwks
        self.discovery = discovery
        self.calls: dict[str, int] = {}
        self.failing = 0
        self.failure_status = 503

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls[request.url.path] = self.calls.get(request.url.path, 0) + 1
        if self.failing:
            self.failing -= 1
            return httpx.Response(self.failure_status)
        if request.url.path.endswith("openid-configuration"):
            return httpx.Response(200, json=self.discovery)
        if request.url.path.endswith("jwks.json"):
            return httpx.Response(200, json=self.jwks)
        return httpx.Response(404)

    @property
    def discovery_calls(self) -> int:
        return self.calls.get("/.well-known/openid-configuration", 0)

    @property
    def jwks_calls(self) -> int:
        return self.calls.get("/.well-known/jwks.json", 0)


@pytest.fixture
def idp(jwks: dict[str, Any]) -> IdPStub:
    return IdPStub(jwks)


def make_provider(handler: Handler, **kwargs: Any) -> OIDCProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OIDCProvider(DISCOVERY_URL, client, **kwargs)


@pytest.mark.asyncio
async def test_get_jwks_fetches_and_caches(idp: IdPStub, jwks: dict[str, Any]) -> None:
    provider = make_provider(idp)

    assert await provider.get_jwks() == jwks
    assert await provider.get_jwks() == jwks

    assert idp.discovery_calls == 1
    assert idp.jwks_calls == 1


@pytest.mark.asyncio
async def test_cache_expiry(idp: IdPStub) -> None:
    provider = make_provider(idp, cache_ttl=0)

    await provider.get_jwks()
    await provider.get_jwks()

    assert idp.jwks_calls == 2


@pytest.mark.asyncio
async def test_force_refresh_respects_cooldown(idp: IdPStub) -> None:
    provider = make_provider(idp, refresh_cooldown=30.0)

    await provider.get_jwks()
    await provider.get_jwks(force_refresh=True)

    assert idp.jwks_calls == 1


@pytest.mark.asyncio
async def test_force_refresh_after_cooldown(idp: IdPStub) -> None:
    provider = make_provider(idp, refresh_cooldown=0.0)

    await provider.get_jwks()
    idp.jwks = {"keys": []}
    refreshed = await provider.get_jwks(force_refresh=True)

    assert refreshed == {"keys": []}
    assert idp.jwks_calls == 2


@pytest.mark.asyncio
async def test_concurrent_requests_fetch_once(idp: IdPStub) -> None:
    provider = make_provider(idp)

    results = await asyncio.gather(*(provider.get_jwks() for _ in range(10)))

    assert all(result == results[0] for result in results)
    assert idp.discovery_calls == 1
    assert idp.jwks_calls == 1


@pytest.mark.asyncio
async def test_get_oidc_config(idp: IdPStub) -> None:
    provider = make_provider(idp)

    config = await provider.get_oidc_config()

    assert config.issuer == ISSUER
    assert config.jwks_uri == JWKS_URL
    assert config.token_endpoint == f"{ISSUER}oauth/token"
    assert idp.jwks_calls == 1


@pytest.mark.asyncio
async def test_transient_failure_is_retried(idp: IdPStub, jwks: dict[str, Any]) -> None:
    idp.failing = 1
    provider = make_provider(idp)

    assert await provider.get_jwks() == jwks
    assert idp.discovery_calls == 2


@pytest.mark.asyncio
async def test_persistent_failure_raises(idp: IdPStub) -> None:
    idp.failing = 3
    idp.failure_status = 500
    provider = make_provider(idp, attempts=3)

    with pytest.raises(ForwardAuthError, match="Failed to fetch"):
        await provider.get_jwks()

    assert idp.discovery_calls == 3


@pytest.mark.asyncio
async def test_transport_error_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = make_provider(handler, attempts=2)

    with pytest.raises(ForwardAuthError, match="Failed to fetch"):
        await provider.get_jwks()


@pytest.mark.asyncio
async def test_invalid_discovery_document(jwks: dict[str, Any]) -> None:
    provider = make_provider(IdPStub(jwks, discovery={"issuer": ISSUER}))

    with pytest.raises(ForwardAuthError, match="Invalid OIDC configuration"):
        await provider.get_jwks()


@pytest.mark.asyncio
@pytest.mark.parametrize("bad_jwks", [{"not_keys": []}, {"keys": "nope"}, ["a", "list"]])
async def test_invalid_jwks(bad_jwks: Any) -> None:
    provider = make_provider(IdPStub(bad_jwks))

    with pytest.raises(ForwardAuthError, match="Invalid JWKS"):
        await provider.get_jwks()


@pytest.mark.asyncio
async def test_oversized_response_not_retried() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(200, content=b"x" * 2_000_000)

    provider = make_provider(handler)

    with pytest.raises(OversizedResponseError):
        await provider.get_jwks()

    assert calls == 1


@pytest.mark.asyncio
async def test_single_attempt_discovery_does_not_retry(idp: IdPStub) -> None:
    idp.failing = 1
    provider = make_provider(idp, attempts=3)

    with pytest.raises(ForwardAuthError, match="Failed to fetch"):
        await provider.get_oidc_config(attempts=1)

    assert idp.discovery_calls == 1

    config = await provider.get_oidc_config()
    assert config.token_endpoint == f"{ISSUER}oauth/token"
