# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_forward_auth

from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, Mock
from urllib.parse import parse_qs

import httpx
import pytest

from coreason_forward_auth.exceptions import ForwardAuthError, TokenExchangeError
from coreason_forward_auth.idp_client import IdPClient
from coreason_forward_auth.oidc_provider import OIDCConfig, OIDCProvider

from conftest import ISSUER

TOKEN_ENDPOINT = f"{ISSUER}oauth/token"

Handler = Callable[[httpx.Request], httpx.Response]


def make_oidc_provider(token_endpoint: str | None = TOKEN_ENDPOINT) -> Mock:
    provider = Mock(spec=OIDCProvider)
    provider.get_oidc_config = AsyncMock(
        return_value=OIDCConfig(
            issuer=ISSUER, jwks_uri=f"{ISSUER}.well-known/jwks.json", token_endpoint=token_endpoint
        )
    )
    return provider


def make_client(handler: Handler, provider: Mock | None = None) -> IdPClient:
    return IdPClient(
        oidc_provider=provider or make_oidc_provider(),
        idp_url=ISSUER,
        timeout=5.0,
        client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


async def exchange(client: IdPClient) -> Any:
    return await client.exchange_code("auth-code", "client-id", "client-secret", "https://app.example.com/signin")


@pytest.mark.asyncio
async def test_exchange_code() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "access_token": "access",
                "id_token": "id",
                "token_type": "Bearer",
                "expires_in": 86400,
                "scope": "openid profile email",
            },
        )

    tokens = await exchange(make_client(handler))

    assert tokens.access_token == "access"
    assert tokens.id_token == "id"
    assert tokens.expires_in == 86400

    request = requests[0]
    assert request.method == "POST"
    assert str(request.url) == TOKEN_ENDPOINT
    assert parse_qs(request.content.decode()) == {
        "grant_type": ["authorization_code"],
        "client_id": ["client-id"],
        "client_secret": ["client-secret"],
        "code": ["auth-code"],
        "redirect_uri": ["https://app.example.com/signin"],
    }


@pytest.mark.asyncio
async def test_token_endpoint_fallback() -> None:
    urls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        urls.append(str(request.url))
        return httpx.Response(200, json={"access_token": "access", "id_token": "id"})

    await exchange(make_client(handler, make_oidc_provider(token_endpoint=None)))

    assert urls == [f"{ISSUER}oauth/token"]


@pytest.mark.asyncio
async def test_exchange_discovers_token_endpoint_without_retries() -> None:
    provider = make_oidc_provider()
    client = make_client(lambda request: httpx.Response(200, json={"access_token": "access"}), provider)

    await exchange(client)

    provider.get_oidc_config.assert_awaited_once_with(attempts=1)


@pytest.mark.asyncio
async def test_discovery_failure() -> None:
    provider = make_oidc_provider()
    provider.get_oidc_config = AsyncMock(side_effect=ForwardAuthError("Failed to fetch"))
    client = make_client(lambda request: httpx.Response(200, json={}), provider)

    with pytest.raises(TokenExchangeError, match="discover the token endpoint"):
        await exchange(client)


@pytest.mark.asyncio
async def test_error_status() -> None:
    client = make_client(lambda request: httpx.Response(403, json={"error": "invalid_grant"}))

    with pytest.raises(TokenExchangeError, match="status 403") as exc:
        await exchange(client)

    assert exc.value.status_code == 502


@pytest.mark.asyncio
async def test_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(TokenExchangeError, match="ReadTimeout"):
        await exchange(make_client(handler))


@pytest.mark.asyncio
async def test_invalid_json() -> None:
    client = make_client(lambda request: httpx.Response(200, content=b"not json"))

    with pytest.raises(TokenExchangeError):
        await exchange(client)


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [{"id_token": "id"}, {"access_token": ""}, ["access_token"]])
async def test_invalid_token_response(payload: Any) -> None:
    client = make_client(lambda request: httpx.Response(200, json=payload))

    with pytest.raises(TokenExchangeError, match="Invalid token response"):
        await exchange(client)


@pytest.mark.asyncio
async def test_each_exchange_uses_a_fresh_client() -> None:
    clients: list[httpx.AsyncClient] = []

    def factory() -> httpx.AsyncClient:
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"access_token": "a"}))
        )
        clients.append(client)
        return client

    idp_client = IdPClient(make_oidc_provider(), ISSUER, 5.0, client_factory=factory)
    await exchange(idp_client)
    await exchange(idp_client)

    assert len(clients) == 2
    assert all(client.is_closed for client in clients)
