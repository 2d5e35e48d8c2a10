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
IdPClient component for the OAuth 2.0 authorization code exchange (RFC 6749, section 4.1.3).
"""

from collections.abc import Callable
from urllib.parse import urljoin

import httpx
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from pydantic import ValidationError

from coreason_forward_auth.exceptions import ForwardAuthError, TokenExchangeError
from coreason_forward_auth.models import TokenResponse
from coreason_forward_auth.oidc_provider import OIDCProvider
from coreason_forward_auth.transport import SafeAsyncTransport, safe_json_fetch
from coreason_forward_auth.utils.logger import logger

ClientFactory = Callable[[], httpx.AsyncClient]


class IdPClient:
    """
    Exchanges authorization codes for tokens at the IdP token endpoint.

    Every exchange runs on its own short-lived HTTP client, so no connection
    state is shared between unrelated sign-ins.

    Attributes:
        idp_url (str): The base URL of the Identity Provider.
        timeout (float): Timeout in seconds for the exchange.
    """

    def __init__(
        self,
        oidc_provider: OIDCProvider,
        idp_url: str,
        timeout: float,
        client_factory: ClientFactory | None = None,
        allow_private: bool = False,
    ) -> None:
        """
        Initialize the IdPClient.

        Args:
            oidc_provider: Used to discover the token endpoint.
            idp_url: The base URL of the Identity Provider (e.g., https://my-tenant.auth0.com/).
            timeout: Timeout in seconds for the exchange.
            client_factory: Builds the per-exchange HTTP client. Defaults to a `SafeAsyncTransport` client.
            allow_private: Allow IdP addresses in private ranges (local development only).
        """
        self.oidc_provider = oidc_provider
        self.idp_url = idp_url
        self.timeout = timeout
        self.allow_private = allow_private
        self._client_factory = client_factory or self._default_client

    def _default_client(self) -> httpx.AsyncClient:
        client = httpx.AsyncClient(
            transport=SafeAsyncTransport(allow_private=self.allow_private),
            timeout=self.timeout,
        )
        HTTPXClientInstrumentor().instrument_client(client)
        return client

    async def get_token_endpoint(self) -> str:
        """
        Returns the discovered token endpoint, falling back to the Auth0 path.

        Discovery is attempted once: the code exchange never retries.

        Raises:
            TokenExchangeError: If OIDC discovery fails.
        """
        try:
            config = await self.oidc_provider.get_oidc_config(attempts=1)
        except ForwardAuthError as e:
            raise TokenExchangeError(f"Failed to discover the token endpoint: {e}") from e
        return config.token_endpoint or urljoin(self.idp_url, "oauth/token")

    async def exchange_code(self, code: str, client_id: str, client_secret: str, redirect_uri: str) -> TokenResponse:
        """
        Exchanges an authorization code for tokens.

        Args:
            code: The authorization code received on the callback.
            client_id: The OAuth2 client id of the application.
            client_secret: The OAuth2 client secret of the application.
            redirect_uri: The redirect URI used in the authorize request.

        Returns:
            TokenResponse: The issued tokens.

        Raises:
            TokenExchangeError: On timeouts, transport failures, error statuses or an invalid response.
        """
        url = await self.get_token_endpoint()
        data = {
            "grant_type": "authorization_code",
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "redirect_uri": redirect_uri,
        }

        try:
            async with self._client_factory() as client:
                payload = await safe_json_fetch(client, url, method="POST", data=data)
        except httpx.HTTPStatusError as e:
            logger.error(f"Code exchange rejected by IdP with status {e.response.status_code}")
            raise TokenExchangeError(f"Token endpoint returned status {e.response.status_code}") from e
        except (httpx.HTTPError, ForwardAuthError) as e:
            logger.error(f"Code exchange failed: {e!r}")
            raise TokenExchangeError(f"Failed to exchange authorization code: {e!r}") from e

        try:
            tokens = TokenResponse.model_validate(payload)
        except ValidationError as e:
            logger.error(f"Invalid token response from IdP: {e.error_count()} error(s)")
            raise TokenExchangeError("Invalid token response from IdP") from e

        logger.debug(f"Code exchanged for tokens of type {tokens.token_type}")
        return tokens
