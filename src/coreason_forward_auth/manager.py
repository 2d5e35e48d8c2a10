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
ForwardAuthManager component wiring configuration, IdP access and the decision components.
"""

from typing import Any
from urllib.parse import urljoin

import httpx
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from coreason_forward_auth.config import ForwardAuthConfig
from coreason_forward_auth.engine import AuthorizationEngine, AuthorizeResult
from coreason_forward_auth.idp_client import IdPClient
from coreason_forward_auth.models import SigninResult
from coreason_forward_auth.oidc_provider import OIDCProvider
from coreason_forward_auth.policy import PolicyResolver
from coreason_forward_auth.signin import SigninFlow
from coreason_forward_auth.transport import SafeAsyncTransport
from coreason_forward_auth.utils.logger import logger
from coreason_forward_auth.validator import TokenVerifier


class ForwardAuthManager:
    """
    Async facade over AuthorizationEngine and SigninFlow.
    Handles the shared JWKS client via async context manager.
    """

    def __init__(
        self,
        config: ForwardAuthConfig,
        client: httpx.AsyncClient | None = None,
        idp_client: IdPClient | None = None,
    ) -> None:
        """
        Initialize the ForwardAuthManager.

        Args:
            config: The configuration object.
            client: External async client for discovery/JWKS (optional). If not provided,
                a `SafeAsyncTransport` client is created and closed on exit.
            idp_client: External IdP client (optional), mainly for tests.
        """
        self.config = config
        self._internal_client = client is None

        if client:
            self._client = client
        else:
            transport = SafeAsyncTransport(allow_private=config.unsafe_local_dev)
            self._client = httpx.AsyncClient(transport=transport, timeout=config.http_timeout)
            HTTPXClientInstrumentor().instrument_client(self._client)

        discovery_url = urljoin(config.idp_base_url, ".well-known/openid-configuration")
        self.oidc_provider = OIDCProvider(discovery_url, self._client)

        self.resolver = PolicyResolver.from_config(config)
        self.verifier = TokenVerifier(
            oidc_provider=self.oidc_provider,
            pii_salt=config.pii_salt,
            allowed_algorithms=config.allowed_algorithms,
            leeway=config.clock_skew_leeway,
        )
        self.idp_client = idp_client or IdPClient(
            oidc_provider=self.oidc_provider,
            idp_url=config.idp_base_url,
            timeout=config.http_timeout,
            allow_private=config.unsafe_local_dev,
        )
        self.engine = AuthorizationEngine(config, self.resolver, self.verifier)
        self.signin_flow = SigninFlow(config, self.resolver, self.verifier, self.idp_client)

        logger.info(
            f"Forward auth for IdP {config.domain}: default app={config.default_app.name}, "
            f"{len(self.resolver)} dedicated app(s)"
        )

    async def __aenter__(self) -> "ForwardAuthManager":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._internal_client:
            await self._client.aclose()

    async def authorize(
        self,
        protocol: str,
        host: str,
        uri: str,
        method: str,
        access_token: str | None = None,
        id_token: str | None = None,
    ) -> AuthorizeResult:
        """Delegates to `AuthorizationEngine.authorize`."""
        return await self.engine.authorize(protocol, host, uri, method, access_token, id_token)

    async def signin(
        self,
        code: str | None,
        error: str | None,
        error_description: str | None,
        state: str | None,
        forwarded_host: str | None,
        nonce_cookie: str | None,
    ) -> SigninResult:
        """Delegates to `SigninFlow.signin`."""
        return await self.signin_flow.signin(code, error, error_description, state, forwarded_host, nonce_cookie)
