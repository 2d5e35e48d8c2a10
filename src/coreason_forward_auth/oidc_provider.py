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
OIDC Provider component for fetching and caching the discovery document and JWKS.
"""

import time
from typing import Any

import anyio
import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from coreason_forward_auth.exceptions import ForwardAuthError, OversizedResponseError
from coreason_forward_auth.transport import safe_json_fetch
from coreason_forward_auth.utils.logger import logger


class OIDCConfig(BaseModel):
    """
    The subset of .well-known/openid-configuration used by forward-auth.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    issuer: str = Field(..., description="The OIDC issuer URL.")
    jwks_uri: str = Field(..., description="The URL to the JWKS.")
    authorization_endpoint: str | None = Field(default=None, description="The authorize endpoint URL.")
    token_endpoint: str | None = Field(default=None, description="The token endpoint URL.")


class OIDCProvider:
    """
    Fetches and caches the Identity Provider's configuration and JWKS.

    Attributes:
        discovery_url (str): The OIDC discovery URL.
        cache_ttl (int): The cache time-to-live in seconds.
        refresh_cooldown (float): Minimum seconds between forced JWKS refreshes.
    """

    def __init__(
        self,
        discovery_url: str,
        client: httpx.AsyncClient,
        cache_ttl: int = 3600,
        refresh_cooldown: float = 30.0,
        attempts: int = 3,
    ) -> None:
        """
        Initialize the OIDCProvider.

        Args:
            discovery_url: The OIDC discovery URL (e.g., https://my-tenant.auth0.com/.well-known/openid-configuration).
            client: The async HTTP client to use for requests.
            cache_ttl: Time-to-live for the cache in seconds. Defaults to 3600 (1 hour).
            refresh_cooldown: Minimum time in seconds between forced refreshes. Defaults to 30.0.
            attempts: Fetch attempts before giving up. Defaults to 3.
        """
        self.discovery_url = discovery_url
        self.client = client
        self.cache_ttl = cache_ttl
        self.refresh_cooldown = refresh_cooldown
        self.attempts = attempts
        self._jwks_cache: dict[str, Any] | None = None
        self._oidc_config_cache: OIDCConfig | None = None
        self._last_update: float = 0.0
        self._lock: anyio.Lock | None = None

    async def _fetch_json(self, url: str, attempts: int) -> Any:
        """
        GETs a JSON document, retrying transport errors with exponential backoff (0.1s doubling, max 1.0s).

        Raises:
            ForwardAuthError: If every attempt fails or the response is oversized.
        """
        for attempt in range(attempts):
            try:
                return await safe_json_fetch(self.client, url)
            except OversizedResponseError:
                raise
            except (ForwardAuthError, httpx.HTTPError) as e:
                if attempt == attempts - 1:
                    raise ForwardAuthError(f"Failed to fetch {url}: {e}") from e
                logger.debug(f"Fetching {url} failed (attempt {attempt + 1}/{attempts}): {e}")
                await anyio.sleep(min(0.1 * (2**attempt), 1.0))

        raise ForwardAuthError(f"Failed to fetch {url}")  # pragma: no cover

    async def _refresh(self, force_refresh: bool, attempts: int) -> dict[str, Any]:
        """
        Refreshes discovery document and JWKS. Must be called while holding the lock.
        """
        current_time = time.time()
        age = current_time - self._last_update

        if self._jwks_cache is not None:
            if not force_refresh and age < self.cache_ttl:
                return self._jwks_cache
            if force_refresh and age < self.refresh_cooldown:
                logger.warning("JWKS refresh cooldown active. Returning cached keys despite force_refresh request.")
                return self._jwks_cache

        data = await self._fetch_json(self.discovery_url, attempts)
        try:
            oidc_config = OIDCConfig.model_validate(data)
        except ValidationError as e:
            raise ForwardAuthError(f"Invalid OIDC configuration from {self.discovery_url}: {e}") from e

        jwks = await self._fetch_json(oidc_config.jwks_uri, attempts)
        if not isinstance(jwks, dict) or not isinstance(jwks.get("keys"), list):
            raise ForwardAuthError(f"Invalid JWKS from {oidc_config.jwks_uri}")

        self._jwks_cache = jwks
        self._oidc_config_cache = oidc_config
        self._last_update = current_time
        logger.info(f"Loaded {len(jwks['keys'])} signing key(s) from {oidc_config.jwks_uri}")
        return jwks

    async def get_jwks(self, force_refresh: bool = False, attempts: int | None = None) -> dict[str, Any]:
        """
        Returns the JWKS, using the cache if valid.

        Args:
            force_refresh: If True, bypasses the cache (subject to the refresh cooldown).
            attempts: Fetch attempts on a cache miss. Defaults to the provider's `attempts`.

        Returns:
            dict[str, Any]: The JWKS dictionary.

        Raises:
            ForwardAuthError: If fetching fails.
        """
        if self._lock is None:
            self._lock = anyio.Lock()

        if not force_refresh and self._jwks_cache is not None and (time.time() - self._last_update) < self.cache_ttl:
            return self._jwks_cache

        async with self._lock:
            return await self._refresh(force_refresh, attempts or self.attempts)

    async def get_oidc_config(self, attempts: int | None = None) -> OIDCConfig:
        """
        Returns the discovery document, refreshing it together with the JWKS when expired.

        Args:
            attempts: Fetch attempts on a cache miss. Defaults to the provider's `attempts`.

        Raises:
            ForwardAuthError: If configuration is invalid or fetching fails.
        """
        if self._oidc_config_cache is None or (time.time() - self._last_update) >= self.cache_ttl:
            await self.get_jwks(attempts=attempts)

        if self._oidc_config_cache is None:
            raise ForwardAuthError("Failed to load OIDC configuration")  # pragma: no cover

        return self._oidc_config_cache
