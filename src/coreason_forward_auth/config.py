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
Configuration for the coreason-forward-auth package.

Application policies are passed as JSON, e.g.::

    COREASON_FORWARDAUTH_DEFAULT_APP='{"name": "default", "cookie_domain": "example.com", ...}'
    COREASON_FORWARDAUTH_APPS='[{"name": "whoami.example.com", ...}]'
"""

import ipaddress
import os
import socket
from urllib.parse import urlparse

from pydantic import Field, SecretStr, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from coreason_forward_auth.models import ApplicationPolicy


class ForwardAuthConfig(BaseSettings):
    """
    Configuration settings for coreason-forward-auth.

    Attributes:
        domain (str): The domain of the Identity Provider (e.g. example.eu.auth0.com).
        http_timeout (float): Timeout in seconds for all IdP network operations.
        unsafe_local_dev (bool): Allows plain HTTP and private IdP addresses. Never in production.
        issuer (str | None): The expected token issuer. Defaults to https://{domain}/.
        authorize_url (str | None): The IdP authorize endpoint. Defaults to https://{domain}/authorize.
        allowed_algorithms (list[str]): JWT signing algorithms accepted by the verifier.
        clock_skew_leeway (int): Acceptable clock skew in seconds for exp/nbf.
        pii_salt (SecretStr): Salt for anonymizing user ids in logs/traces.
        default_app (ApplicationPolicy): Policy for hosts without a dedicated entry.
        apps (tuple[ApplicationPolicy, ...]): Per-host policies.
    """

    model_config = SettingsConfigDict(
        env_prefix="COREASON_FORWARDAUTH_",
        case_sensitive=False,
    )

    domain: str
    http_timeout: float = Field(..., description="Timeout in seconds for all IdP network operations.")
    unsafe_local_dev: bool = False
    issuer: str | None = None
    authorize_url: str | None = None
    allowed_algorithms: list[str] = Field(default_factory=lambda: ["RS256"])
    clock_skew_leeway: int = Field(default=0, ge=0)
    pii_salt: SecretStr = SecretStr("coreason-unsafe-default-salt")
    default_app: ApplicationPolicy
    apps: tuple[ApplicationPolicy, ...] = ()

    @field_validator("domain")
    @classmethod
    def normalize_domain(cls, v: str) -> str:
        """
        Ensures domain is just the hostname (e.g. example.eu.auth0.com).
        Strips scheme and path if present.
        """
        v = v.strip().lower()
        if "://" not in v:
            v = f"https://{v}"

        parsed = urlparse(v)
        return parsed.netloc or v

    @field_validator("domain")
    @classmethod
    def validate_domain_dns(cls, v: str) -> str:
        """
        Rejects IdP domains resolving to private, loopback or reserved addresses (SSRF).
        """
        if os.environ.get("COREASON_DEV_UNSAFE_MODE", "").lower() == "true":
            return v

        host = urlparse(f"https://{v}").hostname or v
        try:
            addr_infos = socket.getaddrinfo(host, None)
        except socket.gaierror as e:
            raise ValueError(f"Unable to resolve domain '{v}': {e}") from e

        for _, _, _, _, sockaddr in addr_infos:
            try:
                ip_obj = ipaddress.ip_address(sockaddr[0])
            except ValueError:
                continue

            if (
                ip_obj.is_private
                or ip_obj.is_loopback
                or ip_obj.is_link_local
                or ip_obj.is_reserved
                or ip_obj.is_multicast
            ):
                raise ValueError(f"Security violation: Domain '{v}' resolves to a prohibited IP ({sockaddr[0]})")

        return v

    @field_validator("issuer", "authorize_url", mode="after")
    @classmethod
    def validate_https(cls, v: str | None, info: ValidationInfo) -> str | None:
        """
        Ensures IdP URLs use HTTPS, unless strictly opted out for local dev.
        """
        if v and v.startswith("http://") and not info.data.get("unsafe_local_dev", False):
            raise ValueError(
                f"HTTPS is required for '{info.field_name}'. Set 'unsafe_local_dev=True' only for local testing."
            )
        return v

    @field_validator("allowed_algorithms")
    @classmethod
    def reject_none_algorithm(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("At least one signing algorithm must be allowed.")
        if any(alg.lower() == "none" for alg in v):
            raise ValueError("The 'none' algorithm is not allowed.")
        return v

    @model_validator(mode="after")
    def apply_defaults(self) -> "ForwardAuthConfig":
        """
        Sets the default issuer and authorize URL, and fills each policy's authorize URL.
        """
        if self.issuer is None:
            self.issuer = self.idp_base_url
        if self.authorize_url is None:
            self.authorize_url = f"{self.idp_base_url}authorize"

        names = [app.name for app in self.apps]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate application names: {', '.join(duplicates)}")

        self.default_app = self._with_authorize_url(self.default_app)
        self.apps = tuple(self._with_authorize_url(app) for app in self.apps)
        return self

    def _with_authorize_url(self, app: ApplicationPolicy) -> ApplicationPolicy:
        if app.authorize_url:
            return app
        return app.model_copy(update={"authorize_url": self.authorize_url})

    @property
    def idp_base_url(self) -> str:
        return f"https://{self.domain}/"

    @property
    def userinfo_audience(self) -> str:
        """The audience marking an access token as opaque (introspected by the IdP, not a local JWT)."""
        return f"{self.idp_base_url}userinfo"
