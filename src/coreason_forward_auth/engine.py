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
AuthorizationEngine component deciding allow / redirect for forwarded requests.
"""

from urllib.parse import urlencode

from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, Field

from coreason_forward_auth.claims import select_claims
from coreason_forward_auth.config import ForwardAuthConfig
from coreason_forward_auth.models import ApplicationPolicy, OriginUrl
from coreason_forward_auth.policy import PolicyResolver, is_opaque_audience
from coreason_forward_auth.state import Nonce, State
from coreason_forward_auth.utils.logger import logger
from coreason_forward_auth.validator import TokenVerifier

tracer = trace.get_tracer(__name__)


class AuthorizeResult(BaseModel):
    """
    The verdict for one forwarded request.

    `redirect_url` and `nonce` are always computed; the caller decides whether to use them.
    `claims` is filled only when `is_authenticated` is True: a verified ID token with a
    missing or invalid access token yields no claims.
    """

    model_config = ConfigDict(frozen=True)

    is_authenticated: bool = False
    is_restricted_url: bool = True
    redirect_url: str
    nonce: Nonce
    cookie_domain: str
    claims: dict[str, str] = Field(default_factory=dict)


def build_authorize_url(policy: ApplicationPolicy, state: State) -> str:
    """Builds the IdP authorize request carrying the encoded state."""
    params = {
        "audience": policy.audience,
        "scope": policy.scope,
        "response_type": "code",
        "client_id": policy.client_id,
        "redirect_uri": policy.redirect_uri,
        "state": state.encode(),
    }
    base = policy.authorize_url or ""
    separator = "&" if "?" in base else "?"
    return f"{base}{separator}{urlencode(params)}"


class AuthorizationEngine:
    """
    Combines policy resolution, state creation and token verification into a decision.

    Attributes:
        config (ForwardAuthConfig): Global settings (issuer, opaque audience).
        resolver (PolicyResolver): Host to policy lookup.
        verifier (TokenVerifier): JWT verification.
    """

    def __init__(self, config: ForwardAuthConfig, resolver: PolicyResolver, verifier: TokenVerifier) -> None:
        self.config = config
        self.resolver = resolver
        self.verifier = verifier

    async def authorize(
        self,
        protocol: str,
        host: str,
        uri: str,
        method: str,
        access_token: str | None = None,
        id_token: str | None = None,
    ) -> AuthorizeResult:
        """
        Decides whether a forwarded request is authenticated and whether it needs to be.

        Never raises on bad tokens: any verification failure yields `is_authenticated=False`.

        Args:
            protocol: The forwarded protocol (http/https).
            host: The forwarded host.
            uri: The forwarded path and query.
            method: The forwarded HTTP method.
            access_token: The access token (cookie or bearer header), if any.
            id_token: The ID token cookie, if any.

        Returns:
            AuthorizeResult: The verdict, including the redirect into the IdP.
        """
        with tracer.start_as_current_span("authorize") as span:
            policy = self.resolver.resolve(host)
            origin_url = OriginUrl(protocol=protocol, host=host, uri=uri)
            logger.debug(f"Authorize request={origin_url} to app={policy.name}")

            nonce = Nonce.generate()
            state = State.create(origin_url, nonce)
            redirect_url = build_authorize_url(policy, state)

            is_authenticated, claims = await self._verify_tokens(policy, access_token, id_token)
            is_restricted_url = self._is_restricted_url(method, origin_url, policy)

            span.set_attribute("forwardauth.app", policy.name)
            span.set_attribute("forwardauth.authenticated", is_authenticated)
            span.set_attribute("forwardauth.restricted", is_restricted_url)

            return AuthorizeResult(
                is_authenticated=is_authenticated,
                is_restricted_url=is_restricted_url,
                redirect_url=redirect_url,
                nonce=nonce,
                cookie_domain=policy.cookie_domain,
                claims=claims if is_authenticated else {},
            )

    async def _verify_tokens(
        self, policy: ApplicationPolicy, access_token: str | None, id_token: str | None
    ) -> tuple[bool, dict[str, str]]:
        try:
            if not id_token:
                return False, {}
            verified = await self.verifier.verify(id_token, policy.client_id, self._issuer)
            claims = select_claims(verified.claims, policy.claims)
            return await self._verify_access_token(policy, access_token), claims
        except Exception as e:
            logger.warning(f"VerifyTokensFailed {e}")
            return False, {}

    async def _verify_access_token(self, policy: ApplicationPolicy, access_token: str | None) -> bool:
        if not access_token:
            return False
        if is_opaque_audience(policy, self.config.userinfo_audience):
            logger.debug("Skip verification of opaque access token.")
            return True
        await self.verifier.verify(access_token, policy.audience, self._issuer)
        return True

    @staticmethod
    def _is_restricted_url(method: str, origin_url: OriginUrl, policy: ApplicationPolicy) -> bool:
        return policy.is_restricted_method(method) and not origin_url.starts_with(policy.redirect_uri)

    @property
    def _issuer(self) -> str:
        return self.config.issuer or self.config.idp_base_url
