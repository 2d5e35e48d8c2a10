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
SigninFlow component completing the IdP callback.
"""

from coreason_forward_auth.config import ForwardAuthConfig
from coreason_forward_auth.exceptions import (
    BadRequestError,
    NonceMismatchError,
    TokenExchangeError,
    UnauthorizedError,
)
from coreason_forward_auth.idp_client import IdPClient
from coreason_forward_auth.models import ApplicationPolicy, CookieName, CookieSpec, SigninResult
from coreason_forward_auth.policy import PolicyResolver, is_opaque_audience
from coreason_forward_auth.state import State
from coreason_forward_auth.utils.logger import logger
from coreason_forward_auth.validator import TokenVerifier


class SigninFlow:
    """
    Handles the OAuth2 callback: error branches, nonce check, code exchange and cookies.
    """

    def __init__(
        self,
        config: ForwardAuthConfig,
        resolver: PolicyResolver,
        verifier: TokenVerifier,
        idp_client: IdPClient,
    ) -> None:
        self.config = config
        self.resolver = resolver
        self.verifier = verifier
        self.idp_client = idp_client

    async def signin(
        self,
        code: str | None,
        error: str | None,
        error_description: str | None,
        state: str | None,
        forwarded_host: str | None,
        nonce_cookie: str | None,
    ) -> SigninResult:
        """
        Completes the round trip through the IdP.

        Args:
            code: The authorization code, on success.
            error: The OAuth2 error code reported by the IdP, on failure.
            error_description: The IdP's description of the error.
            state: The encoded state sent with the authorize request.
            forwarded_host: The host the callback was served for.
            nonce_cookie: The value of the AUTH_NONCE cookie.

        Returns:
            SigninResult: The redirect back to the original request and the cookies to set.

        Raises:
            BadRequestError: If neither code nor error is present, or the IdP reported an error.
            UnauthorizedError: If the IdP reported "unauthorized".
            StateDecodeError: If the state cannot be decoded.
            NonceMismatchError: If the state nonce does not match the nonce cookie.
            TokenExchangeError: If the code exchange fails.
            InvalidTokenError: If the issued access token does not verify.
        """
        if not error and not code:
            raise BadRequestError("invalid_request", "missing field: one of 'code' or 'error' must be present")
        if error == "unauthorized":
            raise UnauthorizedError(error, error_description)
        if error or not code:
            raise BadRequestError(error or "invalid_request", error_description)
        return await self._perform_signin(code, state, forwarded_host, nonce_cookie)

    async def _perform_signin(
        self, code: str, state: str | None, forwarded_host: str | None, nonce_cookie: str | None
    ) -> SigninResult:
        policy = self.resolver.resolve(forwarded_host)
        logger.debug(f"SignIn to app={policy.name}")

        decoded_state = State.decode(state)
        if not decoded_state.nonce.matches(nonce_cookie):
            logger.error(f"SignInFailedNonce app={policy.name} cookie_present={bool(nonce_cookie)}")
            raise NonceMismatchError("Nonce mismatch", "the state nonce does not match the nonce cookie")

        tokens = await self.idp_client.exchange_code(
            code,
            policy.client_id,
            policy.client_secret.get_secret_value(),
            policy.redirect_uri,
        )
        if not tokens.id_token:
            raise TokenExchangeError("The IdP did not issue an id_token; is the 'openid' scope requested?")

        if not is_opaque_audience(policy, self.config.userinfo_audience):
            issuer = self.config.issuer or self.config.idp_base_url
            await self.verifier.verify(tokens.access_token, policy.audience, issuer)

        logger.info(f"SignInSuccessful, redirect to originUrl={decoded_state.origin_url}")
        return SigninResult(
            redirect_url=decoded_state.origin_url.to_redirect_target(),
            cookies=self._session_cookies(policy, tokens.access_token, tokens.id_token),
        )

    @staticmethod
    def _session_cookies(policy: ApplicationPolicy, access_token: str, id_token: str) -> tuple[CookieSpec, ...]:
        domain = policy.cookie_domain
        return (
            CookieSpec(name=CookieName.ACCESS_TOKEN, value=access_token, domain=domain),
            CookieSpec(name=CookieName.JWT_TOKEN, value=id_token, domain=domain),
            CookieSpec(name=CookieName.AUTH_NONCE, value="", domain=domain, max_age=0, expires=0),
        )
