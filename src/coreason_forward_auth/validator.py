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
TokenVerifier component for validating JWT signatures and claims.
"""

import hashlib
import hmac
from typing import Any, cast

from authlib.jose import JsonWebToken
from authlib.jose.errors import (
    BadSignatureError,
    ExpiredTokenError,
    InvalidClaimError,
    JoseError,
    MissingClaimError,
)
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import SecretStr

from coreason_forward_auth.exceptions import (
    ForwardAuthError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidTokenError,
    SignatureVerificationError,
    TokenExpiredError,
)
from coreason_forward_auth.models import VerifiedToken
from coreason_forward_auth.oidc_provider import OIDCProvider
from coreason_forward_auth.utils.logger import logger

tracer = trace.get_tracer(__name__)


def translate_error(e: Exception) -> InvalidTokenError:
    """
    Maps an authlib (or key retrieval) failure onto the package's token errors.

    Authlib raises ValueError when no key in the set matches the token's kid.
    """
    if isinstance(e, ExpiredTokenError):
        return TokenExpiredError(f"Token has expired: {e}")
    if isinstance(e, InvalidClaimError):
        if "aud" in str(e):
            return InvalidAudienceError(f"Invalid audience: {e}")
        if "iss" in str(e):
            return InvalidIssuerError(f"Invalid issuer: {e}")
        return InvalidTokenError(f"Invalid claim: {e}")
    if isinstance(e, MissingClaimError):
        return InvalidTokenError(f"Missing claim: {e}")
    if isinstance(e, BadSignatureError):
        return SignatureVerificationError(f"Invalid signature: {e}")
    if isinstance(e, JoseError):
        return InvalidTokenError(f"Token validation failed: {e}")
    if isinstance(e, ValueError):
        return SignatureVerificationError(f"Invalid signature or key not found: {e}")
    if isinstance(e, ForwardAuthError):
        return InvalidTokenError(f"Signing keys unavailable: {e}")
    return InvalidTokenError(f"Unexpected error during token verification: {e}")


class TokenVerifier:
    """
    Validates JWTs against the IdP's JWKS and the expected audience and issuer.

    The audience differs per token kind (client id for ID tokens, API audience
    for access tokens), so it is passed per call.

    Attributes:
        oidc_provider (OIDCProvider): Source of the signing keys.
        allowed_algorithms (list[str]): Accepted signing algorithms.
        leeway (int): Acceptable clock skew in seconds.
    """

    def __init__(
        self,
        oidc_provider: OIDCProvider,
        pii_salt: SecretStr,
        allowed_algorithms: list[str],
        leeway: int = 0,
    ) -> None:
        self.oidc_provider = oidc_provider
        self.pii_salt = pii_salt
        self.allowed_algorithms = allowed_algorithms
        self.leeway = leeway
        self.jwt = JsonWebToken(self.allowed_algorithms)

    def _anonymize(self, value: str) -> str:
        salt = self.pii_salt.get_secret_value().encode("utf-8")
        return hmac.new(salt, value.encode("utf-8"), hashlib.sha256).hexdigest()

    def _decode(self, token: str, jwks: dict[str, Any], audience: str, issuer: str) -> dict[str, Any]:
        options = {
            "exp": {"essential": True},
            "nbf": {"essential": False},
            "aud": {"essential": True, "value": audience},
            "iss": {"essential": True, "value": issuer},
        }
        claims = cast("Any", self.jwt).decode(token, jwks, claims_options=options)
        claims.validate(leeway=self.leeway)
        return dict(claims)

    async def _decode_with_rotation(self, token: str, audience: str, issuer: str) -> dict[str, Any]:
        jwks = await self.oidc_provider.get_jwks()
        try:
            return self._decode(token, jwks, audience, issuer)
        except (ValueError, BadSignatureError):
            # Unknown kid or bad signature: the IdP may have rotated its keys
            logger.info("Verification failed with cached keys, refreshing JWKS and retrying...")
            trace.get_current_span().add_event("refreshing_jwks")
            jwks = await self.oidc_provider.get_jwks(force_refresh=True)
            return self._decode(token, jwks, audience, issuer)

    async def verify(self, token: str, audience: str, issuer: str) -> VerifiedToken:
        """
        Verifies signature, audience, issuer and expiry of a JWT.

        Emits an OpenTelemetry span `verify_token`.

        Args:
            token: The raw JWT.
            audience: The expected `aud` claim.
            issuer: The expected `iss` claim (e.g. https://example.eu.auth0.com/).

        Returns:
            VerifiedToken: The verified claims.

        Raises:
            TokenExpiredError: If the token has expired.
            InvalidAudienceError: If the audience does not match.
            InvalidIssuerError: If the issuer does not match.
            SignatureVerificationError: If the signature is invalid or no key matches.
            InvalidTokenError: For any other failure, including key set retrieval errors.
        """
        with tracer.start_as_current_span("verify_token") as span:
            span.set_attribute("token.audience", audience)
            try:
                payload = await self._decode_with_rotation(token.strip(), audience, issuer)
            except Exception as e:
                error = translate_error(e)
                if isinstance(e, (JoseError, ValueError)):
                    logger.debug(f"Token rejected: {error}")
                else:
                    logger.opt(exception=e).error(f"Token verification failed: {error}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(error)))
                raise error from e

            user_hash = self._anonymize(str(payload.get("sub", "unknown")))
            logger.debug(f"Token verified for user {user_hash}")
            span.set_attribute("enduser.id", user_hash)
            span.set_status(Status(StatusCode.OK))
            return VerifiedToken(claims=payload)
