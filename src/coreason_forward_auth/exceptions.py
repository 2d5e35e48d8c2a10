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
Custom exceptions for the coreason-forward-auth package.

Errors that surface over HTTP carry a status code, an OAuth2-style error code
and a human readable description.
"""


class ForwardAuthError(Exception):
    """Base exception for all coreason-forward-auth errors."""

    status_code: int = 500
    error: str = "server_error"

    def __init__(self, message: str = "", description: str | None = None) -> None:
        super().__init__(message)
        self.description = description if description is not None else message


class BadRequestError(ForwardAuthError):
    """Raised for malformed callback parameters or a non-fatal IdP error."""

    status_code = 400
    error = "invalid_request"

    def __init__(self, error: str, description: str | None = None) -> None:
        super().__init__(f"{error}: {description}" if description else error, description or error)
        self.error = error


class StateDecodeError(BadRequestError):
    """Raised when an encoded state value cannot be decoded."""

    def __init__(self, description: str) -> None:
        super().__init__("invalid_state", description)


class UnauthorizedError(ForwardAuthError):
    """Raised when the IdP reports the user as unauthorized."""

    status_code = 403

    def __init__(self, error: str = "unauthorized", description: str | None = None) -> None:
        description = description or "unknown"
        super().__init__(f"{error}: {description}", description)
        self.error = error


class ForbiddenError(ForwardAuthError):
    """Raised when a restricted resource is requested without valid credentials."""

    status_code = 403
    error = "access_denied"


class NonceMismatchError(ForwardAuthError):
    """Raised when the nonce in the state does not match the nonce cookie (CSRF)."""

    status_code = 403
    error = "invalid_nonce"


class InvalidTokenError(ForwardAuthError):
    """
    Raised when the token is invalid (expired, bad signature, wrong audience, etc.).
    """

    status_code = 401
    error = "invalid_token"


class TokenExpiredError(InvalidTokenError):
    """Raised when the provided token has expired."""


class InvalidAudienceError(InvalidTokenError):
    """Raised when the token's audience does not match the expected value."""


class InvalidIssuerError(InvalidTokenError):
    """Raised when the token's issuer does not match the expected value."""


class SignatureVerificationError(InvalidTokenError):
    """Raised when the token's signature cannot be verified."""


class TokenExchangeError(ForwardAuthError):
    """Raised when the authorization code cannot be exchanged for tokens."""

    status_code = 502
    error = "token_exchange_failed"


class OversizedResponseError(ForwardAuthError):
    """Raised when an HTTP response is too large."""
