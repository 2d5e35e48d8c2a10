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
Forward-auth decision engine: decides, for requests forwarded by an edge proxy, whether to
allow them or send the browser through an OAuth2/OIDC sign-in, and completes that sign-in.
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .config import ForwardAuthConfig
from .engine import AuthorizationEngine, AuthorizeResult
from .exceptions import (
    BadRequestError,
    ForwardAuthError,
    InvalidTokenError,
    NonceMismatchError,
    StateDecodeError,
    UnauthorizedError,
)
from .manager import ForwardAuthManager
from .models import ApplicationPolicy, OriginUrl, SigninResult, VerifiedToken
from .policy import PolicyResolver
from .signin import SigninFlow
from .state import Nonce, State
from .validator import TokenVerifier

__all__ = [
    "ApplicationPolicy",
    "AuthorizationEngine",
    "AuthorizeResult",
    "BadRequestError",
    "ForwardAuthConfig",
    "ForwardAuthError",
    "ForwardAuthManager",
    "InvalidTokenError",
    "Nonce",
    "NonceMismatchError",
    "OriginUrl",
    "PolicyResolver",
    "SigninFlow",
    "SigninResult",
    "State",
    "StateDecodeError",
    "TokenVerifier",
    "UnauthorizedError",
    "VerifiedToken",
]
