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
HTTP endpoints for the edge proxy (`/authorize`) and the IdP callback (`/signin`).

Run with ``uvicorn coreason_forward_auth.app:create_app --factory``.
"""

import re
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import APIRouter, Cookie, Depends, FastAPI, Header, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse, Response

from coreason_forward_auth.config import ForwardAuthConfig
from coreason_forward_auth.exceptions import ForbiddenError, ForwardAuthError
from coreason_forward_auth.manager import ForwardAuthManager
from coreason_forward_auth.models import CookieName, SigninResult, claims_as_headers
from coreason_forward_auth.utils.logger import logger

BEARER_PATTERN = re.compile(r"^Bearer\s+(\S+)$")

router = APIRouter()


def get_manager(request: Request) -> ForwardAuthManager:
    manager: ForwardAuthManager = request.app.state.manager
    return manager


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    match = BEARER_PATTERN.match(authorization.strip())
    if not match:
        logger.debug("Ignoring malformed Authorization header")
        return None
    return match.group(1)


def wants_api_response(accept: str | None) -> bool:
    """API clients ask for JSON and get a 403; browsers get redirected to sign in."""
    if not accept:
        return False
    return "application/json" in accept and "text/html" not in accept


def error_body(error: str, description: str) -> dict[str, str]:
    return {"error": error, "error_description": description}


@router.get("/authorize")
async def authorize(
    manager: Annotated[ForwardAuthManager, Depends(get_manager)],
    x_forwarded_proto: Annotated[str, Header()],
    x_forwarded_host: Annotated[str, Header()],
    x_forwarded_uri: Annotated[str, Header()],
    x_forwarded_method: Annotated[str, Header()],
    accept: Annotated[str | None, Header()] = None,
    authorization: Annotated[str | None, Header()] = None,
    access_token: Annotated[str | None, Cookie(alias=CookieName.ACCESS_TOKEN.value)] = None,
    id_token: Annotated[str | None, Cookie(alias=CookieName.JWT_TOKEN.value)] = None,
) -> Response:
    """Forward-auth decision for the request described by the X-Forwarded-* headers."""
    result = await manager.authorize(
        protocol=x_forwarded_proto,
        host=x_forwarded_host,
        uri=x_forwarded_uri,
        method=x_forwarded_method,
        access_token=access_token or bearer_token(authorization),
        id_token=id_token,
    )

    if result.is_authenticated:
        return Response(status_code=status.HTTP_200_OK, headers=claims_as_headers(result.claims))
    if not result.is_restricted_url:
        return Response(status_code=status.HTTP_200_OK)
    if wants_api_response(accept):
        raise ForbiddenError("Access denied", "authentication required")

    logger.debug(f"Redirecting unauthenticated {x_forwarded_method} {x_forwarded_host}{x_forwarded_uri} to sign in")
    response = RedirectResponse(result.redirect_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
    response.set_cookie(
        CookieName.AUTH_NONCE.value,
        result.nonce.value,
        domain=result.cookie_domain,
        path="/",
        secure=True,
        httponly=True,
    )
    return response


@router.get("/signin")
async def signin(
    manager: Annotated[ForwardAuthManager, Depends(get_manager)],
    code: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
    state: str | None = None,
    x_forwarded_host: Annotated[str | None, Header()] = None,
    nonce_cookie: Annotated[str | None, Cookie(alias=CookieName.AUTH_NONCE.value)] = None,
) -> Response:
    """OAuth2 callback: exchanges the code, sets the session cookies and returns to the origin."""
    result = await manager.signin(code, error, error_description, state, x_forwarded_host, nonce_cookie)
    return signin_response(result)


def signin_response(result: SigninResult) -> Response:
    response = RedirectResponse(result.redirect_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
    for cookie in result.cookies:
        response.set_cookie(
            cookie.name,
            cookie.value,
            max_age=cookie.max_age,
            expires=cookie.expires,
            path=cookie.path,
            domain=cookie.domain,
            secure=cookie.secure,
            httponly=cookie.http_only,
        )
    return response


async def handle_forward_auth_error(request: Request, exc: ForwardAuthError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.url.path} failed: {exc}")
    else:
        logger.warning(f"{request.url.path} rejected ({exc.status_code}): {exc}")
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.error, exc.description))


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    missing = ", ".join(".".join(str(part) for part in err["loc"]) for err in exc.errors())
    logger.warning(f"{request.url.path} invalid request: {missing}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body("invalid_request", f"missing or invalid field(s): {missing}"),
    )


async def catch_unexpected_errors(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    """
    Renders errors no handler claimed as a generic 500.

    Runs as a middleware so the error is logged once here and not re-raised to the server.
    """
    try:
        return await call_next(request)
    except Exception as exc:
        logger.opt(exception=exc).error(f"Unhandled error on {request.url.path}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body("server_error", "internal server error"),
        )


def create_app(manager: ForwardAuthManager | None = None) -> FastAPI:
    """
    Builds the FastAPI application.

    Args:
        manager: A prepared manager (optional). Defaults to one built from `ForwardAuthConfig()`
            when the application starts.

    Returns:
        FastAPI: The application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if getattr(app.state, "manager", None) is None:
            app.state.manager = ForwardAuthManager(ForwardAuthConfig())  # type: ignore[call-arg]
        async with app.state.manager:
            yield

    app = FastAPI(title="coreason-forward-auth", lifespan=lifespan)
    if manager is not None:
        app.state.manager = manager

    app.include_router(router)
    app.add_exception_handler(ForwardAuthError, handle_forward_auth_error)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, handle_validation_error)  # type: ignore[arg-type]
    app.middleware("http")(catch_unexpected_errors)
    return app
