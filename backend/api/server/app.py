from __future__ import annotations

import contextlib
from http import HTTPStatus
from typing import TYPE_CHECKING, cast

import structlog
from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.middleware.authentication import AuthenticationMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from api.auth.backend import BearerTokenBackend
from api.auth.policy import protected_api, public_route, validate_route_auth_policy
from api.server.middleware import SecurityHeadersMiddleware, SlashNormalizationMiddleware
from api.server.settings import ApiServerSettings
from api.views import (
    list_sessions,
    refresh_token,
    request_password_reset,
    reset_password,
    signin,
    signin_with_google,
    signout,
    signup,
    verify_email,
)
from identity.auth.clock import utc_now
from identity.auth.errors import GENERIC_INTERNAL_MESSAGE, AuthError, ErrorKind
from identity.auth.service import AuthService
from identity.auth.settings import AuthSettings, MailSettings
from identity.build_info import APP_VERSION, GIT_COMMIT
from identity.db import Database
from identity.logging import setup_logging

logger = structlog.get_logger()

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from starlette.requests import Request

    from identity.auth.clock import Clock
    from identity.auth.google import ExternalIdentityVerifier
    from identity.auth.mail import Mailer

STATUS_BY_KIND: dict[ErrorKind, HTTPStatus] = {
    ErrorKind.VALIDATION: HTTPStatus.BAD_REQUEST,
    ErrorKind.CONFLICT: HTTPStatus.CONFLICT,
    ErrorKind.UNAUTHORIZED: HTTPStatus.UNAUTHORIZED,
    ErrorKind.FORBIDDEN: HTTPStatus.FORBIDDEN,
    ErrorKind.NOT_FOUND: HTTPStatus.NOT_FOUND,
    ErrorKind.INTERNAL: HTTPStatus.INTERNAL_SERVER_ERROR,
}

_KIND_BY_STATUS: dict[int, ErrorKind] = {status: kind for kind, status in STATUS_BY_KIND.items()}


async def _auth_error_handler(request: Request, exc: Exception) -> Response:
    """Render an AuthError as ``{"error": message, "kind": kind}`` with its mapped status."""
    error = cast("AuthError", exc)
    status = STATUS_BY_KIND[error.kind]
    if error.kind == ErrorKind.INTERNAL:
        logger.error("request failed", path=request.url.path, detail=error.detail)
    else:
        logger.info("request rejected", path=request.url.path, kind=error.kind, reason=error.message)
    return JSONResponse({"error": error.message, "kind": error.kind.value}, status_code=status)


async def _http_error_handler(_request: Request, exc: Exception) -> Response:
    """Render routing and policy errors (404, 405, 401 from protected_api) as JSON."""
    http_exc = cast("HTTPException", exc)
    if http_exc.status_code in {HTTPStatus.NO_CONTENT, HTTPStatus.NOT_MODIFIED}:
        return Response(status_code=http_exc.status_code, headers=http_exc.headers)
    message = "Authentication required" if http_exc.status_code == HTTPStatus.UNAUTHORIZED else http_exc.detail
    kind = _KIND_BY_STATUS.get(http_exc.status_code)
    body = {"error": message} if kind is None else {"error": message, "kind": kind.value}
    return JSONResponse(body, status_code=http_exc.status_code, headers=http_exc.headers)


async def _unexpected_error_handler(request: Request, exc: Exception) -> Response:
    logger.error("unhandled exception", path=request.url.path, exc_info=exc)
    return JSONResponse(
        {"error": GENERIC_INTERNAL_MESSAGE, "kind": ErrorKind.INTERNAL.value},
        status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
    )


async def health(_request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok", "version": APP_VERSION, "commit": GIT_COMMIT})


def create_app(  # noqa: PLR0913
    settings: ApiServerSettings | None = None,
    auth_settings: AuthSettings | None = None,  # required in production (via get_app)
    mail_settings: MailSettings | None = None,
    *,
    mailer: Mailer | None = None,
    identity_verifier: ExternalIdentityVerifier | None = None,
    clock: Clock = utc_now,
) -> Starlette:
    if settings is None:  # pragma: no cover
        settings = ApiServerSettings()
    if auth_settings is None:  # pragma: no cover
        auth_settings = AuthSettings()  # type: ignore[call-arg]
    if mail_settings is None:
        mail_settings = MailSettings()

    routes = [
        Route("/auth/signup", public_route(signup), methods=["POST"], name="signup"),
        Route("/auth/signin", public_route(signin), methods=["POST"], name="signin"),
        Route(
            "/auth/signin-with-google",
            public_route(signin_with_google),
            methods=["POST"],
            name="signin_with_google",
        ),
        Route("/auth/verify-email", public_route(verify_email), methods=["POST"], name="verify_email"),
        Route("/auth/refresh-token", public_route(refresh_token), methods=["POST"], name="refresh_token"),
        Route(
            "/auth/request-password-reset",
            public_route(request_password_reset),
            methods=["POST"],
            name="request_password_reset",
        ),
        Route("/auth/reset-password", public_route(reset_password), methods=["POST"], name="reset_password"),
        # Bearer-authenticated routes (401 JSON when the access token is missing or invalid)
        Route("/auth/signout", protected_api(signout), methods=["POST"], name="signout"),
        Route("/auth/sessions", protected_api(list_sessions), methods=["GET"], name="list_sessions"),
        Route("/health", public_route(health), methods=["GET"], name="health"),
    ]
    validate_route_auth_policy(routes)

    db = Database(auth_settings.database_path)
    db.connect()
    auth_service = AuthService.from_settings(
        db,
        auth_settings,
        mail_settings,
        mailer=mailer,
        identity_verifier=identity_verifier,
        clock=clock,
    )

    @contextlib.asynccontextmanager
    async def lifespan(_app: Starlette) -> AsyncGenerator[None]:
        yield
        db.close()

    app = Starlette(
        routes=routes,
        lifespan=lifespan,
        exception_handlers={
            AuthError: _auth_error_handler,
            HTTPException: _http_error_handler,
            Exception: _unexpected_error_handler,
        },
    )
    app.add_middleware(SlashNormalizationMiddleware)  # type: ignore[arg-type]
    app.add_middleware(AuthenticationMiddleware, backend=BearerTokenBackend(auth_service))  # type: ignore[arg-type]
    app.add_middleware(
        CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type"],
    )
    app.add_middleware(SecurityHeadersMiddleware)  # type: ignore[arg-type]

    app.state.db = db
    app.state.settings = settings
    app.state.auth_settings = auth_settings
    app.state.auth_service = auth_service

    logger.info("identity api ready", database=auth_settings.database_path, mail_backend=mail_settings.backend)
    return app


def get_app() -> Starlette:  # pragma: no cover
    """Factory function for uvicorn --factory api.server.app:get_app."""
    s = ApiServerSettings()
    auth = AuthSettings()  # type: ignore[call-arg]
    setup_logging(log_dir=s.log_dir)
    return create_app(settings=s, auth_settings=auth, mail_settings=MailSettings())
