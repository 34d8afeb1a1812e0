"""Auth endpoints: signup, sign-in, Google sign-in, verification, refresh, reset, and sessions.

Handlers only translate HTTP to AuthService calls. Every AuthError is left to
propagate to the application's exception handler, which owns the status mapping.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from pydantic import ValidationError
from starlette.responses import JSONResponse

from api.views.types import (
    GoogleSigninRequest,
    PasswordResetRequest,
    RefreshTokenRequest,
    ResetPasswordRequest,
    SigninRequest,
    SignupRequest,
)
from identity.auth.errors import AuthError
from identity.auth.models import AccountView, ActiveSessionView, RefreshView
from identity.auth.service import RESET_REQUESTED_MESSAGE

if TYPE_CHECKING:
    from pydantic import BaseModel
    from starlette.requests import Request

    from identity.auth.service import AuthService

EMAIL_VERIFIED_MESSAGE = "Email verified successfully"
PASSWORD_RESET_MESSAGE = "Password has been reset. Please sign in with your new password."
SIGNED_OUT_MESSAGE = "Signed out"


async def _parse_body[M: BaseModel](request: Request, model: type[M]) -> M:
    """Parse and validate a JSON object body. Raises VALIDATION on any failure."""
    try:
        body = await request.json()
    except (ValueError, json.JSONDecodeError) as exc:
        raise AuthError.validation("Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise AuthError.validation("Request body must be a JSON object")
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "body"
        raise AuthError.validation(f"Invalid value for {field}: {first['msg']}") from exc


def _client_ip(request: Request) -> str | None:
    if request.app.state.settings.trust_proxy:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else None


def _provenance(request: Request) -> dict[str, str | None]:
    return {"ip_address": _client_ip(request), "user_agent": request.headers.get("user-agent")}


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


async def signup(request: Request) -> JSONResponse:
    """POST /auth/signup {email, password, fullName?} - create a pending account."""
    body = await _parse_body(request, SignupRequest)
    account = await _service(request).signup(body.email, body.password, body.full_name)
    return JSONResponse({"user": AccountView.from_account(account).to_json()}, status_code=201)


async def signin(request: Request) -> JSONResponse:
    """POST /auth/signin {email, password} - password sign-in."""
    body = await _parse_body(request, SigninRequest)
    signed_in = await _service(request).signin(body.email, body.password, **_provenance(request))
    return JSONResponse(signed_in.to_json())


async def signin_with_google(request: Request) -> JSONResponse:
    """POST /auth/signin-with-google {idToken} - federated sign-in."""
    body = await _parse_body(request, GoogleSigninRequest)
    signed_in = await _service(request).signin_with_google(body.id_token, **_provenance(request))
    return JSONResponse(signed_in.to_json())


async def verify_email(request: Request) -> JSONResponse:
    """POST /auth/verify-email?token=... - activate the account and sign it in."""
    token = request.query_params.get("token", "")
    signed_in = await _service(request).verify_email(token, **_provenance(request))
    return JSONResponse({"message": EMAIL_VERIFIED_MESSAGE, **signed_in.to_json()})


async def refresh_token(request: Request) -> JSONResponse:
    """POST /auth/refresh-token {userId, refreshToken} - new access token, maybe a new refresh token."""
    body = await _parse_body(request, RefreshTokenRequest)
    result = await _service(request).refresh_access_token(
        body.user_id,
        body.refresh_token,
        **_provenance(request),
    )
    return JSONResponse(RefreshView.from_result(result).to_json())


async def request_password_reset(request: Request) -> JSONResponse:
    """POST /auth/request-password-reset {email} - same answer whether or not the email exists."""
    body = await _parse_body(request, PasswordResetRequest)
    await _service(request).request_password_reset(body.email)
    return JSONResponse({"message": RESET_REQUESTED_MESSAGE})


async def reset_password(request: Request) -> JSONResponse:
    """POST /auth/reset-password {token, newPassword}."""
    body = await _parse_body(request, ResetPasswordRequest)
    await _service(request).reset_password(body.token, body.new_password)
    return JSONResponse({"message": PASSWORD_RESET_MESSAGE})


async def signout(request: Request) -> JSONResponse:
    """POST /auth/signout - close the session the bearer token belongs to."""
    user = request.user
    await _service(request).signout(user.account_id, user.session_id)
    return JSONResponse({"message": SIGNED_OUT_MESSAGE})


async def list_sessions(request: Request) -> JSONResponse:
    """GET /auth/sessions - active sessions of the caller, newest first."""
    user = request.user
    sessions = await _service(request).list_sessions(user.account_id)
    return JSONResponse(
        {
            "sessions": [
                ActiveSessionView.from_session(s, current_session_id=user.session_id).to_json() for s in sessions
            ],
        },
    )
