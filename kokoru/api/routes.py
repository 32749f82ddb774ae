from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from kokoru.api.schemas import (
    AuthResponse,
    CurrentUserResponse,
    EmailVerificationRequest,
    Envelope,
    ForgotPasswordRequest,
    GoogleAuthRequest,
    GoogleAuthUrlResponse,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenRefreshRequest,
    TokensResponse,
    UserResponse,
)
from kokoru.logging import get_logger
from kokoru.service.auth import AuthContext
from kokoru.service.errors import AuthenticationError, ServerError
from kokoru.service.runtime import Runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("Authentication required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Authentication required")
    return token.strip()


async def get_user(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    return await runtime.auth.authenticate_access_token(_bearer_token(authorization))


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, runtime: Runtime = Depends(get_runtime)):
    """Create a local account and sign it in.

    A verification email is queued; the account works before it is verified.

    Raises:
        400: If the email is malformed or the password is too weak
        409: If the email is already registered
    """
    result = await runtime.auth.register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return Envelope(status="ok", data=AuthResponse.from_result(result))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, runtime: Runtime = Depends(get_runtime)):
    """Authenticate with email and password.

    Raises:
        401: If the credentials are invalid or the account is Google-only
        423: If the account is locked after repeated failures
    """
    result = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=AuthResponse.from_result(result))


@router.post("/verify-email", response_model=Envelope)
async def verify_email(body: EmailVerificationRequest, runtime: Runtime = Depends(get_runtime)):
    user = await runtime.auth.verify_email(body.token)
    return Envelope(
        status="ok",
        data={"message": "Email verified", "user": UserResponse.from_identity(user)},
    )


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(body: ForgotPasswordRequest, runtime: Runtime = Depends(get_runtime)):
    await runtime.auth.forgot_password(body.email)
    # Same response whether or not the account exists
    return Envelope(
        status="ok",
        data={"message": "If an account exists for that email, a reset link has been sent"},
    )


@router.post("/reset-password", response_model=Envelope)
async def reset_password(body: ResetPasswordRequest, runtime: Runtime = Depends(get_runtime)):
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data={"message": "Password has been reset"})


@router.post("/refresh", response_model=Envelope)
async def refresh(body: TokenRefreshRequest, runtime: Runtime = Depends(get_runtime)):
    tokens = await runtime.auth.refresh_token(body.refresh_token)
    return Envelope(status="ok", data=TokensResponse.from_tokens(tokens))


@router.post("/logout", response_model=Envelope)
async def logout(
    authorization: Optional[str] = Header(None),
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.logout(principal.identity_id, access_token=_bearer_token(authorization))
    return Envelope(status="ok", data={"message": "Logged out"})


@router.get("/me", response_model=Envelope)
async def me(principal: AuthContext = Depends(get_user), runtime: Runtime = Depends(get_runtime)):
    current = await runtime.auth.get_current_user(principal.identity_id)
    return Envelope(status="ok", data=CurrentUserResponse.from_current(current))


@router.post("/resend-verification", response_model=Envelope)
async def resend_verification(
    principal: AuthContext = Depends(get_user), runtime: Runtime = Depends(get_runtime)
):
    await runtime.auth.resend_verification_email(principal.identity_id)
    return Envelope(status="ok", data={"message": "Verification email sent"})


@router.post("/google", response_model=Envelope)
async def google_login(body: GoogleAuthRequest, runtime: Runtime = Depends(get_runtime)):
    """Complete Google sign-in with the code and the ``state`` from ``GET google/url``."""
    result = await runtime.auth.authenticate_with_google(body.code, body.state)
    return Envelope(status="ok", data=AuthResponse.from_result(result))


@router.get("/google/url", response_model=Envelope)
async def google_url(runtime: Runtime = Depends(get_runtime)):
    if not runtime.oauth.configured:
        raise ServerError("Google sign-in is not configured")
    state = await runtime.oauth.issue_state()
    return Envelope(
        status="ok",
        data=GoogleAuthUrlResponse(
            authorization_url=runtime.oauth.authorization_url(state), state=state
        ),
    )
