from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Query

from authsvc.api.schemas import (
    AuthResponse,
    EmailVerificationConfirm,
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RefreshRequest,
    SignupRequest,
    UserProfile,
)
from authsvc.service.auth import AuthSession
from authsvc.service.runtime import get_runtime
from authsvc.service.tokens import AccessClaims
from authsvc.storage.models import User

router = APIRouter(prefix="/api/auth", tags=["auth"])

_RESET_REQUESTED_MESSAGE = "If that email is registered, a password reset link has been sent"


def _profile(user: User) -> Dict[str, Any]:
    return UserProfile(
        id=user.id,
        email=user.email,
        name=user.name,
        email_verified=user.email_verified,
        picture_url=user.picture_url,
        created_at=user.created_at,
    ).model_dump(mode="json")


def _session_payload(session: AuthSession, *, include_first_login: bool = False) -> Dict[str, Any]:
    runtime = get_runtime()
    pair = session.tokens
    return AuthResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in(runtime.clock.now()),
        token_type=pair.token_type,
        user=UserProfile(**_profile(session.user)),
        first_login=session.first_login if include_first_login else None,
    ).model_dump(mode="json", by_alias=True, exclude_none=True)


def _with_test_token(data: Dict[str, Any], token: Optional[str]) -> Dict[str, Any]:
    # No mail delivery exists in-process; tests read the token from the response
    if token and get_runtime().settings.test_mode:
        data["token"] = token
    return data


async def get_current_claims(
    authorization: Optional[str] = Header(None),
) -> AccessClaims:
    return get_runtime().auth.authenticate(authorization).unwrap()


@router.post("/signup", response_model=Envelope, status_code=201)
async def signup(body: SignupRequest):
    """Create a password account and open its first session.

    Raises:
        409: EMAIL_EXISTS when the address is already registered
    """
    runtime = get_runtime()
    session = (await runtime.auth.signup(body.email, body.password, body.name)).unwrap()
    return Envelope(status="ok", data=_session_payload(session))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest):
    """Exchange email and password for an access/refresh token pair.

    Raises:
        401: INVALID_CREDENTIALS
        423: ACCOUNT_LOCKED after too many consecutive failures
        400: INVALID_LOGIN_METHOD for accounts that only sign in with Google
        429: TOO_MANY_REQUESTS
    """
    runtime = get_runtime()
    session = (await runtime.auth.login(body.email, body.password)).unwrap()
    return Envelope(status="ok", data=_session_payload(session))


@router.post("/refresh", response_model=Envelope)
async def refresh(body: RefreshRequest):
    """Rotate a refresh token; the presented token is revoked on success."""
    runtime = get_runtime()
    session = (await runtime.auth.refresh(body.refresh_token)).unwrap()
    return Envelope(status="ok", data=_session_payload(session))


@router.post("/logout", response_model=Envelope)
async def logout(body: RefreshRequest):
    runtime = get_runtime()
    (await runtime.auth.logout(body.refresh_token)).unwrap()
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/revoke-all-sessions", response_model=Envelope)
async def revoke_all_sessions(claims: AccessClaims = Depends(get_current_claims)):
    runtime = get_runtime()
    revoked = (await runtime.auth.logout_all(claims.user_id)).unwrap()
    return Envelope(status="ok", data={"sessionsRevoked": revoked})


@router.get("/me", response_model=Envelope)
async def me(claims: AccessClaims = Depends(get_current_claims)):
    runtime = get_runtime()
    user = (await runtime.auth.get_profile(claims.user_id)).unwrap()
    return Envelope(status="ok", data=_profile(user))


@router.get("/session", response_model=Envelope)
async def session(authorization: Optional[str] = Header(None)):
    """Report whether the bearer token belongs to a live session.

    Always answers 200; a missing, expired or forged token yields
    ``authenticated: false`` with the refusal code under ``error``.
    """
    runtime = get_runtime()
    status = await runtime.auth.session_status(authorization)
    if not status.authenticated:
        data: Dict[str, Any] = {"authenticated": False, "user": None, "session": None}
        if status.reason is not None:
            data["error"] = status.reason.value
        return Envelope(status="ok", data=data)
    claims = status.claims
    remaining = (claims.expires_at - runtime.clock.now()).total_seconds()
    return Envelope(
        status="ok",
        data={
            "authenticated": True,
            "user": _profile(status.user),
            "session": {
                "issuedAt": claims.issued_at.isoformat(),
                "expiresAt": claims.expires_at.isoformat(),
                "remainingTime": max(0, int(remaining)),
            },
        },
    )


@router.post("/change-password", response_model=Envelope)
async def change_password(
    body: PasswordChangeRequest, claims: AccessClaims = Depends(get_current_claims)
):
    """Replace the password after checking the current one; ends every session."""
    runtime = get_runtime()
    revoked = (
        await runtime.auth.change_password(
            claims.user_id, body.current_password, body.new_password
        )
    ).unwrap()
    return Envelope(
        status="ok", data={"message": "password updated", "sessionsRevoked": revoked}
    )


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(body: PasswordResetRequest):
    """Start a password reset. The response is identical for unknown addresses."""
    runtime = get_runtime()
    token = (await runtime.auth.request_password_reset(body.email)).unwrap()
    return Envelope(
        status="ok", data=_with_test_token({"message": _RESET_REQUESTED_MESSAGE}, token)
    )


@router.post("/reset-password", response_model=Envelope)
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    (await runtime.auth.reset_password(body.token, body.new_password)).unwrap()
    return Envelope(status="ok", data={"message": "password has been reset"})


@router.post("/verify-email/request", response_model=Envelope)
async def request_email_verification(claims: AccessClaims = Depends(get_current_claims)):
    runtime = get_runtime()
    token = (await runtime.auth.request_email_verification(claims.user_id)).unwrap()
    return Envelope(
        status="ok", data=_with_test_token({"message": "verification email sent"}, token)
    )


@router.post("/verify-email", response_model=Envelope)
async def verify_email(body: EmailVerificationConfirm):
    runtime = get_runtime()
    (await runtime.auth.verify_email(body.token)).unwrap()
    return Envelope(status="ok", data={"message": "email verified"})


@router.get("/google/login", response_model=Envelope)
async def google_login():
    runtime = get_runtime()
    started = (await runtime.auth.start_google_login()).unwrap()
    return Envelope(
        status="ok",
        data={"authorizationUrl": started.authorization_url, "state": started.state},
    )


@router.get("/google/callback", response_model=Envelope)
async def google_callback(
    code: str = Query("", max_length=2048),
    state: str = Query("", max_length=256),
):
    runtime = get_runtime()
    session = (await runtime.auth.complete_google_login(state, code)).unwrap()
    return Envelope(status="ok", data=_session_payload(session, include_first_login=True))
