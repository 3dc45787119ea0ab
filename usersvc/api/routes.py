from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends

from usersvc.api.guards import GuardContext, auth_gate, guarded, rate_limit
from usersvc.api.schemas import (
    ChangePasswordRequest,
    DeleteAccountRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    OAuthLoginRequest,
    OAuthTokenPayload,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SuccessEnvelope,
    TokenPayload,
    UpdateProfileRequest,
    UserProfile,
    dump,
)
from usersvc.service.i18n import translate
from usersvc.service.runtime import LOGIN, REGISTER, RESET_REQUEST, RESET_SUBMIT
from usersvc.service.tokens import IssuedTokens

router = APIRouter()


def _success(ctx: GuardContext, message_key: str, data=None) -> SuccessEnvelope:
    return SuccessEnvelope(data=data, message=translate(message_key, ctx.language))


def _token_payload(tokens: IssuedTokens) -> dict:
    return dump(
        TokenPayload(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in=tokens.expires_in,
        )
    )


@router.post("/auth/register", response_model=SuccessEnvelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    ctx: GuardContext = Depends(guarded(rate_limit(REGISTER))),
):
    """Create an email/password account and return its first token pair.

    Raises:
        400: If name, email or password fail validation
        409: If the email is already registered
        429: If the client exceeded the registration budget
    """
    _, tokens = await ctx.runtime.auth.register(body.name, body.email, body.password)
    return _success(ctx, "user.account_created", _token_payload(tokens))


@router.post("/auth/login", response_model=SuccessEnvelope, tags=["auth"])
async def login(
    body: LoginRequest,
    ctx: GuardContext = Depends(guarded(rate_limit(LOGIN))),
):
    """Exchange email and password for a token pair.

    Raises:
        401: INVALID_CREDENTIALS for unknown email or wrong password,
            EXTERNAL_AUTH_ACCOUNT for accounts without a password
        423: If the account is locked after repeated failures
        429: If the client exceeded the login budget
    """
    _, tokens = await ctx.runtime.auth.login(body.email, body.password)
    return _success(ctx, "user.login_success", _token_payload(tokens))


@router.post("/auth/google", response_model=SuccessEnvelope, tags=["auth"])
async def google_login(
    body: Optional[OAuthLoginRequest] = Body(None),
    ctx: GuardContext = Depends(guarded(rate_limit(LOGIN))),
):
    """Exchange a Google ID token for a token pair.

    First use creates a passwordless ``google`` account; ``isNew`` says so.

    Raises:
        401: MISSING_TOKEN without a token, INVALID_TOKEN if Google rejects it
        423: If the matching account is locked
        503: If Google sign-in is not configured
    """
    _, tokens, created = await ctx.runtime.auth.oauth_login(
        body.google_token if body else None
    )
    payload = OAuthTokenPayload(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.expires_in,
        is_new=created,
    )
    message_key = "user.oauth_account_created" if created else "user.oauth_login_success"
    return _success(ctx, message_key, dump(payload))


@router.post("/auth/refresh-token", response_model=SuccessEnvelope, tags=["auth"])
async def refresh_token(
    body: Optional[RefreshTokenRequest] = Body(None),
    ctx: GuardContext = Depends(guarded()),
):
    """Rotate a refresh token into a new pair.

    Raises:
        401: MISSING_TOKEN, INVALID_TOKEN (incl. an access token),
            TOKEN_EXPIRED, TOKEN_REVOKED or USER_NOT_FOUND
        423: If the account is locked
    """
    tokens = await ctx.runtime.auth.refresh(body.refresh_token if body else None)
    return _success(ctx, "user.token_refreshed", _token_payload(tokens))


@router.post("/auth/logout", response_model=SuccessEnvelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = Body(None),
    ctx: GuardContext = Depends(guarded(auth_gate)),
):
    """Revoke the presented access token, and the refresh token if one is sent."""
    refresh = body.refresh_token if body else None
    await ctx.runtime.auth.logout(ctx.require_principal(), refresh)
    return _success(ctx, "user.logout_success")


@router.post("/auth/forgot-password", response_model=SuccessEnvelope, tags=["auth"])
async def forgot_password(
    body: ForgotPasswordRequest,
    ctx: GuardContext = Depends(guarded(rate_limit(RESET_REQUEST))),
):
    """Start a password reset. The answer is the same whether or not the email exists."""
    await ctx.runtime.auth.request_password_reset(body.email)
    return _success(ctx, "user.password_reset_sent")


@router.post("/auth/reset-password", response_model=SuccessEnvelope, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest,
    ctx: GuardContext = Depends(guarded(rate_limit(RESET_SUBMIT))),
):
    """Finish a password reset with the emailed token.

    Raises:
        400: INVALID_RESET_TOKEN if the token is unknown, used or expired
        429: If the client exceeded the reset-submission budget
    """
    await ctx.runtime.auth.reset_password(body.token, body.password)
    return _success(ctx, "user.password_reset_completed")


@router.get("/users/me", response_model=SuccessEnvelope, tags=["users"])
async def get_me(ctx: GuardContext = Depends(guarded(auth_gate))):
    record = await ctx.runtime.users.get_profile(ctx.require_principal())
    return _success(ctx, "user.profile_retrieved", dump(UserProfile.from_record(record)))


@router.patch("/users/me", response_model=SuccessEnvelope, tags=["users"])
async def update_me(
    body: UpdateProfileRequest,
    ctx: GuardContext = Depends(guarded(auth_gate)),
):
    """Update name and/or email.

    Raises:
        400: VALIDATION_ERROR when neither field is given or a value is invalid
        409: If the new email belongs to another account
    """
    record = await ctx.runtime.users.update_profile(
        ctx.require_principal(), name=body.name, email=body.email
    )
    return _success(ctx, "user.profile_updated", dump(UserProfile.from_record(record)))


@router.patch("/users/me/password", response_model=SuccessEnvelope, tags=["users"])
async def change_password(
    body: ChangePasswordRequest,
    ctx: GuardContext = Depends(guarded(auth_gate)),
):
    """Change the password after checking the current one.

    Raises:
        400: If the new password is weak or equal to the current one
        401: INVALID_CREDENTIALS for a wrong current password,
            EXTERNAL_AUTH_ACCOUNT for accounts without a password
    """
    await ctx.runtime.users.change_password(
        ctx.require_principal(), body.current_password, body.new_password
    )
    return _success(ctx, "user.password_changed")


@router.delete("/users/me", response_model=SuccessEnvelope, tags=["users"])
async def delete_me(
    body: Optional[DeleteAccountRequest] = Body(None),
    ctx: GuardContext = Depends(guarded(auth_gate)),
):
    """Permanently erase the caller's account.

    Raises:
        401: INVALID_CREDENTIALS if the password does not match
    """
    await ctx.runtime.users.delete_account(
        ctx.require_principal(), body.password if body else None
    )
    return _success(ctx, "user.account_deleted")
