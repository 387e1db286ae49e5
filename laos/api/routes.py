from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from laos.api.schemas import (
    AccountListResponse,
    AccountResponse,
    EmailCodeRequest,
    Envelope,
    GoogleCallbackRequest,
    LoginRequest,
    RegisterRequest,
    TokenResponse,
    UpdateAccountRequest,
)
from laos.logging import get_logger
from laos.service.errors import ForbiddenError, Unauthenticated
from laos.service.identity import AuthenticatedPrincipal
from laos.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


async def get_principal(request: Request) -> AuthenticatedPrincipal:
    """Principal established by the request authenticator, or 401."""
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise Unauthenticated("authentication required")
    return principal


async def get_admin_principal(
    principal: AuthenticatedPrincipal = Depends(get_principal),
) -> AuthenticatedPrincipal:
    if not principal.is_admin:
        raise ForbiddenError("admin access required")
    return principal


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create a local account.

    Raises:
        400: If email verification is required and the code is missing or wrong
        409: If the local id, nickname or email is already taken
    """
    runtime = get_runtime()
    account = await asyncio.to_thread(
        runtime.accounts.register,
        local_id=body.local_id,
        password=body.password,
        nickname=body.nickname,
        email=body.email,
        email_code=body.email_code,
    )
    response.headers["Location"] = "/v1/login"
    return Envelope(status="ok", data=AccountResponse.from_account(account))


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate a local account and issue an access/refresh pair.

    Any refresh token issued earlier for the same account stops working.
    """
    runtime = get_runtime()
    result = await asyncio.to_thread(runtime.accounts.login, body.local_id, body.password)
    if result is None:
        logger.info("login_failed")
        raise _http_error("unauthorized", "invalid credentials", status_code=401)
    account, tokens = result
    return Envelope(
        status="ok",
        data=TokenResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            account_id=account.id,
        ),
    )


@router.post("/oauth/callback/google", response_model=Envelope, tags=["auth"])
async def google_callback(body: GoogleCallbackRequest):
    """Complete Google sign-in with an authorization code.

    The (email, GOOGLE) account is created on first sign-in.
    """
    runtime = get_runtime()
    account, tokens, created = await runtime.accounts.sign_in_with_google(body.code)
    return Envelope(
        status="ok",
        data=TokenResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            account_id=account.id,
            created=created,
        ),
    )


@router.post("/auth/email/send", response_model=Envelope, tags=["auth"])
async def send_email_code(body: EmailCodeRequest):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.accounts.send_verification_code, body.email)
    return Envelope(
        status="ok",
        data={
            "sent": True,
            "expires_in_seconds": int(runtime.verification.ttl.total_seconds()),
        },
    )


@router.get("/me", response_model=Envelope, tags=["account"])
async def get_me(principal: AuthenticatedPrincipal = Depends(get_principal)):
    runtime = get_runtime()
    account = runtime.accounts.get_account(principal)
    return Envelope(status="ok", data=AccountResponse.from_account(account))


@router.patch("/me", response_model=Envelope, tags=["account"])
async def update_me(
    body: UpdateAccountRequest,
    principal: AuthenticatedPrincipal = Depends(get_principal),
):
    """Change the nickname and/or password of the current account."""
    runtime = get_runtime()
    account = runtime.accounts.update_profile(
        principal, nickname=body.nickname, password=body.password
    )
    return Envelope(status="ok", data=AccountResponse.from_account(account))


@router.delete("/me", response_model=Envelope, tags=["account"])
async def delete_me(principal: AuthenticatedPrincipal = Depends(get_principal)):
    """Delete the current account; its tokens stop resolving immediately."""
    runtime = get_runtime()
    runtime.accounts.delete_account(principal)
    return Envelope(status="ok", data={"deleted": True})


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthenticatedPrincipal = Depends(get_principal)):
    """Revoke the stored refresh token.

    The access token in hand stays valid until it expires.
    """
    runtime = get_runtime()
    runtime.accounts.logout(principal)
    return Envelope(status="ok", data={"logged_out": True})


@router.get("/admin/accounts", response_model=Envelope, tags=["admin"])
async def list_accounts(
    limit: int = Query(100, ge=1, le=500),
    principal: AuthenticatedPrincipal = Depends(get_admin_principal),
):
    runtime = get_runtime()
    accounts = runtime.accounts.list_accounts(limit=limit)
    return Envelope(
        status="ok",
        data=AccountListResponse(items=[AccountResponse.from_account(a) for a in accounts]),
    )
