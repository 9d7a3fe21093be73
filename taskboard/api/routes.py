from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from taskboard.api.schemas import (
    AuthResponse,
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    LogoutResponse,
    RefreshRequest,
    RegisterRequest,
    UserProfile,
    UserSummary,
)
from taskboard.service.runtime import get_runtime
from taskboard.service.sessions import AuthResult
from taskboard.service.tokens import AccessTokenSigner
from taskboard.storage.models import User

router = APIRouter(prefix="/auth", tags=["auth"])


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_context(request: Request) -> dict[str, Optional[str]]:
    return {
        "device_info": request.headers.get("User-Agent"),
        "ip": request.client.host if request.client else None,
    }


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        user=UserSummary.from_user(result.user),
    )


async def get_current_user(authorization: Optional[str] = Header(None)) -> User:
    token = AccessTokenSigner.extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    user = await get_runtime().sessions.authenticate(token)
    if not user:
        raise _http_error("unauthorized", "invalid access token", status_code=401)
    return user


@router.post("/register", response_model=AuthResponse, status_code=201)
async def register(body: RegisterRequest, request: Request):
    """Create an account and open its first session."""
    result = await get_runtime().sessions.register(
        body.email,
        body.password,
        body.full_name,
        **_client_context(request),
    )
    return _auth_response(result)


@router.post("/login", response_model=AuthResponse)
async def login(body: LoginRequest, request: Request):
    result = await get_runtime().sessions.login(
        body.email, body.password, **_client_context(request)
    )
    return _auth_response(result)


@router.post("/refresh", response_model=AuthResponse)
async def refresh(body: RefreshRequest, request: Request):
    """Exchange a refresh token for a new token pair.

    The presented token is consumed whatever the outcome; presenting it a
    second time revokes every session of its owner.
    """
    result = await get_runtime().sessions.refresh(
        body.refresh_token, **_client_context(request)
    )
    return _auth_response(result)


@router.post("/logout", response_model=LogoutResponse)
async def logout(body: LogoutRequest):
    revoked = await get_runtime().sessions.logout(body.refresh_token)
    message = "Logged out successfully" if revoked else "Token not found or already revoked"
    return LogoutResponse(message=message, revoked=revoked)


@router.post("/logout-all", response_model=LogoutAllResponse)
async def logout_all(user: User = Depends(get_current_user)):
    revoked_count = await get_runtime().sessions.logout_all(user.id)
    return LogoutAllResponse(message="All sessions revoked", revoked_count=revoked_count)


@router.get("/me", response_model=UserProfile)
async def me(user: User = Depends(get_current_user)):
    return UserProfile.from_user(user)
