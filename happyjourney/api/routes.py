from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from happyjourney.api.schemas import (
    GoogleLoginRequest,
    LoginRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SendOtpRequest,
    VerifyOtpRequest,
    VoteRequest,
)
from happyjourney.logging import get_logger
from happyjourney.service.auth import AuthResult
from happyjourney.service.errors import AuthenticationError
from happyjourney.service.identity import (
    Credentials,
    ResolvedIdentity,
    extract_credentials,
)
from happyjourney.service.rate_limit import UNKNOWN_CLIENT, client_identifier
from happyjourney.service.runtime import get_runtime
from happyjourney.service.sessions import SESSION_ID_COOKIE

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _credentials(request: Request) -> Credentials:
    return extract_credentials(request.headers, request.cookies)


async def require_bearer_identity(request: Request) -> ResolvedIdentity:
    """Strict contract: only a valid ``Authorization: Bearer`` token is accepted."""
    identity = get_runtime().identity.resolve_bearer(_credentials(request))
    if not identity:
        raise AuthenticationError("Unauthorized")
    return identity


async def require_identity(request: Request) -> ResolvedIdentity:
    """Cookie-aware contract: bearer, then auth cookie, then persistent session."""
    identity = get_runtime().identity.resolve(_credentials(request))
    if not identity:
        raise AuthenticationError("Unauthorized")
    return identity


async def optional_identity(request: Request) -> Optional[ResolvedIdentity]:
    return get_runtime().identity.resolve(_credentials(request))


def _client_meta(request: Request) -> tuple[Optional[str], Optional[str]]:
    ip_address = client_identifier(request.headers)
    if ip_address == UNKNOWN_CLIENT:
        ip_address = request.client.host if request.client else None
    return request.headers.get("user-agent"), ip_address


def _signed_in(response: Response, result: AuthResult) -> dict:
    get_runtime().sessions.set_auth_cookies(response, result.token, result.session_id)
    return {"user": result.user.public_dict(), "token": result.token}


@router.post("/auth/register", tags=["auth"])
async def register(body: RegisterRequest):
    """Create a pending account and mail an email verification code.

    No cookies are set: the account only signs in after the code is verified.
    """
    user, pending_token = await get_runtime().auth.register(
        email=body.email, password=body.password, name=body.name, phone=body.phone
    )
    return {
        "success": True,
        "message": "Registration successful. Please verify your email.",
        "token": pending_token,
        "requiresVerification": True,
        "user": user.public_dict(),
    }


@router.post("/auth/send-otp", tags=["auth"])
async def send_otp(body: SendOtpRequest):
    expires_in = await get_runtime().auth.send_otp(email=body.email, purpose=body.type)
    return {"success": True, "message": "OTP sent successfully", "expiresIn": expires_in}


@router.post("/auth/verify-otp", tags=["auth"])
async def verify_otp(body: VerifyOtpRequest, request: Request, response: Response):
    user_agent, ip_address = _client_meta(request)
    outcome = await get_runtime().auth.verify_otp(
        email=body.email,
        code=body.otp,
        purpose=body.type,
        user_agent=user_agent,
        ip_address=ip_address,
    )
    if isinstance(outcome, str):
        return {
            "success": True,
            "message": "OTP verified successfully",
            "resetToken": outcome,
        }
    return {
        "success": True,
        "message": "Email verified successfully",
        **_signed_in(response, outcome),
    }


@router.post("/auth/reset-password", tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    await get_runtime().auth.reset_password(
        reset_token=body.reset_token, new_password=body.password
    )
    return {"success": True, "message": "Password updated successfully"}


@router.post("/auth/login", tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    user_agent, ip_address = _client_meta(request)
    result = await get_runtime().auth.login(
        email=body.email,
        password=body.password,
        user_agent=user_agent,
        ip_address=ip_address,
    )
    return _signed_in(response, result)


@router.post("/auth/google", tags=["auth"])
async def google_login(body: GoogleLoginRequest, request: Request, response: Response):
    user_agent, ip_address = _client_meta(request)
    result = await get_runtime().auth.google_login(
        id_token=body.id_token, user_agent=user_agent, ip_address=ip_address
    )
    return _signed_in(response, result)


@router.post("/auth/logout", tags=["auth"])
async def logout(request: Request, response: Response):
    """Drop the persistent session, if any, and expire both auth cookies.

    Always succeeds, even without a session cookie or a matching record.
    """
    runtime = get_runtime()
    runtime.auth.logout(request.cookies.get(SESSION_ID_COOKIE))
    runtime.sessions.clear_auth_cookies(response)
    return {"success": True, "message": "Logged out successfully"}


@router.get("/auth/me", tags=["auth"])
async def get_me(identity: ResolvedIdentity = Depends(require_bearer_identity)):
    return get_runtime().auth.get_profile(identity.user_id).public_dict()


@router.put("/auth/me", tags=["auth"])
async def update_me(
    body: ProfileUpdateRequest,
    identity: ResolvedIdentity = Depends(require_bearer_identity),
):
    user = get_runtime().auth.update_profile(
        identity.user_id, body.model_dump(exclude_unset=True)
    )
    return user.public_dict()


@router.get("/votes", tags=["votes"])
async def get_votes(
    resource_type: Optional[str] = Query(None, alias="resourceType"),
    resource_id: Optional[str] = Query(None, alias="resourceId"),
    identity: Optional[ResolvedIdentity] = Depends(optional_identity),
):
    return get_runtime().votes.summary(
        resource_type, resource_id, identity.user_id if identity else None
    )


@router.post("/votes", tags=["votes"])
async def toggle_vote(
    body: VoteRequest, identity: ResolvedIdentity = Depends(require_identity)
):
    return get_runtime().votes.toggle(
        identity.user_id, body.resource_type, body.resource_id
    )


@router.delete("/votes", tags=["votes"])
async def delete_vote(
    resource_type: Optional[str] = Query(None, alias="resourceType"),
    resource_id: Optional[str] = Query(None, alias="resourceId"),
    identity: ResolvedIdentity = Depends(require_identity),
):
    get_runtime().votes.remove(identity.user_id, resource_type, resource_id)
    return {"success": True, "message": "Vote removed"}
