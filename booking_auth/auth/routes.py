# booking_auth/auth/routes.py
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from booking_auth.auth.context import AuthContext
from booking_auth.auth.guard import get_auth_context
from booking_auth.auth.services import AuthService
from booking_auth.auth.utils import client_context
from booking_auth.database import get_db
from booking_auth.rate_limit import (
    login_limit,
    password_reset_limit,
    refresh_limit,
    register_limit,
    verification_limit,
)
from booking_auth.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    CountResponse,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResendVerificationRequest,
    ResetPasswordRequest,
    SessionInfo,
    TokenPair,
    UserProfile,
    ValidateResponse,
    VerifyEmailRequest,
)

router = APIRouter()


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _auth_response(result) -> AuthResponse:
    return AuthResponse(
        user=UserProfile.model_validate(result.account),
        token=result.access_token,
        refresh_token=result.refresh_token,
    )


# ---------- credentials ----------
@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
@register_limit
async def register(
    request: Request,
    body: RegisterRequest,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
):
    result = await service.register(db, body.email, body.full_name, body.password, client_context(request))
    return _auth_response(result)


@router.post("/login", response_model=AuthResponse)
@login_limit
async def login(
    request: Request,
    body: LoginRequest,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
):
    result = await service.login(db, body.email, body.password, client_context(request))
    return _auth_response(result)


@router.post("/refresh", response_model=TokenPair)
@refresh_limit
async def refresh(
    request: Request,
    body: RefreshRequest,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
):
    pair = await service.refresh(db, body.refresh_token, client_context(request))
    return TokenPair(token=pair.access_token, refresh_token=pair.refresh_token)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    body: RefreshRequest,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
):
    # unknown tokens are not an error: the client is logged out either way
    await service.logout(db, body.refresh_token)
    return MessageResponse(message="Logged out successfully")


@router.post("/logout-all", response_model=CountResponse)
async def logout_all(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
):
    count = await service.logout_all(db, ctx)
    return CountResponse(message="Logged out from all devices successfully", revoked=count)


@router.post("/logout-others", response_model=CountResponse)
async def logout_others(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
):
    count = await service.logout_others(db, ctx)
    return CountResponse(message="Logged out from other devices successfully", revoked=count)


# ---------- current identity ----------
@router.get("/validate", response_model=ValidateResponse)
async def validate(ctx: AuthContext = Depends(get_auth_context)):
    return ValidateResponse(user=UserProfile.model_validate(ctx.account), valid=True)


@router.get("/me", response_model=UserProfile)
async def me(ctx: AuthContext = Depends(get_auth_context)):
    return UserProfile.model_validate(ctx.account)


@router.get("/sessions", response_model=list[SessionInfo])
async def list_sessions(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
):
    tokens = await service.list_sessions(db, ctx)
    return [SessionInfo.model_validate(t) for t in tokens]


@router.delete("/sessions/{session_id}", response_model=MessageResponse)
async def revoke_session(
    session_id: str,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
):
    await service.revoke_session(db, ctx, session_id)
    return MessageResponse(message="Session revoked")


@router.post("/change-password", response_model=MessageResponse)
async def change_password(
    body: ChangePasswordRequest,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
):
    await service.change_password(db, ctx, body.current_password, body.new_password)
    return MessageResponse(message="Password changed successfully")


# ---------- password reset ----------
@router.post("/forgot-password", response_model=MessageResponse)
@password_reset_limit
async def forgot_password(
    request: Request,
    body: ForgotPasswordRequest,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
):
    message = await service.forgot_password(db, body.email, client_context(request))
    return MessageResponse(message=message)


@router.post("/reset-password", response_model=MessageResponse)
async def reset_password(
    request: Request,
    body: ResetPasswordRequest,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
):
    await service.reset_password(db, body.token, body.password, client_context(request))
    return MessageResponse(message="Password has been reset successfully")


# ---------- email verification ----------
@router.post("/verify-email", response_model=MessageResponse)
@verification_limit
async def verify_email(
    request: Request,
    body: VerifyEmailRequest,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
):
    await service.verify_email(db, body.token)
    return MessageResponse(message="Email verified successfully")


@router.post("/resend-verification", response_model=MessageResponse)
@verification_limit
async def resend_verification(
    request: Request,
    body: ResendVerificationRequest,
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
):
    message = await service.resend_verification(db, body.email)
    return MessageResponse(message=message)
