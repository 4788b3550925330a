"""
Authentication endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Response, status

from .dependencies import (
    MicrofinanceSystem, Principal, get_system, get_current_principal,
    get_optional_principal, create_access_token
)
from .schemas import RegisterRequest, LoginRequest
from ..errors import AuthError, MicrofinanceError
from ..logging_config import get_logger, log_action
from ..users import UserRole


router = APIRouter()
logger = get_logger("microfinance.api.auth")


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(
    request: RegisterRequest,
    principal: Optional[Principal] = Depends(get_optional_principal),
    system: MicrofinanceSystem = Depends(get_system)
):
    """
    Create a user account

    Anyone may register a collector. Other roles need an admin, except for
    the very first account, which bootstraps the system.
    """
    if request.role != UserRole.COLLECTOR:
        bootstrapping = system.storage.count(system.user_manager.users_table) == 0
        if not bootstrapping and (not principal or principal.role != UserRole.ADMIN):
            raise AuthError("Only administrators can create this role", status_code=403)

    user = system.user_manager.create_user(
        email=request.email,
        username=request.username,
        password=request.password,
        name=request.name,
        role=request.role,
        phone=request.phone,
        assigned_area=request.assigned_area,
        created_by=principal.user_id if principal else None
    )
    log_action(
        logger, "info", "User registered",
        user_id=user.id, action="register", resource="auth",
        extra={"role": user.role.value}
    )
    return {"user": user.to_public_dict()}


@router.post("/login")
async def login(
    request: LoginRequest,
    response: Response,
    system: MicrofinanceSystem = Depends(get_system)
):
    """Authenticate; returns a bearer token and sets the session cookie"""
    try:
        user = system.user_manager.authenticate(request.username, request.password)
    except MicrofinanceError as e:
        log_action(
            logger, "warning", f"Authentication failed: {e.message}",
            action="login_failed", resource="auth",
            extra={"username": request.username}
        )
        raise

    session = system.user_manager.create_session(user)
    token = create_access_token(user, system.config)

    response.set_cookie(
        key=system.config.session_cookie_name,
        value=session.id,
        httponly=True,
        secure=system.config.session_cookie_secure,
        samesite="lax",
        max_age=system.config.session_timeout_hours * 3600
    )

    log_action(
        logger, "info", "User authenticated successfully",
        user_id=user.id, action="login", resource="auth"
    )
    return {
        "access_token": token,
        "token_type": "bearer",
        "expires_in": system.config.jwt_expiry_hours * 3600,
        "user": user.to_public_dict()
    }


@router.post("/logout")
async def logout(
    response: Response,
    principal: Principal = Depends(get_current_principal),
    system: MicrofinanceSystem = Depends(get_system)
):
    """End the web session; bearer tokens simply expire"""
    if principal.session_id:
        system.user_manager.logout(principal.session_id)
    response.delete_cookie(system.config.session_cookie_name)

    log_action(
        logger, "info", "User logged out",
        user_id=principal.user_id, action="logout", resource="auth"
    )
    return {"message": "Logout successful"}


@router.get("/me")
async def me(
    principal: Principal = Depends(get_current_principal),
    system: MicrofinanceSystem = Depends(get_system)
):
    user = system.user_manager.require_user(principal.user_id)
    return {"user": user.to_public_dict()}
