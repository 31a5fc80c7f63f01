from fastapi import APIRouter, Request, status
from models import LoginRequest, AdminRegisterRequest, UserRegisterRequest, TokenResponse
from middleware import require_admin, require_user, client_ip
from services.user_service import UserService
from utils.rate_limiter import rate_limiter
import logging

logger = logging.getLogger(__name__)

admin_router = APIRouter(prefix="/api/v1/admin", tags=["admin-auth"])
user_router = APIRouter(prefix="/api/v1/user", tags=["user-auth"])

LOGIN_MAX_ATTEMPTS = 10
LOGIN_WINDOW_MINUTES = 15


@admin_router.post("/register", status_code=status.HTTP_201_CREATED)
async def register_admin(body: AdminRegisterRequest):
    """Create the single admin account. Fails once an admin exists."""
    admin = await UserService.register_admin(body)
    return {"message": "Admin registered successfully", "admin": admin}


@admin_router.post("/login", response_model=TokenResponse)
async def login_admin(request: Request, credentials: LoginRequest):
    await rate_limiter.enforce(request, "admin-login", LOGIN_MAX_ATTEMPTS, LOGIN_WINDOW_MINUTES)
    return await UserService.login_admin(credentials, ip_address=client_ip(request))


@admin_router.get("/me")
async def admin_me(request: Request):
    admin = await require_admin(request)
    return await UserService.get_profile(admin)


@user_router.post("/register", status_code=status.HTTP_201_CREATED)
async def register_user(request: Request, body: UserRegisterRequest):
    """Self-registration for agents and channel partners into an existing company."""
    user = await UserService.register_user(body, ip_address=client_ip(request))
    return {"message": "User registered successfully", "user": user}


@user_router.post("/login", response_model=TokenResponse)
async def login_user(request: Request, credentials: LoginRequest):
    """Login for users and associate users."""
    await rate_limiter.enforce(request, "user-login", LOGIN_MAX_ATTEMPTS, LOGIN_WINDOW_MINUTES)
    return await UserService.login_user(credentials, ip_address=client_ip(request))


@user_router.get("/me")
async def user_me(request: Request):
    user = await require_user(request)
    return await UserService.get_profile(user)
