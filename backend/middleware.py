from fastapi import Request
from typing import Optional
import logging
from auth import decode_access_token
from services.principal_service import Principal, PrincipalResolver
from utils.errors import AuthenticationError, AuthorizationError

logger = logging.getLogger(__name__)

def extract_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None

async def resolve_token(token: str) -> Principal:
    """Token -> live principal. Shared by HTTP guards and the WebSocket join."""
    payload = decode_access_token(token) if token else None
    if not payload or not payload.get("sub"):
        raise AuthenticationError("Not authenticated")

    principal = await PrincipalResolver.resolve(payload["sub"], payload.get("role"))
    if not principal:
        raise AuthenticationError("User not found")
    return principal

async def require_auth(request: Request) -> Principal:
    """Require a valid token for an existing, active principal."""
    principal = await resolve_token(extract_bearer_token(request))
    if not principal.is_active:
        logger.info(f"Rejected request from inactive {principal.role} {principal.id}")
        raise AuthorizationError("Your account is inactive. Please contact admin.")
    return principal

async def require_admin(request: Request) -> Principal:
    """Require admin role."""
    principal = await require_auth(request)
    if not principal.is_admin:
        raise AuthorizationError("Admin access required")
    return principal

async def require_user(request: Request) -> Principal:
    """Require an agent or channel partner (direct or associate)."""
    principal = await require_auth(request)
    if principal.is_admin:
        raise AuthorizationError("This endpoint is for agents and channel partners")
    return principal

def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None
