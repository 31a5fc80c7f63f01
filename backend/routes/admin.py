"""
Admin management routes: account status, agent lookup, user overview and
explicit lead broadcast.
"""
from fastapi import APIRouter, Request, Query
from typing import Optional
from models import BroadcastRequest, UserStatusUpdateRequest
from middleware import require_admin, client_ip
from services.catalogue_service import CompanyService
from services.customer_service import CustomerService
from services.notification_service import get_notifier
from services.principal_service import PrincipalResolver
from services.user_service import UserService
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


@router.patch("/users/{user_id}/status")
async def update_user_status(request: Request, user_id: str, body: UserStatusUpdateRequest):
    """Deactivating a user also force-logs-out their live connection."""
    admin = await require_admin(request)
    user = await UserService.set_status(
        user_id, body.status, admin, notifier=get_notifier(request.app), ip_address=client_ip(request)
    )
    return {"message": f"User status updated to {body.status.value}", "user": user}


@router.get("/companies/{company_id}/agents")
async def list_company_agents(request: Request, company_id: str):
    await require_admin(request)
    company = await CompanyService.require(company_id)
    agents = await PrincipalResolver.list_active_agents(company_id)
    return {"company_id": company_id, "company_name": company["company_name"], "agents": agents, "total": len(agents)}


@router.get("/users")
async def list_users(
    request: Request,
    role: Optional[str] = None,
    search: Optional[str] = Query(None, alias="q"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    await require_admin(request)
    return await UserService.list_users(role=role, search=search, page=page, limit=limit)


@router.post("/customers/{customer_id}/broadcast")
async def broadcast_customer(request: Request, customer_id: str, body: BroadcastRequest):
    admin = await require_admin(request)
    result = await CustomerService(get_notifier(request.app)).broadcast(
        customer_id, body, admin, ip_address=client_ip(request)
    )
    return {"message": "Customer broadcast successfully", **result}
