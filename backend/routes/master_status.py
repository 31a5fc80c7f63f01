from fastapi import APIRouter, Request, status
from models import MasterStatusCreateRequest
from middleware import require_admin, require_auth
from services.catalogue_service import MasterStatusService

router = APIRouter(prefix="/api/v1/master-status", tags=["master-status"])


@router.post("/create", status_code=status.HTTP_201_CREATED)
async def create_status(request: Request, body: MasterStatusCreateRequest):
    admin = await require_admin(request)
    master_status = await MasterStatusService.create(body, admin)
    return {"message": "Status created successfully", "status": master_status}


@router.get("")
async def list_statuses(request: Request):
    await require_auth(request)
    statuses = await MasterStatusService.list_all()
    return {"statuses": statuses, "total": len(statuses)}


@router.patch("/{status_id}")
async def rename_status(request: Request, status_id: str, body: MasterStatusCreateRequest):
    """Leads already carrying the old name keep it."""
    await require_admin(request)
    master_status = await MasterStatusService.rename(status_id, body)
    return {"message": "Status updated successfully", "status": master_status}


@router.delete("/{status_id}")
async def delete_status(request: Request, status_id: str):
    await require_admin(request)
    master_status = await MasterStatusService.soft_delete(status_id)
    return {"message": "Status deleted successfully", "status": master_status}
