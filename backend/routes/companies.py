from fastapi import APIRouter, Request, Query, status
from typing import Optional
from models import CompanyCreateRequest
from middleware import require_admin
from services.catalogue_service import CompanyService
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/company", tags=["companies"])


@router.post("/create", status_code=status.HTTP_201_CREATED)
async def create_company(request: Request, body: CompanyCreateRequest):
    admin = await require_admin(request)
    company = await CompanyService.create(body, admin)
    return {"message": "Company created successfully", "company": company}


@router.get("")
async def list_companies(
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    """Public: the registration form needs the company list."""
    return await CompanyService.list_all(search=search, page=page, limit=limit)


@router.get("/{company_id}")
async def get_company(company_id: str):
    return await CompanyService.require(company_id)


@router.delete("/{company_id}")
async def delete_company(request: Request, company_id: str):
    """Soft delete; existing users and leads keep their reference."""
    await require_admin(request)
    company = await CompanyService.soft_delete(company_id)
    return {"message": "Company deleted successfully", "company": company}
