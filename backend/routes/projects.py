from fastapi import APIRouter, Request, Query, status
from models import ProjectCreateRequest
from middleware import require_admin, require_auth
from services.catalogue_service import ProjectService

router = APIRouter(prefix="/api/v1/projects", tags=["projects"])


@router.post("/create", status_code=status.HTTP_201_CREATED)
async def create_project(request: Request, body: ProjectCreateRequest):
    """Media URLs point at files uploaded elsewhere."""
    admin = await require_admin(request)
    project = await ProjectService.create(body, admin)
    return {"message": "Project created successfully", "project": project}


@router.get("")
async def list_projects(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    await require_auth(request)
    return await ProjectService.list_all(page=page, limit=limit)


@router.get("/{project_id}")
async def get_project(request: Request, project_id: str):
    await require_auth(request)
    return await ProjectService.require(project_id)
