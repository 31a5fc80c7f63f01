"""
Catalogue Service

Admin-curated reference data the lead engine depends on:
- Companies (tenants), with sequential codes C-101, C-102, ...
- Projects (what a lead is interested in), with codes P-101, ...
- Master statuses (the only valid lead status names)

Companies and master statuses are soft-deleted, never removed.
"""
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import CompanyCreateRequest, ProjectCreateRequest, MasterStatusCreateRequest
from services.principal_service import Principal
from utils.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

COMPANIES_COLLECTION = "companies"
PROJECTS_COLLECTION = "projects"
MASTER_STATUSES_COLLECTION = "master_statuses"

COMPANY_CODE_PREFIX = "C"
PROJECT_CODE_PREFIX = "P"
FIRST_CODE_NUMBER = 101

# Concurrent creators can race for the same next code
CODE_ALLOCATION_ATTEMPTS = 5


def _next_code(latest_code: Optional[str], prefix: str) -> str:
    """C-101 -> C-102; anything unparseable restarts the sequence."""
    if latest_code:
        match = re.match(rf"^{prefix}-(\d+)$", latest_code)
        if match:
            return f"{prefix}-{int(match.group(1)) + 1}"
    return f"{prefix}-{FIRST_CODE_NUMBER}"


async def _insert_with_code(collection: str, code_field: str, prefix: str, doc: Dict[str, Any]) -> Dict[str, Any]:
    """Insert `doc` under the next free sequential code, retrying on code collisions."""
    db = database.get_db()
    for _ in range(CODE_ALLOCATION_ATTEMPTS):
        latest = await db[collection].find_one(
            {code_field: {"$exists": True}},
            {"_id": 0, code_field: 1},
            sort=[("created_at", -1)],
        )
        doc[code_field] = _next_code(latest.get(code_field) if latest else None, prefix)
        try:
            await db[collection].insert_one(doc)
        except DuplicateKeyError as e:
            if code_field in str(e):
                doc.pop("_id", None)
                continue
            raise
        doc.pop("_id", None)
        return doc
    raise ConflictError(f"Could not allocate a unique {code_field}, please retry")


class CompanyService:

    @staticmethod
    async def create(request: CompanyCreateRequest, admin: Principal) -> Dict[str, Any]:
        db = database.get_db()
        name = request.company_name.strip()

        existing = await db[COMPANIES_COLLECTION].find_one(
            {"company_name": name, "deleted": False}, {"_id": 0, "company_id": 1}
        )
        if existing:
            raise ConflictError("Company already exists")

        now = datetime.now(timezone.utc)
        doc = {
            "company_id": str(uuid.uuid4()),
            "company_name": name,
            "created_by": admin.id,
            "deleted": False,
            "deleted_at": None,
            "created_at": now,
            "updated_at": now,
        }
        try:
            company = await _insert_with_code(COMPANIES_COLLECTION, "company_code", COMPANY_CODE_PREFIX, doc)
        except DuplicateKeyError:
            raise ConflictError("Company already exists")

        logger.info(f"Company created: {company['company_code']} ({name})")
        return company

    @staticmethod
    async def list_all(search: Optional[str] = None, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        db = database.get_db()
        query: Dict[str, Any] = {"deleted": False}
        if search:
            pattern = re.escape(search.strip())
            query["$or"] = [
                {"company_name": {"$regex": pattern, "$options": "i"}},
                {"company_code": {"$regex": pattern, "$options": "i"}},
                {"company_id": search.strip()},
            ]

        skip = (page - 1) * limit
        total = await db[COMPANIES_COLLECTION].count_documents(query)
        companies = await db[COMPANIES_COLLECTION].find(query, {"_id": 0}).sort(
            "created_at", -1
        ).skip(skip).limit(limit).to_list(length=limit)

        return {
            "companies": companies,
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": (total + limit - 1) // limit if limit else 0,
        }

    @staticmethod
    async def get(company_id: str) -> Optional[Dict[str, Any]]:
        """Active (non-deleted) company or None."""
        if not company_id:
            return None
        db = database.get_db()
        return await db[COMPANIES_COLLECTION].find_one(
            {"company_id": company_id, "deleted": False}, {"_id": 0}
        )

    @staticmethod
    async def require(company_id: str) -> Dict[str, Any]:
        company = await CompanyService.get(company_id)
        if not company:
            raise NotFoundError("Company not found")
        return company

    @staticmethod
    async def soft_delete(company_id: str) -> Dict[str, Any]:
        db = database.get_db()
        now = datetime.now(timezone.utc)
        company = await db[COMPANIES_COLLECTION].find_one_and_update(
            {"company_id": company_id, "deleted": False},
            {"$set": {"deleted": True, "deleted_at": now, "updated_at": now}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not company:
            raise NotFoundError("Company not found")
        logger.info(f"Company soft-deleted: {company_id}")
        return company


class ProjectService:

    @staticmethod
    async def create(request: ProjectCreateRequest, admin: Principal) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        doc = {
            "project_id": str(uuid.uuid4()),
            "project_title": request.project_title.strip(),
            "description": request.description,
            "location": request.location,
            "min_price": request.min_price,
            "max_price": request.max_price,
            "images": request.images,
            "brochure": request.brochure,
            "created_by": admin.id,
            "created_by_role": admin.role,
            "created_at": now,
            "updated_at": now,
        }
        project = await _insert_with_code(PROJECTS_COLLECTION, "project_code", PROJECT_CODE_PREFIX, doc)
        logger.info(f"Project created: {project['project_code']} ({project['project_title']})")
        return project

    @staticmethod
    async def list_all(page: int = 1, limit: int = 10) -> Dict[str, Any]:
        db = database.get_db()
        skip = (page - 1) * limit
        total = await db[PROJECTS_COLLECTION].count_documents({})
        projects = await db[PROJECTS_COLLECTION].find({}, {"_id": 0}).sort(
            "created_at", -1
        ).skip(skip).limit(limit).to_list(length=limit)
        return {"projects": projects, "total": total, "page": page, "limit": limit}

    @staticmethod
    async def get(project_id: str) -> Optional[Dict[str, Any]]:
        if not project_id:
            return None
        db = database.get_db()
        return await db[PROJECTS_COLLECTION].find_one({"project_id": project_id}, {"_id": 0})

    @staticmethod
    async def require(project_id: str) -> Dict[str, Any]:
        project = await ProjectService.get(project_id)
        if not project:
            raise NotFoundError("Project not found")
        return project


class MasterStatusService:
    """The admin-curated list of lead status names."""

    @staticmethod
    async def create(request: MasterStatusCreateRequest, admin: Principal) -> Dict[str, Any]:
        db = database.get_db()
        now = datetime.now(timezone.utc)
        doc = {
            "status_id": str(uuid.uuid4()),
            "name": request.name,
            "created_by": admin.id,
            "deleted": False,
            "deleted_at": None,
            "created_at": now,
            "updated_at": now,
        }
        try:
            await db[MASTER_STATUSES_COLLECTION].insert_one(doc)
        except DuplicateKeyError:
            raise ConflictError(f"Status '{request.name}' already exists")
        doc.pop("_id", None)
        logger.info(f"Master status created: {request.name}")
        return doc

    @staticmethod
    async def list_all() -> List[Dict[str, Any]]:
        db = database.get_db()
        return await db[MASTER_STATUSES_COLLECTION].find(
            {"deleted": False}, {"_id": 0}
        ).sort("created_at", 1).to_list(length=None)

    @staticmethod
    async def list_names() -> List[str]:
        return [status["name"] for status in await MasterStatusService.list_all()]

    @staticmethod
    async def rename(status_id: str, request: MasterStatusCreateRequest) -> Dict[str, Any]:
        """Existing leads keep the name they were given; only future updates see the new one."""
        db = database.get_db()
        try:
            status = await db[MASTER_STATUSES_COLLECTION].find_one_and_update(
                {"status_id": status_id, "deleted": False},
                {"$set": {"name": request.name, "updated_at": datetime.now(timezone.utc)}},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise ConflictError(f"Status '{request.name}' already exists")
        if not status:
            raise NotFoundError("Status not found")
        return status

    @staticmethod
    async def soft_delete(status_id: str) -> Dict[str, Any]:
        db = database.get_db()
        now = datetime.now(timezone.utc)
        status = await db[MASTER_STATUSES_COLLECTION].find_one_and_update(
            {"status_id": status_id, "deleted": False},
            {"$set": {"deleted": True, "deleted_at": now, "updated_at": now}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not status:
            raise NotFoundError("Status not found")
        logger.info(f"Master status soft-deleted: {status['name']}")
        return status

    @staticmethod
    async def resolve_name(status_id: str) -> str:
        """Current name of a live status, else 'Invalid Status ID'."""
        db = database.get_db()
        status = await db[MASTER_STATUSES_COLLECTION].find_one(
            {"status_id": status_id, "deleted": False}, {"_id": 0, "name": 1}
        )
        if not status:
            raise ValidationError("Invalid Status ID")
        return status["name"]
