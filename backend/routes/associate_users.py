from fastapi import APIRouter, Request, Query, status
from models import AssociateUserCreateRequest, LoginRequest, TokenResponse
from middleware import require_auth, require_user, client_ip
from services.link_service import LinkService, ASSOCIATE_LINKS_COLLECTION
from services.user_service import UserService
from utils.rate_limiter import rate_limiter
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/associate-user", tags=["associate-users"])


@router.post("/create", status_code=status.HTTP_201_CREATED)
async def create_associate_user(request: Request, body: AssociateUserCreateRequest):
    """The new user joins the creator's company."""
    creator = await require_user(request)
    associate = await UserService.create_associate(body, creator, ip_address=client_ip(request))
    return {"message": "Associate user created successfully", "associate": associate}


@router.post("/login", response_model=TokenResponse)
async def login_associate_user(request: Request, credentials: LoginRequest):
    await rate_limiter.enforce(request, "user-login", 10, 15)
    return await UserService.login_user(credentials, ip_address=client_ip(request))


@router.get("/all")
async def list_associate_users(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    principal = await require_auth(request)
    return await UserService.list_associates(principal, page=page, limit=limit)


@router.get("/generate-link")
async def generate_associate_link(request: Request):
    creator = await require_user(request)
    return await LinkService.generate_associate_link(creator)


@router.get("/register/{code}")
async def check_associate_link(request: Request, code: str):
    await rate_limiter.enforce(request, "associate-link", 20, 15)
    return await LinkService.check(ASSOCIATE_LINKS_COLLECTION, code)


@router.post("/register/{code}", status_code=status.HTTP_201_CREATED)
async def register_associate_from_link(request: Request, code: str, body: AssociateUserCreateRequest):
    await rate_limiter.enforce(request, "associate-link", 20, 15)
    associate = await LinkService.redeem_associate_link(code, body, ip_address=client_ip(request))
    return {"message": "Associate user registered successfully", "associate": associate}
