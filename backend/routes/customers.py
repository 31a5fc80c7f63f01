"""
Customer (lead) routes.

Authenticated endpoints drive the lead lifecycle; the two
/register/customer/{code} endpoints are public and rate limited.
Static paths are declared before /{customer_id} so they are not shadowed.
"""
from fastapi import APIRouter, Request, Query, status
from typing import Optional
from models import (
    CustomerCreateRequest,
    CustomerLinkRegistrationRequest,
    StatusUpdateRequest,
    FollowUpCreateRequest,
    NoteCreateRequest,
)
from middleware import require_auth, require_user, client_ip
from services.customer_service import CustomerService
from services.link_service import LinkService, CUSTOMER_LINKS_COLLECTION
from services.notification_service import get_notifier
from utils.rate_limiter import rate_limiter
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/customers", tags=["customers"])

REDEEM_MAX_ATTEMPTS = 20
REDEEM_WINDOW_MINUTES = 15


def _service(request: Request) -> CustomerService:
    return CustomerService(get_notifier(request.app))


@router.post("/create", status_code=status.HTTP_201_CREATED)
async def create_customer(request: Request, body: CustomerCreateRequest):
    principal = await require_auth(request)
    customer = await _service(request).create(body, principal, ip_address=client_ip(request))
    if not principal.is_admin:
        customer = {k: v for k, v in customer.items() if k != "createdBy"}
    return {"message": "Customer created successfully", "customer": customer}


@router.get("/all")
async def list_customers(
    request: Request,
    company_id: Optional[str] = None,
    status_name: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    principal = await require_auth(request)
    return await _service(request).list_customers(
        principal, company_id=company_id, status=status_name, page=page, limit=limit
    )


@router.get("/stats")
async def customer_stats(request: Request):
    principal = await require_auth(request)
    return await _service(request).stats(principal)


# ============================================================================
# CUSTOMER LINKS
# ============================================================================

@router.get("/generate-customer-link")
async def generate_customer_link(request: Request):
    """Channel partners share this link so a customer can register themselves."""
    principal = await require_user(request)
    return await LinkService.generate_customer_link(principal)


@router.get("/register/customer/{code}")
async def check_customer_link(request: Request, code: str):
    await rate_limiter.enforce(request, "customer-link", REDEEM_MAX_ATTEMPTS, REDEEM_WINDOW_MINUTES)
    return await LinkService.check(CUSTOMER_LINKS_COLLECTION, code)


@router.post("/register/customer/{code}", status_code=status.HTTP_201_CREATED)
async def register_customer_from_link(request: Request, code: str, body: CustomerLinkRegistrationRequest):
    await rate_limiter.enforce(request, "customer-link", REDEEM_MAX_ATTEMPTS, REDEEM_WINDOW_MINUTES)
    customer = await LinkService.redeem_customer_link(
        code, body, notifier=get_notifier(request.app), ip_address=client_ip(request)
    )
    return {"message": "Customer registered successfully", "customer": customer}


# ============================================================================
# SINGLE CUSTOMER
# ============================================================================

@router.get("/{customer_id}")
async def get_customer(request: Request, customer_id: str):
    principal = await require_auth(request)
    return await _service(request).get_customer(customer_id, principal)


@router.post("/{customer_id}/accept")
async def accept_customer(request: Request, customer_id: str):
    """Exactly one agent wins. Losers get 200 with accepted=false."""
    principal = await require_auth(request)
    result = await _service(request).accept(customer_id, principal, ip_address=client_ip(request))
    return {
        "accepted": result.accepted,
        "message": result.message,
        "accepted_by": result.accepted_by,
        "accepted_by_name": result.accepted_by_name,
        "customer": result.customer,
    }


@router.post("/{customer_id}/decline")
async def decline_customer(request: Request, customer_id: str):
    principal = await require_auth(request)
    customer = await _service(request).decline(customer_id, principal, ip_address=client_ip(request))
    return {"message": "Customer declined", "customer": customer}


@router.patch("/{customer_id}/status")
async def update_customer_status(request: Request, customer_id: str, body: StatusUpdateRequest):
    principal = await require_auth(request)
    customer = await _service(request).update_status(
        customer_id, body.status_id, principal, ip_address=client_ip(request)
    )
    return {"message": "Customer status updated successfully", "customer": customer}


@router.get("/{customer_id}/status-history")
async def customer_status_history(request: Request, customer_id: str):
    principal = await require_auth(request)
    return await _service(request).status_history(customer_id, principal)


@router.post("/{customer_id}/follow-ups", status_code=status.HTTP_201_CREATED)
async def add_follow_up(request: Request, customer_id: str, body: FollowUpCreateRequest):
    principal = await require_auth(request)
    follow_up = await _service(request).add_follow_up(customer_id, body, principal)
    return {"message": "Follow-up added successfully", "follow_up": follow_up}


@router.get("/{customer_id}/follow-ups")
async def list_follow_ups(request: Request, customer_id: str):
    principal = await require_auth(request)
    follow_ups = await _service(request).list_follow_ups(customer_id, principal)
    return {"customer_id": customer_id, "follow_ups": follow_ups}


@router.post("/{customer_id}/notes", status_code=status.HTTP_201_CREATED)
async def add_note(request: Request, customer_id: str, body: NoteCreateRequest):
    principal = await require_auth(request)
    note = await _service(request).add_note(customer_id, body, principal)
    return {"message": "Note added successfully", "note": note}


@router.get("/{customer_id}/notes")
async def list_notes(request: Request, customer_id: str):
    principal = await require_auth(request)
    notes = await _service(request).list_notes(customer_id, principal)
    return {"customer_id": customer_id, "notes": notes}
