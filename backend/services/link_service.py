"""
One-time registration links.

A link is a short random code bound to its creator. Redeeming it creates
either a customer lead (customer links, channel partners only) or an
associate user (associate links), attributed to the creator's company.

Redemption order:
  claim (atomic, rejects expired/claimed codes) -> resolve creator ->
  create the entity -> delete the code.
If creation fails the claim is released so the link stays usable.
A code is never redeemable twice: the second request cannot win the claim.
"""
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from pymongo import ReturnDocument

from auth import generate_link_code
from database import database
from models import (
    AuditAction,
    LinkPurpose,
    UserRole,
    AssociateUserCreateRequest,
    CustomerCreateRequest,
    CustomerLinkRegistrationRequest,
)
from services.customer_service import CustomerService
from services.notification_service import NotificationService
from services.principal_service import Principal, PrincipalResolver
from services.user_service import UserService
from utils.audit import create_audit_log
from utils.errors import AuthorizationError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

CUSTOMER_LINKS_COLLECTION = "customer_links"
ASSOCIATE_LINKS_COLLECTION = "associate_links"

LINK_TTL_DAYS = int(os.getenv("LINK_TTL_DAYS", "7"))

INVALID_CUSTOMER_LINK = "Invalid or expired customer link"
INVALID_ASSOCIATE_LINK = "Invalid or expired associate link"

CUSTOMER_LINK_PATH = "/api/v1/customers/register/customer/{code}"
ASSOCIATE_LINK_PATH = "/api/v1/associate-user/register/{code}"


def _live_filter(code: str, now: datetime) -> Dict[str, Any]:
    return {"code": code, "expires_at": {"$gt": now}, "claimed_at": None}


class LinkService:

    @staticmethod
    async def _generate(collection: str, purpose: LinkPurpose, creator: Principal, path: str) -> Dict[str, Any]:
        db = database.get_db()
        now = datetime.now(timezone.utc)
        doc = {
            "code": generate_link_code(),
            "purpose": purpose.value,
            "createdBy": creator.actor_ref(),
            "company_id": creator.company_id,
            "claimed_at": None,
            "created_at": now,
            "expires_at": now + timedelta(days=LINK_TTL_DAYS),
        }
        await db[collection].insert_one(doc)

        await create_audit_log(
            action=AuditAction.LINK_GENERATED,
            actor_role=UserRole(creator.role),
            actor_id=creator.id,
            company_id=creator.company_id,
            resource_type=collection,
            resource_id=doc["code"],
            metadata={"purpose": purpose.value},
        )
        logger.info(f"{purpose.value} link generated by {creator.id}, expires {doc['expires_at'].isoformat()}")
        return {
            "code": doc["code"],
            "path": path.format(code=doc["code"]),
            "expires_at": doc["expires_at"],
        }

    @staticmethod
    async def generate_customer_link(creator: Principal) -> Dict[str, Any]:
        if not creator.is_channel_partner:
            raise AuthorizationError("Only channel partners can generate customer links")
        if not creator.company_id:
            raise ValidationError("Channel partner has no company assigned")
        return await LinkService._generate(
            CUSTOMER_LINKS_COLLECTION, LinkPurpose.CUSTOMER_REGISTRATION, creator, CUSTOMER_LINK_PATH
        )

    @staticmethod
    async def generate_associate_link(creator: Principal) -> Dict[str, Any]:
        if creator.is_admin:
            raise AuthorizationError("Admins cannot generate associate links")
        if not creator.company_id:
            raise ValidationError("Creator has no company assigned")
        return await LinkService._generate(
            ASSOCIATE_LINKS_COLLECTION, LinkPurpose.ASSOCIATE_REGISTRATION, creator, ASSOCIATE_LINK_PATH
        )

    @staticmethod
    async def check(collection: str, code: str) -> Dict[str, Any]:
        """Public validity check; does not claim the code."""
        db = database.get_db()
        link = await db[collection].find_one(
            _live_filter(code, datetime.now(timezone.utc)), {"_id": 0}
        )
        if not link:
            raise NotFoundError(INVALID_CUSTOMER_LINK if collection == CUSTOMER_LINKS_COLLECTION else INVALID_ASSOCIATE_LINK)
        return {
            "valid": True,
            "purpose": link.get("purpose"),
            "created_by": (link.get("createdBy") or {}).get("name"),
            "expires_at": link["expires_at"],
        }

    @staticmethod
    async def _claim(collection: str, code: str, invalid_message: str) -> Dict[str, Any]:
        """Atomically take the code; expired, claimed and deleted codes all fail the same way."""
        db = database.get_db()
        now = datetime.now(timezone.utc)
        link = await db[collection].find_one_and_update(
            _live_filter(code, now),
            {"$set": {"claimed_at": now}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not link:
            raise NotFoundError(invalid_message)
        return link

    @staticmethod
    async def _release(collection: str, code: str):
        db = database.get_db()
        await db[collection].update_one({"code": code}, {"$set": {"claimed_at": None}})

    @staticmethod
    async def _consume(collection: str, code: str):
        db = database.get_db()
        await db[collection].delete_one({"code": code})

    @staticmethod
    async def _resolve_creator(link: Dict[str, Any]) -> Principal:
        creator = await PrincipalResolver.get_by_id((link.get("createdBy") or {}).get("id"))
        if not creator:
            raise NotFoundError("Link creator no longer exists")
        if not creator.is_active:
            raise AuthorizationError("Link creator account is inactive")
        return creator

    @staticmethod
    async def redeem_customer_link(
        code: str,
        request: CustomerLinkRegistrationRequest,
        notifier: Optional[NotificationService] = None,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        link = await LinkService._claim(CUSTOMER_LINKS_COLLECTION, code, INVALID_CUSTOMER_LINK)
        try:
            creator = await LinkService._resolve_creator(link)
            customer = await CustomerService(notifier).create(
                CustomerCreateRequest(**request.model_dump(), company_id=creator.company_id),
                creator,
                ip_address=ip_address,
            )
        except Exception:
            await LinkService._release(CUSTOMER_LINKS_COLLECTION, code)
            raise

        await LinkService._consume(CUSTOMER_LINKS_COLLECTION, code)
        await create_audit_log(
            action=AuditAction.LINK_REDEEMED,
            actor_role=UserRole(creator.role),
            actor_id=creator.id,
            company_id=creator.company_id,
            resource_type=CUSTOMER_LINKS_COLLECTION,
            resource_id=code,
            metadata={"customer_id": customer["customer_id"]},
            ip_address=ip_address,
        )
        logger.info(f"Customer link {code} redeemed, customer {customer['customer_id']}")
        return {k: v for k, v in customer.items() if k != "createdBy"}

    @staticmethod
    async def redeem_associate_link(
        code: str,
        request: AssociateUserCreateRequest,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        link = await LinkService._claim(ASSOCIATE_LINKS_COLLECTION, code, INVALID_ASSOCIATE_LINK)
        try:
            creator = await LinkService._resolve_creator(link)
            associate = await UserService.create_associate(request, creator, ip_address=ip_address)
        except Exception:
            await LinkService._release(ASSOCIATE_LINKS_COLLECTION, code)
            raise

        await LinkService._consume(ASSOCIATE_LINKS_COLLECTION, code)
        await create_audit_log(
            action=AuditAction.LINK_REDEEMED,
            actor_role=UserRole(creator.role),
            actor_id=creator.id,
            company_id=creator.company_id,
            resource_type=ASSOCIATE_LINKS_COLLECTION,
            resource_id=code,
            metadata={"associate_user_id": associate["user_id"]},
            ip_address=ip_address,
        )
        logger.info(f"Associate link {code} redeemed, user {associate['user_id']}")
        return associate

    @staticmethod
    async def purge_expired() -> Dict[str, int]:
        db = database.get_db()
        now = datetime.now(timezone.utc)
        removed = {}
        for collection in (CUSTOMER_LINKS_COLLECTION, ASSOCIATE_LINKS_COLLECTION):
            result = await db[collection].delete_many({"expires_at": {"$lte": now}})
            removed[collection] = result.deleted_count
        return removed
