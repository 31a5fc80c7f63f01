"""
Customer (Lead) Lifecycle Service

Owns every state transition of a customer lead:
- create (broadcast to the company's active agents at creation time)
- admin-directed broadcast (additive union into broadcasted_to)
- accept (exclusive, single winner)
- decline (non-exclusive bookkeeping)
- status update (MasterStatus-validated, append-only history)
- status history read (with the synthesized "New" entry)
- stats, follow-ups and notes

Every mutation of the lead document is a single conditional
find_one_and_update against current stored state. When the guard does not
match, the document is re-read only to choose the right error.
Notifications are dispatched after the write commits and never affect the result.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    AuditAction,
    UserRole,
    BroadcastRequest,
    CustomerCreateRequest,
    FollowUpCreateRequest,
    NoteCreateRequest,
    DEFAULT_CUSTOMER_STATUS,
    StatusHistoryEntry,
)
from services.catalogue_service import CompanyService, ProjectService, MasterStatusService
from services.notification_service import NotificationService
from services.principal_service import Principal, PrincipalResolver, UNKNOWN_USER_NAME
from utils.audit import create_audit_log
from utils.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

CUSTOMERS_COLLECTION = "customers"
FOLLOW_UPS_COLLECTION = "follow_ups"
NOTES_COLLECTION = "notes"

CREATOR_ROLES = {UserRole.AGENT.value, UserRole.CHANNEL_PARTNER.value, UserRole.ADMIN.value}

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class AcceptResult:
    """Outcome of an accept attempt. Losing the race is a normal result, not an error."""
    accepted: bool
    customer: Dict[str, Any]
    accepted_by: Optional[str] = None
    accepted_by_name: Optional[str] = None

    @property
    def message(self) -> str:
        if self.accepted:
            return "Customer accepted successfully"
        return f"Customer already accepted by {self.accepted_by_name or UNKNOWN_USER_NAME}"


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except ValueError:
            return _EPOCH
    return _EPOCH


def _creator_id(customer: Dict[str, Any]) -> Optional[str]:
    return (customer.get("createdBy") or {}).get("id")


def can_read(customer: Dict[str, Any], principal: Principal) -> bool:
    """Admins see everything, channel partners their own, agents what they created, took or were offered."""
    if principal.is_admin:
        return True
    if _creator_id(customer) == principal.id:
        return True
    if principal.is_agent:
        return customer.get("acceptedBy") == principal.id or principal.id in (customer.get("broadcasted_to") or [])
    return False


def status_write_scope(principal: Principal) -> Dict[str, Any]:
    """Filter fragment restricting which leads a principal may change the status of."""
    if principal.is_admin:
        return {}
    if principal.is_channel_partner:
        return {"createdBy.id": principal.id}
    if principal.is_agent:
        return {"$or": [{"acceptedBy": principal.id}, {"broadcasted_to": principal.id}]}
    return {"customer_id": {"$exists": False}}


def public_view(customer: Dict[str, Any], principal: Principal) -> Dict[str, Any]:
    """Non-admins never see the creator reference."""
    if principal.is_admin:
        return customer
    return {k: v for k, v in customer.items() if k != "createdBy"}


class CustomerService:
    """Lead lifecycle engine. One instance per request, sharing the process notifier."""

    def __init__(self, notifier: Optional[NotificationService] = None):
        self.notifier = notifier

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        request: CustomerCreateRequest,
        actor: Principal,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        if actor.role not in CREATOR_ROLES:
            raise AuthorizationError("You are not allowed to create customers")

        if actor.is_agent:
            company_id = actor.company_id
            if not company_id:
                raise ValidationError("Agent has no company assigned")
        else:
            company_id = request.company_id
            if not company_id:
                raise ValidationError("company_id is required")

        await CompanyService.require(company_id)
        await ProjectService.require(request.project_id)

        db = database.get_db()
        existing = await db[CUSTOMERS_COLLECTION].find_one(
            {"$or": [{"phone_number": request.phone_number}, {"email": request.email}]},
            {"_id": 0, "phone_number": 1, "email": 1},
        )
        if existing:
            if existing.get("phone_number") == request.phone_number:
                raise ConflictError("Customer with this phone number already exists")
            raise ConflictError("Customer with this email already exists")

        # Snapshot of who may take the lead, fixed at creation time
        broadcasted_to = await PrincipalResolver.find_active_agent_ids(company_id)

        now = datetime.now(timezone.utc)
        customer = {
            "customer_id": str(uuid.uuid4()),
            "full_name": request.full_name.strip(),
            "phone_number": request.phone_number,
            "personal_phone_number": request.personal_phone_number,
            "email": request.email,
            "project_id": request.project_id,
            "company_id": company_id,
            "status": DEFAULT_CUSTOMER_STATUS,
            "status_history": [],
            "isAccepted": False,
            "acceptedBy": None,
            "acceptedAt": None,
            "declinedBy": [],
            "declinedAt": None,
            "is_broadcasted": True,
            "broadcasted_to": broadcasted_to,
            "createdBy": actor.actor_ref(),
            "created_at": now,
            "updated_at": now,
        }

        try:
            await db[CUSTOMERS_COLLECTION].insert_one(customer)
        except DuplicateKeyError:
            raise ConflictError("Customer with this phone number or email already exists")
        customer.pop("_id", None)

        await create_audit_log(
            action=AuditAction.CUSTOMER_CREATED,
            actor_role=UserRole(actor.role),
            actor_id=actor.id,
            company_id=company_id,
            resource_type="customer",
            resource_id=customer["customer_id"],
            metadata={"broadcasted_to_count": len(broadcasted_to), "project_id": request.project_id},
            ip_address=ip_address,
        )
        logger.info(
            f"Customer created: {customer['customer_id']} by {actor.role} {actor.id} "
            f"(broadcast to {len(broadcasted_to)} agents)"
        )

        if self.notifier:
            self.notifier.lead_created(customer)
        return customer

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_customers(
        self,
        principal: Principal,
        company_id: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Dict[str, Any]:
        db = database.get_db()

        if principal.is_admin:
            query: Dict[str, Any] = {}
            if company_id:
                query["company_id"] = company_id
        elif principal.is_channel_partner:
            query = {"createdBy.id": principal.id}
        else:
            query = {"$or": [
                {"createdBy.id": principal.id},
                {"acceptedBy": principal.id},
                {"broadcasted_to": principal.id},
            ]}
        if status:
            query["status"] = status

        projection = {"_id": 0}
        if not principal.is_admin:
            projection["createdBy"] = 0

        skip = (page - 1) * limit
        total = await db[CUSTOMERS_COLLECTION].count_documents(query)
        customers = await db[CUSTOMERS_COLLECTION].find(query, projection).sort(
            "created_at", -1
        ).skip(skip).limit(limit).to_list(length=limit)

        return {
            "customers": customers,
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": (total + limit - 1) // limit if limit else 0,
        }

    async def _load(self, customer_id: str) -> Dict[str, Any]:
        db = database.get_db()
        customer = await db[CUSTOMERS_COLLECTION].find_one({"customer_id": customer_id}, {"_id": 0})
        if not customer:
            raise NotFoundError("Customer not found")
        return customer

    async def _load_readable(self, customer_id: str, principal: Principal) -> Dict[str, Any]:
        customer = await self._load(customer_id)
        if not can_read(customer, principal):
            raise AuthorizationError("You do not have access to this customer")
        return customer

    async def get_customer(self, customer_id: str, principal: Principal) -> Dict[str, Any]:
        customer = await self._load_readable(customer_id, principal)
        project = await ProjectService.get(customer.get("project_id"))
        customer["project"] = (
            {"project_title": project.get("project_title"), "location": project.get("location")}
            if project else None
        )
        return public_view(customer, principal)

    # ------------------------------------------------------------------
    # Broadcast
    # ------------------------------------------------------------------

    async def broadcast(
        self,
        customer_id: str,
        request: BroadcastRequest,
        admin: Principal,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not admin.is_admin:
            raise AuthorizationError("Only admins can broadcast customers")

        await CompanyService.require(request.company_id)

        if request.agents == "all":
            agent_ids = await PrincipalResolver.find_active_agent_ids(request.company_id)
            if not agent_ids:
                raise NotFoundError("No active agents found for this company")
        else:
            agent = await PrincipalResolver.get_active_agent(request.company_id, request.agents)
            if not agent:
                raise ValidationError("Agent is not an active agent of this company")
            agent_ids = [agent.id]

        db = database.get_db()
        before = await db[CUSTOMERS_COLLECTION].find_one_and_update(
            {"customer_id": customer_id, "company_id": request.company_id},
            {
                "$addToSet": {"broadcasted_to": {"$each": agent_ids}},
                "$set": {"is_broadcasted": True, "updated_at": datetime.now(timezone.utc)},
            },
            projection={"_id": 0, "broadcasted_to": 1},
            return_document=ReturnDocument.BEFORE,
        )
        if before is None:
            await self._load(customer_id)
            raise ValidationError("Customer does not belong to this company")

        already = set(before.get("broadcasted_to") or [])
        newly_targeted = [agent_id for agent_id in agent_ids if agent_id not in already]
        broadcasted_to = list(before.get("broadcasted_to") or []) + newly_targeted

        await create_audit_log(
            action=AuditAction.CUSTOMER_BROADCASTED,
            actor_role=UserRole.ADMIN,
            actor_id=admin.id,
            company_id=request.company_id,
            resource_type="customer",
            resource_id=customer_id,
            metadata={"agents": request.agents, "newly_targeted": newly_targeted},
            ip_address=ip_address,
        )
        logger.info(f"Customer {customer_id} broadcast to {len(newly_targeted)} new agents")

        if self.notifier and newly_targeted:
            self.notifier.lead_broadcasted(customer_id, newly_targeted, admin.name)

        return {
            "customer_id": customer_id,
            "broadcasted_to": broadcasted_to,
            "newly_broadcasted": newly_targeted,
        }

    # ------------------------------------------------------------------
    # Accept / Decline
    # ------------------------------------------------------------------

    async def accept(self, customer_id: str, agent: Principal, ip_address: Optional[str] = None) -> AcceptResult:
        """Exclusive claim: the write only matches while isAccepted is still false."""
        if not agent.is_agent:
            raise AuthorizationError("Only agents can accept customers")
        if not agent.company_id:
            raise AuthorizationError("Agent has no company assigned")

        db = database.get_db()
        now = datetime.now(timezone.utc)
        customer = await db[CUSTOMERS_COLLECTION].find_one_and_update(
            {"customer_id": customer_id, "company_id": agent.company_id, "isAccepted": False},
            {"$set": {
                "isAccepted": True,
                "acceptedBy": agent.id,
                "acceptedAt": now,
                "updated_at": now,
            }},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

        if customer is not None:
            await create_audit_log(
                action=AuditAction.CUSTOMER_ACCEPTED,
                actor_role=UserRole.AGENT,
                actor_id=agent.id,
                company_id=agent.company_id,
                resource_type="customer",
                resource_id=customer_id,
                ip_address=ip_address,
            )
            logger.info(f"Customer {customer_id} accepted by agent {agent.id}")
            if self.notifier:
                self.notifier.lead_accepted(customer, agent.id, agent.name)
            return AcceptResult(
                accepted=True,
                customer=public_view(customer, agent),
                accepted_by=agent.id,
                accepted_by_name=agent.name,
            )

        current = await self._load(customer_id)
        if not current.get("company_id"):
            raise AuthorizationError("Customer has no company assigned")
        if current["company_id"] != agent.company_id:
            raise AuthorizationError("You can only accept customers from your company")
        if not current.get("isAccepted"):
            # Guard missed but the lead is still open; nothing else can produce this
            raise ConflictError("Customer could not be accepted, please retry")

        winner_id = current.get("acceptedBy")
        names = await PrincipalResolver.display_names([winner_id])
        winner_name = names.get(winner_id, UNKNOWN_USER_NAME)

        await create_audit_log(
            action=AuditAction.CUSTOMER_ACCEPT_LOST_RACE,
            actor_role=UserRole.AGENT,
            actor_id=agent.id,
            company_id=agent.company_id,
            resource_type="customer",
            resource_id=customer_id,
            metadata={"accepted_by": winner_id},
            ip_address=ip_address,
        )
        logger.info(f"Agent {agent.id} lost accept on {customer_id}, already taken by {winner_id}")
        return AcceptResult(
            accepted=False,
            customer=public_view(current, agent),
            accepted_by=winner_id,
            accepted_by_name=winner_name,
        )

    async def decline(self, customer_id: str, agent: Principal, ip_address: Optional[str] = None) -> Dict[str, Any]:
        """Record the decline; business status and other agents' chances are untouched."""
        if not agent.is_agent:
            raise AuthorizationError("Only agents can decline customers")

        db = database.get_db()
        now = datetime.now(timezone.utc)
        customer = await db[CUSTOMERS_COLLECTION].find_one_and_update(
            {"customer_id": customer_id, "company_id": agent.company_id, "isAccepted": False},
            {
                "$addToSet": {"declinedBy": agent.id},
                "$set": {"declinedAt": now, "updated_at": now},
            },
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

        if customer is None:
            current = await self._load(customer_id)
            if current.get("company_id") != agent.company_id:
                raise AuthorizationError("You can only decline customers from your company")
            raise ConflictError("Customer already accepted and can no longer be declined")

        await create_audit_log(
            action=AuditAction.CUSTOMER_DECLINED,
            actor_role=UserRole.AGENT,
            actor_id=agent.id,
            company_id=agent.company_id,
            resource_type="customer",
            resource_id=customer_id,
            ip_address=ip_address,
        )
        logger.info(f"Customer {customer_id} declined by agent {agent.id}")

        if self.notifier:
            self.notifier.lead_declined(customer, agent.id, agent.name)
        return public_view(customer, agent)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def update_status(
        self,
        customer_id: str,
        status_id: str,
        actor: Principal,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Set the lead's status to the current name of a live MasterStatus and append
        one history entry in a single update. Entry timestamps use the same
        application clock as created_at, so the creation entry always sorts first.
        """
        status_name = await MasterStatusService.resolve_name(status_id)

        now = datetime.now(timezone.utc)
        entry = StatusHistoryEntry(
            actor_id=actor.id,
            actor_name=actor.name,
            actor_role=actor.role,
            status=status_name,
            timestamp=now,
        ).model_dump()

        db = database.get_db()
        before = await db[CUSTOMERS_COLLECTION].find_one_and_update(
            {"customer_id": customer_id, **status_write_scope(actor)},
            {
                "$set": {"status": status_name, "updated_at": now},
                "$push": {"status_history": entry},
            },
            projection={"_id": 0},
            return_document=ReturnDocument.BEFORE,
        )
        if before is None:
            await self._load(customer_id)
            raise AuthorizationError("You are not allowed to update this customer's status")

        previous_status = before.get("status")
        customer = {
            **before,
            "status": status_name,
            "updated_at": now,
            "status_history": list(before.get("status_history") or []) + [entry],
        }
        await create_audit_log(
            action=AuditAction.CUSTOMER_STATUS_UPDATED,
            actor_role=UserRole(actor.role),
            actor_id=actor.id,
            company_id=customer.get("company_id"),
            resource_type="customer",
            resource_id=customer_id,
            before_state={"status": previous_status},
            after_state={"status": status_name},
            ip_address=ip_address,
        )
        logger.info(f"Customer {customer_id} status {previous_status} -> {status_name} by {actor.role} {actor.id}")

        if self.notifier:
            self.notifier.lead_status_changed(customer, actor.actor_ref())
        return public_view(customer, actor)

    async def status_history(self, customer_id: str, principal: Principal) -> Dict[str, Any]:
        """
        Full lifecycle view, oldest first, always starting with the "New" entry at
        creation. Stored entries are kept as they are; the creation entry is
        synthesized unless a stored "New" already sits at or before created_at.
        Actor names resolve to current display names. Nothing is written back.
        """
        customer = await self._load_readable(customer_id, principal)
        created_at = _as_datetime(customer.get("created_at"))

        # Stable: entries sharing a timestamp keep append order
        stored = sorted(
            customer.get("status_history") or [],
            key=lambda e: _as_datetime(e.get("timestamp")),
        )
        starts_at_creation = (
            bool(stored)
            and stored[0].get("status") == DEFAULT_CUSTOMER_STATUS
            and _as_datetime(stored[0].get("timestamp")) <= created_at
        )
        if not starts_at_creation:
            creator = customer.get("createdBy") or {}
            stored.insert(0, {
                "actor_id": creator.get("id"),
                "actor_role": creator.get("role"),
                "status": DEFAULT_CUSTOMER_STATUS,
                "timestamp": created_at,
            })

        names = await PrincipalResolver.display_names(e.get("actor_id") for e in stored)
        history = [
            StatusHistoryEntry(
                actor_id=e.get("actor_id"),
                actor_name=names.get(e.get("actor_id"), UNKNOWN_USER_NAME),
                actor_role=e.get("actor_role"),
                status=e.get("status") or DEFAULT_CUSTOMER_STATUS,
                timestamp=_as_datetime(e.get("timestamp")),
            ).model_dump()
            for e in stored
        ]

        return {
            "customer_id": customer_id,
            "current_status": customer.get("status"),
            "history": history,
        }

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def stats(self, principal: Principal) -> Dict[str, Any]:
        """Per-status counts, seeded with every live MasterStatus at zero."""
        if principal.is_channel_partner:
            match = {"createdBy.id": principal.id}
        elif principal.is_agent:
            match = {"acceptedBy": principal.id}
        else:
            match = {}

        db = database.get_db()
        rows = await db[CUSTOMERS_COLLECTION].aggregate([
            {"$match": match},
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ]).to_list(length=None)

        status_counts: Dict[str, int] = {name: 0 for name in await MasterStatusService.list_names()}
        total = 0
        for row in rows:
            name = row["_id"] or DEFAULT_CUSTOMER_STATUS
            status_counts[name] = status_counts.get(name, 0) + row["count"]
            total += row["count"]

        result: Dict[str, Any] = {"total": total, "status_counts": status_counts}
        if principal.is_agent:
            result["pending_count"] = await db[CUSTOMERS_COLLECTION].count_documents({
                "broadcasted_to": principal.id,
                "isAccepted": False,
                "declinedBy": {"$ne": principal.id},
            })
        return result

    # ------------------------------------------------------------------
    # Follow-ups / Notes
    # ------------------------------------------------------------------

    async def _append_entry(self, collection: str, field: str, customer_id: str, entry: Dict[str, Any]):
        """Push onto the customer's single follow-up/note document, creating it on first write."""
        db = database.get_db()
        now = datetime.now(timezone.utc)
        update = {
            "$push": {field: entry},
            "$set": {"updated_at": now},
            "$setOnInsert": {"customer_id": customer_id, "created_at": now},
        }
        try:
            await db[collection].update_one({"customer_id": customer_id}, update, upsert=True)
        except DuplicateKeyError:
            # Lost the creation race; the document exists now
            await db[collection].update_one({"customer_id": customer_id}, update)

    async def _list_entries(self, collection: str, field: str, customer_id: str) -> List[Dict[str, Any]]:
        db = database.get_db()
        doc = await db[collection].find_one({"customer_id": customer_id}, {"_id": 0, field: 1})
        return (doc or {}).get(field, [])

    async def add_follow_up(
        self,
        customer_id: str,
        request: FollowUpCreateRequest,
        principal: Principal,
    ) -> Dict[str, Any]:
        customer = await self._load_readable(customer_id, principal)
        entry = {
            "follow_up_id": str(uuid.uuid4()),
            "task": request.task,
            "notes": request.notes,
            "follow_up_date": request.follow_up_date,
            "call_status": request.call_status.value,
            "added_by": principal.actor_ref(),
            "created_at": datetime.now(timezone.utc),
        }
        await self._append_entry(FOLLOW_UPS_COLLECTION, "follow_ups", customer_id, entry)
        await create_audit_log(
            action=AuditAction.FOLLOW_UP_ADDED,
            actor_role=UserRole(principal.role),
            actor_id=principal.id,
            company_id=customer.get("company_id"),
            resource_type="customer",
            resource_id=customer_id,
            metadata={"follow_up_date": request.follow_up_date, "call_status": request.call_status.value},
        )
        return entry

    async def list_follow_ups(self, customer_id: str, principal: Principal) -> List[Dict[str, Any]]:
        await self._load_readable(customer_id, principal)
        return await self._list_entries(FOLLOW_UPS_COLLECTION, "follow_ups", customer_id)

    async def add_note(self, customer_id: str, request: NoteCreateRequest, principal: Principal) -> Dict[str, Any]:
        customer = await self._load_readable(customer_id, principal)
        entry = {
            "note_id": str(uuid.uuid4()),
            "message": request.message,
            "added_by": principal.actor_ref(),
            "created_at": datetime.now(timezone.utc),
        }
        await self._append_entry(NOTES_COLLECTION, "notes", customer_id, entry)
        await create_audit_log(
            action=AuditAction.NOTE_ADDED,
            actor_role=UserRole(principal.role),
            actor_id=principal.id,
            company_id=customer.get("company_id"),
            resource_type="customer",
            resource_id=customer_id,
        )
        return entry

    async def list_notes(self, customer_id: str, principal: Principal) -> List[Dict[str, Any]]:
        await self._load_readable(customer_id, principal)
        return await self._list_entries(NOTES_COLLECTION, "notes", customer_id)
