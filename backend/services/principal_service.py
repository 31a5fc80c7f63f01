"""
Principal resolution.

Agents and channel partners live in two collections: `users` (registered
directly) and `associate_users` (created by another user, inheriting that
user's company). Every lookup checks `users` first and falls back to
`associate_users`; callers only ever see a `Principal`.
Admins live in `admins` and are resolved separately.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Iterable, Tuple

from pymongo import ReturnDocument

from database import database
from models import UserRole, UserStatus, PrincipalKind

logger = logging.getLogger(__name__)

USER_COLLECTIONS: Tuple[Tuple[str, PrincipalKind], ...] = (
    ("users", PrincipalKind.USER),
    ("associate_users", PrincipalKind.ASSOCIATE),
)

PUBLIC_PROJECTION = {"_id": 0, "password_hash": 0}
UNKNOWN_USER_NAME = "Unknown User"


@dataclass
class Principal:
    """The acting identity behind a request or a live connection."""
    id: str
    name: str
    email: str
    role: str
    kind: PrincipalKind
    status: str = UserStatus.ACTIVE.value
    company_id: Optional[str] = None
    company_name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    @property
    def is_agent(self) -> bool:
        return self.role == UserRole.AGENT.value

    @property
    def is_channel_partner(self) -> bool:
        return self.role == UserRole.CHANNEL_PARTNER.value

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value

    def actor_ref(self) -> Dict[str, str]:
        return {"id": self.id, "name": self.name, "role": self.role}

    @classmethod
    def from_user_doc(cls, doc: Dict[str, Any], kind: PrincipalKind) -> "Principal":
        return cls(
            id=doc["user_id"],
            name=doc.get("full_name") or doc.get("email", ""),
            email=doc.get("email", ""),
            role=doc["role"],
            kind=kind,
            status=doc.get("status", UserStatus.ACTIVE.value),
            company_id=doc.get("company_id"),
            company_name=doc.get("company_name"),
        )

    @classmethod
    def from_admin_doc(cls, doc: Dict[str, Any]) -> "Principal":
        return cls(
            id=doc["admin_id"],
            name=doc.get("name") or doc.get("email", ""),
            email=doc.get("email", ""),
            role=UserRole.ADMIN.value,
            kind=PrincipalKind.ADMIN,
            status=doc.get("status", UserStatus.ACTIVE.value),
        )


class PrincipalResolver:
    """Single entry point for identity lookups across principal collections."""

    @staticmethod
    async def get_by_id(principal_id: str) -> Optional[Principal]:
        """Find an agent/channel partner, primary collection first."""
        if not principal_id:
            return None
        db = database.get_db()
        for collection, kind in USER_COLLECTIONS:
            doc = await db[collection].find_one({"user_id": principal_id}, PUBLIC_PROJECTION)
            if doc:
                return Principal.from_user_doc(doc, kind)
        return None

    @staticmethod
    async def get_admin(admin_id: str) -> Optional[Principal]:
        db = database.get_db()
        doc = await db.admins.find_one({"admin_id": admin_id}, PUBLIC_PROJECTION)
        return Principal.from_admin_doc(doc) if doc else None

    @staticmethod
    async def resolve(principal_id: str, role: Optional[str]) -> Optional[Principal]:
        """Resolve a token subject; admins and users never share a collection."""
        if role == UserRole.ADMIN.value:
            return await PrincipalResolver.get_admin(principal_id)
        return await PrincipalResolver.get_by_id(principal_id)

    @staticmethod
    async def get_credentials_by_email(email: str) -> Optional[Tuple[Dict[str, Any], PrincipalKind]]:
        """Raw document (with password hash) for login."""
        db = database.get_db()
        for collection, kind in USER_COLLECTIONS:
            doc = await db[collection].find_one({"email": email.lower()}, {"_id": 0})
            if doc:
                return doc, kind
        return None

    @staticmethod
    async def email_or_phone_taken(email: str, phone_number: str) -> bool:
        db = database.get_db()
        query = {"$or": [{"email": email.lower()}, {"phone_number": phone_number}]}
        for collection, _ in USER_COLLECTIONS:
            if await db[collection].find_one(query, {"_id": 0, "user_id": 1}):
                return True
        return False

    @staticmethod
    async def find_active_agent_ids(company_id: str) -> List[str]:
        """All currently active agents of a company, across both collections."""
        db = database.get_db()
        agent_ids: List[str] = []
        for collection, _ in USER_COLLECTIONS:
            docs = await db[collection].find(
                {"company_id": company_id, "role": UserRole.AGENT.value, "status": UserStatus.ACTIVE.value},
                {"_id": 0, "user_id": 1},
            ).to_list(length=None)
            agent_ids.extend(d["user_id"] for d in docs)
        # Preserve order, drop duplicates
        return list(dict.fromkeys(agent_ids))

    @staticmethod
    async def list_active_agents(company_id: str) -> List[Dict[str, Any]]:
        db = database.get_db()
        agents: List[Dict[str, Any]] = []
        for collection, kind in USER_COLLECTIONS:
            docs = await db[collection].find(
                {"company_id": company_id, "role": UserRole.AGENT.value, "status": UserStatus.ACTIVE.value},
                PUBLIC_PROJECTION,
            ).to_list(length=None)
            agents.extend({**d, "is_associate": kind == PrincipalKind.ASSOCIATE} for d in docs)
        return agents

    @staticmethod
    async def get_active_agent(company_id: str, agent_id: str) -> Optional[Principal]:
        """An agent that is active and belongs to the given company, else None."""
        principal = await PrincipalResolver.get_by_id(agent_id)
        if not principal:
            return None
        if not principal.is_agent or not principal.is_active or principal.company_id != company_id:
            return None
        return principal

    @staticmethod
    async def display_names(principal_ids: Iterable[str]) -> Dict[str, str]:
        """Best-effort id -> current display name across users, associates and admins."""
        ids = {pid for pid in principal_ids if pid}
        if not ids:
            return {}
        db = database.get_db()
        names: Dict[str, str] = {}
        for collection, _ in USER_COLLECTIONS:
            missing = list(ids - names.keys())
            if not missing:
                break
            docs = await db[collection].find(
                {"user_id": {"$in": missing}},
                {"_id": 0, "user_id": 1, "full_name": 1},
            ).to_list(length=None)
            names.update({d["user_id"]: d.get("full_name") or UNKNOWN_USER_NAME for d in docs})
        missing = list(ids - names.keys())
        if missing:
            docs = await db.admins.find(
                {"admin_id": {"$in": missing}},
                {"_id": 0, "admin_id": 1, "name": 1},
            ).to_list(length=None)
            names.update({d["admin_id"]: d.get("name") or UNKNOWN_USER_NAME for d in docs})
        return names

    @staticmethod
    async def set_status(user_id: str, status: UserStatus) -> Optional[Principal]:
        """Atomically set account status in whichever collection holds the user."""
        db = database.get_db()
        for collection, kind in USER_COLLECTIONS:
            doc = await db[collection].find_one_and_update(
                {"user_id": user_id},
                {"$set": {"status": status.value}},
                projection=PUBLIC_PROJECTION,
                return_document=ReturnDocument.AFTER,
            )
            if doc:
                logger.info(f"User {user_id} ({kind.value}) status set to {status.value}")
                return Principal.from_user_doc(doc, kind)
        return None
