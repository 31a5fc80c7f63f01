"""
Account Service

Admin account (exactly one), user self-registration and login, associate
users created by existing users, and admin-side account management.
"""
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from pymongo.errors import DuplicateKeyError

from auth import hash_password, verify_password, create_access_token
from database import database
from models import (
    AuditAction,
    PrincipalKind,
    UserRole,
    UserStatus,
    AdminRegisterRequest,
    AssociateUserCreateRequest,
    LoginRequest,
    UserRegisterRequest,
)
from services.catalogue_service import CompanyService
from services.customer_service import CUSTOMERS_COLLECTION
from services.notification_service import NotificationService
from services.principal_service import Principal, PrincipalResolver, PUBLIC_PROJECTION
from utils.audit import create_audit_log
from utils.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
INACTIVE_ACCOUNT = "Your account is inactive. Please contact admin."


def _strip_secrets(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in doc.items() if k not in ("_id", "password_hash", "singleton")}


class UserService:

    # ------------------------------------------------------------------
    # Admin account
    # ------------------------------------------------------------------

    @staticmethod
    async def register_admin(request: AdminRegisterRequest) -> Dict[str, Any]:
        db = database.get_db()
        doc = {
            "admin_id": str(uuid.uuid4()),
            "name": request.name.strip(),
            "email": request.email.lower(),
            "password_hash": hash_password(request.password),
            "status": UserStatus.ACTIVE.value,
            "singleton": True,
            "created_at": datetime.now(timezone.utc),
        }
        try:
            await db.admins.insert_one(doc)
        except DuplicateKeyError:
            raise ValidationError("Admin already exists")
        logger.info(f"Admin registered: {doc['email']}")
        return _strip_secrets(doc)

    @staticmethod
    async def login_admin(request: LoginRequest, ip_address: Optional[str] = None) -> Dict[str, Any]:
        db = database.get_db()
        admin = await db.admins.find_one({"email": request.email.lower()}, {"_id": 0})
        if not admin or not verify_password(request.password, admin["password_hash"]):
            await create_audit_log(
                action=AuditAction.USER_LOGIN_FAILED,
                metadata={"email": request.email, "kind": PrincipalKind.ADMIN.value},
                ip_address=ip_address,
            )
            raise AuthenticationError(INVALID_CREDENTIALS)

        token = create_access_token({"sub": admin["admin_id"], "role": UserRole.ADMIN.value})
        await create_audit_log(
            action=AuditAction.USER_LOGIN_SUCCESS,
            actor_role=UserRole.ADMIN,
            actor_id=admin["admin_id"],
            ip_address=ip_address,
        )
        return {"access_token": token, "token_type": "bearer", "user": _strip_secrets(admin)}

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    @staticmethod
    async def register_user(request: UserRegisterRequest, ip_address: Optional[str] = None) -> Dict[str, Any]:
        company = await CompanyService.require(request.company_id)

        if await PrincipalResolver.email_or_phone_taken(request.email, request.phone_number):
            raise ConflictError("User with this email or phone number already exists")

        doc = {
            "user_id": str(uuid.uuid4()),
            "full_name": request.full_name.strip(),
            "email": request.email,
            "phone_number": request.phone_number,
            "location": request.location,
            "company_id": company["company_id"],
            "company_name": company["company_name"],
            "role": request.role,
            "status": UserStatus.ACTIVE.value,
            "password_hash": hash_password(request.password),
            "createdBy": None,
            "created_at": datetime.now(timezone.utc),
        }
        db = database.get_db()
        try:
            await db.users.insert_one(doc)
        except DuplicateKeyError:
            raise ConflictError("User with this email or phone number already exists")

        await create_audit_log(
            action=AuditAction.USER_REGISTERED,
            actor_role=UserRole(request.role),
            actor_id=doc["user_id"],
            company_id=company["company_id"],
            resource_type="user",
            resource_id=doc["user_id"],
            ip_address=ip_address,
        )
        logger.info(f"User registered: {doc['email']} as {request.role} in {company['company_code']}")
        return _strip_secrets(doc)

    @staticmethod
    async def login_user(request: LoginRequest, ip_address: Optional[str] = None) -> Dict[str, Any]:
        """Look up users, then associate users. Wrong password is 401, inactive account is 403."""
        found = await PrincipalResolver.get_credentials_by_email(request.email)
        if not found or not verify_password(request.password, found[0]["password_hash"]):
            await create_audit_log(
                action=AuditAction.USER_LOGIN_FAILED,
                metadata={"email": request.email},
                ip_address=ip_address,
            )
            raise AuthenticationError(INVALID_CREDENTIALS)

        doc, kind = found
        if doc.get("status") != UserStatus.ACTIVE.value:
            raise AuthorizationError(INACTIVE_ACCOUNT)

        token = create_access_token({
            "sub": doc["user_id"],
            "role": doc["role"],
            "company_id": doc.get("company_id"),
            "is_associate": kind == PrincipalKind.ASSOCIATE,
        })
        await create_audit_log(
            action=AuditAction.USER_LOGIN_SUCCESS,
            actor_role=UserRole(doc["role"]),
            actor_id=doc["user_id"],
            company_id=doc.get("company_id"),
            ip_address=ip_address,
        )
        user = _strip_secrets(doc)
        user["is_associate"] = kind == PrincipalKind.ASSOCIATE
        return {"access_token": token, "token_type": "bearer", "user": user}

    @staticmethod
    async def get_profile(principal: Principal) -> Dict[str, Any]:
        db = database.get_db()
        if principal.is_admin:
            doc = await db.admins.find_one({"admin_id": principal.id}, {**PUBLIC_PROJECTION, "singleton": 0})
        else:
            collection = "associate_users" if principal.kind == PrincipalKind.ASSOCIATE else "users"
            doc = await db[collection].find_one({"user_id": principal.id}, PUBLIC_PROJECTION)
        if not doc:
            raise NotFoundError("User not found")
        return doc

    # ------------------------------------------------------------------
    # Associate users
    # ------------------------------------------------------------------

    @staticmethod
    async def create_associate(
        request: AssociateUserCreateRequest,
        creator: Principal,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Associate users inherit the creator's company."""
        if creator.is_admin:
            raise AuthorizationError("Admins cannot create associate users")
        if not creator.company_id:
            raise ValidationError("Creator has no company assigned")

        if await PrincipalResolver.email_or_phone_taken(request.email, request.phone_number):
            raise ConflictError("User with this email or phone number already exists")

        doc = {
            "user_id": str(uuid.uuid4()),
            "full_name": request.full_name.strip(),
            "email": request.email,
            "phone_number": request.phone_number,
            "location": request.location,
            "company_id": creator.company_id,
            "company_name": creator.company_name,
            "role": request.role,
            "status": UserStatus.ACTIVE.value,
            "password_hash": hash_password(request.password),
            "createdBy": {"id": creator.id, "name": creator.name},
            "created_at": datetime.now(timezone.utc),
        }
        db = database.get_db()
        try:
            await db.associate_users.insert_one(doc)
        except DuplicateKeyError:
            raise ConflictError("User with this email or phone number already exists")

        await create_audit_log(
            action=AuditAction.ASSOCIATE_CREATED,
            actor_role=UserRole(creator.role),
            actor_id=creator.id,
            company_id=creator.company_id,
            resource_type="associate_user",
            resource_id=doc["user_id"],
            metadata={"role": request.role},
            ip_address=ip_address,
        )
        logger.info(f"Associate user created: {doc['email']} by {creator.id}")
        return _strip_secrets(doc)

    @staticmethod
    async def list_associates(principal: Principal, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        db = database.get_db()
        query = {} if principal.is_admin else {"createdBy.id": principal.id}
        projection = dict(PUBLIC_PROJECTION)
        if not principal.is_admin:
            projection["createdBy"] = 0

        skip = (page - 1) * limit
        total = await db.associate_users.count_documents(query)
        associates = await db.associate_users.find(query, projection).sort(
            "created_at", -1
        ).skip(skip).limit(limit).to_list(length=limit)
        return {"associates": associates, "total": total, "page": page, "limit": limit}

    # ------------------------------------------------------------------
    # Admin account management
    # ------------------------------------------------------------------

    @staticmethod
    async def set_status(
        user_id: str,
        status: UserStatus,
        admin: Principal,
        notifier: Optional[NotificationService] = None,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Activate/deactivate. Deactivation also ends the user's live session."""
        principal = await PrincipalResolver.set_status(user_id, status)
        if not principal:
            raise NotFoundError("User not found")

        await create_audit_log(
            action=AuditAction.USER_STATUS_CHANGED,
            actor_role=UserRole.ADMIN,
            actor_id=admin.id,
            company_id=principal.company_id,
            resource_type="user",
            resource_id=user_id,
            after_state={"status": status.value},
            ip_address=ip_address,
        )

        if status == UserStatus.INACTIVE and notifier:
            notifier.dispatch(notifier.force_logout(user_id), "force-logout")
            await create_audit_log(
                action=AuditAction.SOCKET_FORCE_LOGOUT,
                actor_role=UserRole.ADMIN,
                actor_id=admin.id,
                resource_type="user",
                resource_id=user_id,
            )

        return {
            "user_id": principal.id,
            "full_name": principal.name,
            "email": principal.email,
            "role": principal.role,
            "status": principal.status,
            "company_id": principal.company_id,
            "is_associate": principal.kind == PrincipalKind.ASSOCIATE,
        }

    @staticmethod
    async def list_users(
        role: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Dict[str, Any]:
        """Primary users with lead counts: accepted for agents, created (+ associate CPs) for channel partners."""
        db = database.get_db()
        query: Dict[str, Any] = {}
        if role in (UserRole.AGENT.value, UserRole.CHANNEL_PARTNER.value):
            query["role"] = role
        if search:
            pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
            query["$or"] = [
                {"full_name": pattern},
                {"email": pattern},
                {"phone_number": pattern},
                {"location": pattern},
                {"company_name": pattern},
                {"company_id": search.strip()},
            ]

        skip = (page - 1) * limit
        total = await db.users.count_documents(query)
        users = await db.users.find(query, PUBLIC_PROJECTION).sort(
            "created_at", -1
        ).skip(skip).limit(limit).to_list(length=limit)

        for user in users:
            user["customer_count"] = 0
            user["associated_cp_count"] = 0
            if user.get("role") == UserRole.AGENT.value:
                user["customer_count"] = await db[CUSTOMERS_COLLECTION].count_documents(
                    {"acceptedBy": user["user_id"]}
                )
            elif user.get("role") == UserRole.CHANNEL_PARTNER.value:
                user["customer_count"] = await db[CUSTOMERS_COLLECTION].count_documents(
                    {"createdBy.id": user["user_id"]}
                )
                user["associated_cp_count"] = await db.associate_users.count_documents(
                    {"createdBy.id": user["user_id"], "role": UserRole.CHANNEL_PARTNER.value}
                )

        return {
            "users": users,
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": (total + limit - 1) // limit if limit else 0,
        }
