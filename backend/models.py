from pydantic import BaseModel, EmailStr, Field, ConfigDict, field_validator
from typing import Optional, Dict, Any, List, Union, Literal
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class UserRole(str, Enum):
    ADMIN = "admin"
    AGENT = "agent"
    CHANNEL_PARTNER = "channel_partner"

class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"

class PrincipalKind(str, Enum):
    USER = "user"
    ASSOCIATE = "associate"
    ADMIN = "admin"

class CallStatus(str, Enum):
    CONNECTED = "connected"
    NOT_CONNECTED = "not connected"

class LinkPurpose(str, Enum):
    ASSOCIATE_REGISTRATION = "associate_registration"
    CUSTOMER_REGISTRATION = "customer_registration"

class AuditAction(str, Enum):
    # Leads
    CUSTOMER_CREATED = "CUSTOMER_CREATED"
    CUSTOMER_BROADCASTED = "CUSTOMER_BROADCASTED"
    CUSTOMER_ACCEPTED = "CUSTOMER_ACCEPTED"
    CUSTOMER_ACCEPT_LOST_RACE = "CUSTOMER_ACCEPT_LOST_RACE"
    CUSTOMER_DECLINED = "CUSTOMER_DECLINED"
    CUSTOMER_STATUS_UPDATED = "CUSTOMER_STATUS_UPDATED"
    FOLLOW_UP_ADDED = "FOLLOW_UP_ADDED"
    NOTE_ADDED = "NOTE_ADDED"

    # Links
    LINK_GENERATED = "LINK_GENERATED"
    LINK_REDEEMED = "LINK_REDEEMED"

    # Accounts
    USER_REGISTERED = "USER_REGISTERED"
    ASSOCIATE_CREATED = "ASSOCIATE_CREATED"
    USER_STATUS_CHANGED = "USER_STATUS_CHANGED"
    USER_LOGIN_SUCCESS = "USER_LOGIN_SUCCESS"
    USER_LOGIN_FAILED = "USER_LOGIN_FAILED"

    # Realtime
    SOCKET_FORCE_LOGOUT = "SOCKET_FORCE_LOGOUT"


# 10 digits, Indian mobile numbering
PHONE_PATTERN = r"^[6-9][0-9]{9}$"
DEFAULT_CUSTOMER_STATUS = "New"


# ============================================================================
# STORED DOCUMENTS
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[UserRole] = None
    actor_id: Optional[str] = None
    company_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class StatusHistoryEntry(BaseModel):
    actor_id: Optional[str] = None
    actor_name: str
    actor_role: Optional[str] = None
    status: str
    timestamp: datetime


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)

class AdminRegisterRequest(BaseModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    password: str = Field(..., min_length=6)

class UserRegisterRequest(BaseModel):
    full_name: str = Field(..., min_length=2)
    email: EmailStr
    phone_number: str = Field(..., pattern=PHONE_PATTERN)
    location: str = Field(..., min_length=1)
    company_id: str
    role: Literal["agent", "channel_partner"]
    password: str = Field(..., min_length=6)

    @field_validator("email")
    @classmethod
    def normalise_email(cls, v: str) -> str:
        return v.strip().lower()

class AssociateUserCreateRequest(BaseModel):
    full_name: str = Field(..., min_length=2)
    email: EmailStr
    phone_number: str = Field(..., pattern=PHONE_PATTERN)
    location: str = Field(..., min_length=1)
    role: Literal["agent", "channel_partner"]
    password: str = Field(..., min_length=6)

    @field_validator("email")
    @classmethod
    def normalise_email(cls, v: str) -> str:
        return v.strip().lower()

class UserStatusUpdateRequest(BaseModel):
    status: UserStatus

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]

class CompanyCreateRequest(BaseModel):
    company_name: str = Field(..., min_length=1)

class ProjectCreateRequest(BaseModel):
    project_title: str = Field(..., min_length=1)
    description: str
    location: str
    min_price: str
    max_price: str
    images: List[str] = Field(default_factory=list)
    brochure: Optional[str] = None

class MasterStatusCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Status name cannot be blank")
        return v

class CustomerCreateRequest(BaseModel):
    """Lead contact fields. company_id is required for channel partners and admins."""
    full_name: str = Field(..., min_length=1)
    phone_number: str = Field(..., pattern=PHONE_PATTERN)
    personal_phone_number: str = Field(..., pattern=PHONE_PATTERN)
    email: EmailStr
    project_id: str
    company_id: Optional[str] = None

    @field_validator("email")
    @classmethod
    def normalise_email(cls, v: str) -> str:
        return v.strip().lower()

class CustomerLinkRegistrationRequest(BaseModel):
    full_name: str = Field(..., min_length=1)
    phone_number: str = Field(..., pattern=PHONE_PATTERN)
    personal_phone_number: str = Field(..., pattern=PHONE_PATTERN)
    email: EmailStr
    project_id: str

    @field_validator("email")
    @classmethod
    def normalise_email(cls, v: str) -> str:
        return v.strip().lower()

class BroadcastRequest(BaseModel):
    company_id: str
    agents: Union[Literal["all"], str] = "all"

class StatusUpdateRequest(BaseModel):
    status_id: str

class FollowUpCreateRequest(BaseModel):
    task: str = Field(..., min_length=1)
    notes: Optional[str] = None
    follow_up_date: str = Field(..., pattern=r"^\d{2}/\d{2}/\d{4}$")  # DD/MM/YYYY
    call_status: CallStatus

class NoteCreateRequest(BaseModel):
    message: str = Field(..., min_length=1)
