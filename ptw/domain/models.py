from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Generic, TypeVar
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from ptw.domain.permissions import ApproverRole, UserRole
from ptw.domain.state_machine import PermitStatus, PermitTrigger

DataT = TypeVar("DataT")


def now_utc() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class PermitType(StrEnum):
    GENERAL = "General"
    HEIGHT = "Height"
    HOT_WORK = "Hot_Work"
    ELECTRICAL = "Electrical"
    CONFINED_SPACE = "Confined_Space"


HIGH_RISK_PERMIT_TYPES: frozenset[PermitType] = frozenset(
    {PermitType.HOT_WORK, PermitType.CONFINED_SPACE, PermitType.HEIGHT}
)


class ApprovalStatus(StrEnum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    SUPERSEDED = "Superseded"


class EvidenceType(StrEnum):
    WORKING = "working"
    CLOSURE = "closure"


class WorkingEvidenceCategory(StrEnum):
    PPE = "ppe"
    BARRICADING = "barricading"
    TOOL_CONDITION = "tool_condition"
    OTHER = "other"


class ClosureEvidenceCategory(StrEnum):
    AREA_ORGANIZATION = "area_organization"
    ACTIVITY_COMPLETION = "activity_completion"
    BEFORE = "before"
    AFTER = "after"
    OTHER = "other"


EVIDENCE_CATEGORIES: dict[EvidenceType, frozenset[str]] = {
    EvidenceType.WORKING: frozenset(item.value for item in WorkingEvidenceCategory),
    EvidenceType.CLOSURE: frozenset(item.value for item in ClosureEvidenceCategory),
}


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: int | None = Field(default=None, index=True)
    permit_id: int | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: int | None = Field(default=None, primary_key=True)
    actor_id: int | None = Field(default=None, index=True)
    request_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: int | None = Field(default=None, primary_key=True)
    login_id: str = Field(index=True, unique=True)
    full_name: str
    email: str = Field(index=True)
    role: UserRole = Field(index=True)
    department: str | None = None
    site_id: int | None = Field(default=None, foreign_key="sites.id", index=True)
    signature: str | None = None
    password_hash: str
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Site(SQLModel, table=True):
    __tablename__ = "sites"

    id: int | None = Field(default=None, primary_key=True)
    site_code: str = Field(index=True, unique=True)
    name: str = Field(index=True)
    location: str | None = None
    address: str | None = None
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Vendor(SQLModel, table=True):
    __tablename__ = "vendors"

    id: int | None = Field(default=None, primary_key=True)
    company_name: str = Field(index=True, unique=True)
    contact_person: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Permit(SQLModel, table=True):
    __tablename__ = "permits"
    __table_args__ = (
        Index("ix_permits_site_status", "site_id", "status"),
        Index("ix_permits_creator_status", "created_by", "status"),
    )

    id: int | None = Field(default=None, primary_key=True)
    permit_serial: str = Field(index=True, unique=True)
    site_id: int = Field(foreign_key="sites.id", index=True)
    created_by: int = Field(index=True)
    vendor_id: int | None = Field(default=None, foreign_key="vendors.id", index=True)
    permit_type: PermitType
    work_location: str
    work_description: str
    start_time: datetime
    end_time: datetime
    receiver_name: str | None = None
    receiver_signature: str | None = None
    receiver_contact: str | None = None
    control_measures: str | None = None
    swms_file_url: str | None = None
    area_manager_id: int | None = Field(default=None, index=True)
    safety_officer_id: int | None = Field(default=None, index=True)
    site_leader_id: int | None = Field(default=None, index=True)
    status: PermitStatus = Field(default=PermitStatus.DRAFT, index=True)
    rejection_reason: str | None = None
    version: int = Field(default=0)
    submitted_at: datetime | None = None
    activated_at: datetime | None = None
    closed_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class PermitTeamMember(SQLModel, table=True):
    __tablename__ = "permit_team_members"

    id: int | None = Field(default=None, primary_key=True)
    permit_id: int = Field(foreign_key="permits.id", index=True)
    worker_name: str
    worker_role: str | None = None
    company_name: str | None = None
    badge_id: str | None = None
    contact_number: str | None = None
    is_qualified: bool = Field(default=False)


class Evidence(SQLModel, table=True):
    __tablename__ = "permit_evidences"
    __table_args__ = (Index("ix_permit_evidences_permit_ts", "permit_id", "timestamp"),)

    id: int | None = Field(default=None, primary_key=True)
    permit_id: int = Field(foreign_key="permits.id", index=True)
    closure_id: int | None = Field(default=None, foreign_key="permit_closures.id", index=True)
    evidence_type: EvidenceType = Field(default=EvidenceType.WORKING, index=True)
    file_path: str = Field(unique=True)
    file_name: str
    content_type: str
    size_bytes: int
    category: str = Field(index=True)
    description: str = Field(default="")
    timestamp: datetime
    latitude: float | None = None
    longitude: float | None = None
    uploaded_by: int | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class PermitApproval(SQLModel, table=True):
    __tablename__ = "permit_approvals"
    __table_args__ = (Index("ix_permit_approvals_permit_role", "permit_id", "role"),)

    id: int | None = Field(default=None, primary_key=True)
    permit_id: int = Field(foreign_key="permits.id", index=True)
    role: ApproverRole
    approver_id: int | None = Field(default=None, index=True)
    decided_by: int | None = None
    status: ApprovalStatus = Field(default=ApprovalStatus.PENDING, index=True)
    comments: str | None = None
    signature: str | None = None
    decided_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class PermitExtension(SQLModel, table=True):
    __tablename__ = "permit_extensions"

    id: int | None = Field(default=None, primary_key=True)
    permit_id: int = Field(foreign_key="permits.id", index=True)
    requested_by: int
    original_end_time: datetime
    new_end_time: datetime
    reason: str
    status: ApprovalStatus = Field(default=ApprovalStatus.PENDING, index=True)
    decided_by: int | None = None
    decided_at: datetime | None = None
    comments: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class PermitClosure(SQLModel, table=True):
    __tablename__ = "permit_closures"
    __table_args__ = (UniqueConstraint("permit_id", name="uq_permit_closures_permit_id"),)

    id: int | None = Field(default=None, primary_key=True)
    permit_id: int = Field(foreign_key="permits.id", index=True)
    closed_by: int
    closed_at: datetime = Field(default_factory=now_utc)
    housekeeping_done: bool
    tools_removed: bool
    locks_removed: bool
    area_restored: bool
    remarks: str | None = None


class ApprovalPolicy(SQLModel, table=True):
    __tablename__ = "approval_policies"
    __table_args__ = (
        UniqueConstraint("site_id", "permit_type", name="uq_approval_policies_site_type"),
    )

    id: int | None = Field(default=None, primary_key=True)
    site_id: int | None = Field(default=None, foreign_key="sites.id", index=True)
    permit_type: PermitType | None = Field(default=None, index=True)
    required_roles: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Notification(SQLModel, table=True):
    __tablename__ = "notifications"

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    permit_id: int | None = Field(default=None, index=True)
    notification_type: str = Field(index=True)
    title: str
    message: str
    is_read: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: int | None = None
    permit_id: int | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class ApiResponse(BaseModel, Generic[DataT]):
    success: bool = True
    message: str | None = None
    data: DataT | None = None


class UserCreate(BaseModel):
    login_id: str
    full_name: str
    email: str
    password: str
    role: UserRole
    department: str | None = None
    site_id: int | None = None


class UserUpdate(BaseModel):
    full_name: str | None = None
    email: str | None = None
    password: str | None = None
    role: UserRole | None = None
    department: str | None = None
    site_id: int | None = None
    signature: str | None = None
    is_active: bool | None = None


class UserRead(ORMReadModel):
    id: int
    login_id: str
    full_name: str
    email: str
    role: UserRole
    department: str | None = None
    site_id: int | None = None
    signature: str | None = None
    is_active: bool
    created_at: datetime


class LoginRequest(BaseModel):
    login_id: str
    password: str


class BootstrapAdminRequest(BaseModel):
    login_id: str
    full_name: str
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserRead


class SiteCreate(BaseModel):
    site_code: str
    name: str
    location: str | None = None
    address: str | None = None


class SiteUpdate(BaseModel):
    name: str | None = None
    location: str | None = None
    address: str | None = None
    is_active: bool | None = None


class SiteRead(ORMReadModel):
    id: int
    site_code: str
    name: str
    location: str | None = None
    address: str | None = None
    is_active: bool
    created_at: datetime


class VendorCreate(BaseModel):
    company_name: str
    contact_person: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None


class VendorRead(ORMReadModel):
    id: int
    company_name: str
    contact_person: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None
    is_active: bool
    created_at: datetime


class ApprovalPolicyCreate(BaseModel):
    site_id: int | None = None
    permit_type: PermitType | None = None
    required_roles: list[ApproverRole] = PydanticField(min_length=1)


class ApprovalPolicyRead(ORMReadModel):
    id: int
    site_id: int | None = None
    permit_type: PermitType | None = None
    required_roles: list[ApproverRole]
    created_at: datetime


class TeamMemberCreate(BaseModel):
    worker_name: str
    worker_role: str | None = None
    company_name: str | None = None
    badge_id: str | None = None
    contact_number: str | None = None
    is_qualified: bool = False


class TeamMemberRead(ORMReadModel):
    id: int
    worker_name: str
    worker_role: str | None = None
    company_name: str | None = None
    badge_id: str | None = None
    contact_number: str | None = None
    is_qualified: bool


class PermitCreate(BaseModel):
    site_id: int
    permit_type: PermitType
    work_location: str
    work_description: str
    start_time: datetime
    end_time: datetime
    vendor_id: int | None = None
    receiver_name: str | None = None
    receiver_signature: str | None = None
    receiver_contact: str | None = None
    control_measures: str | None = None
    swms_file_url: str | None = None
    area_manager_id: int | None = None
    safety_officer_id: int | None = None
    site_leader_id: int | None = None
    team_members: list[TeamMemberCreate] = PydanticField(default_factory=list)


class PermitUpdate(BaseModel):
    site_id: int | None = None
    permit_type: PermitType | None = None
    work_location: str | None = None
    work_description: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    vendor_id: int | None = None
    receiver_name: str | None = None
    receiver_signature: str | None = None
    receiver_contact: str | None = None
    control_measures: str | None = None
    swms_file_url: str | None = None
    area_manager_id: int | None = None
    safety_officer_id: int | None = None
    site_leader_id: int | None = None
    team_members: list[TeamMemberCreate] | None = None


class PermitRead(ORMReadModel):
    id: int
    permit_serial: str
    site_id: int
    created_by: int
    vendor_id: int | None = None
    permit_type: PermitType
    work_location: str
    work_description: str
    start_time: datetime
    end_time: datetime
    receiver_name: str | None = None
    receiver_signature: str | None = None
    receiver_contact: str | None = None
    control_measures: str | None = None
    swms_file_url: str | None = None
    area_manager_id: int | None = None
    safety_officer_id: int | None = None
    site_leader_id: int | None = None
    status: PermitStatus
    rejection_reason: str | None = None
    version: int
    submitted_at: datetime | None = None
    activated_at: datetime | None = None
    closed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ApprovalRead(ORMReadModel):
    id: int
    permit_id: int
    role: ApproverRole
    approver_id: int | None = None
    decided_by: int | None = None
    status: ApprovalStatus
    comments: str | None = None
    signature: str | None = None
    decided_at: datetime | None = None
    created_at: datetime


class ExtensionRead(ORMReadModel):
    id: int
    permit_id: int
    requested_by: int
    original_end_time: datetime
    new_end_time: datetime
    reason: str
    status: ApprovalStatus
    decided_by: int | None = None
    decided_at: datetime | None = None
    comments: str | None = None
    created_at: datetime


class ClosureRead(ORMReadModel):
    id: int
    permit_id: int
    closed_by: int
    closed_at: datetime
    housekeeping_done: bool
    tools_removed: bool
    locks_removed: bool
    area_restored: bool
    remarks: str | None = None


class PermitDetailRead(BaseModel):
    permit: PermitRead
    team_members: list[TeamMemberRead]
    approvals: list[ApprovalRead]
    extensions: list[ExtensionRead]
    closure: ClosureRead | None = None
    available_actions: list[PermitTrigger]


class PermitApproveRequest(BaseModel):
    role: ApproverRole | None = None
    comments: str | None = None
    signature: str | None = None


class PermitRejectRequest(BaseModel):
    reason: str
    role: ApproverRole | None = None


class ExtensionRequest(BaseModel):
    new_end_time: datetime
    reason: str


class ExtensionDecisionRequest(BaseModel):
    comments: str | None = None


class PermitReasonRequest(BaseModel):
    reason: str | None = None


class PermitCloseRequest(BaseModel):
    housekeeping_done: bool = False
    tools_removed: bool = False
    locks_removed: bool = False
    area_restored: bool = False
    remarks: str | None = None

    def unmet_items(self) -> list[str]:
        checklist = {
            "housekeeping_done": self.housekeeping_done,
            "tools_removed": self.tools_removed,
            "locks_removed": self.locks_removed,
            "area_restored": self.area_restored,
        }
        return [name for name, done in checklist.items() if not done]


class EvidenceRead(ORMReadModel):
    id: int
    permit_id: int
    closure_id: int | None = None
    evidence_type: EvidenceType
    file_path: str
    file_name: str
    content_type: str
    size_bytes: int
    category: str
    description: str
    timestamp: datetime
    latitude: float | None = None
    longitude: float | None = None
    uploaded_by: int | None = None
    created_at: datetime


class EvidenceUpdate(BaseModel):
    category: str
    description: str | None = None


class CategoryCount(BaseModel):
    category: str
    count: int


class EvidenceStatsRead(BaseModel):
    total: int
    by_category: list[CategoryCount]


class DocumentUploadRead(BaseModel):
    url: str


class ClosureResultRead(BaseModel):
    permit: PermitRead
    closure: ClosureRead
    evidences: list[EvidenceRead]


class NotificationRead(ORMReadModel):
    id: int
    user_id: int
    permit_id: int | None = None
    notification_type: str
    title: str
    message: str
    is_read: bool
    created_at: datetime


class UnreadCountRead(BaseModel):
    unread: int


class StatusCount(BaseModel):
    status: PermitStatus
    count: int


class SiteCount(BaseModel):
    site_id: int
    site_name: str
    count: int


class DashboardStatsRead(BaseModel):
    total_permits: int
    open_permits: int
    closed_permits: int
    total_sites: int
    active_users: int
    by_status: list[StatusCount]
    by_site: list[SiteCount]
