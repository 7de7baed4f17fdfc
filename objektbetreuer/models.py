import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import model_validator
from sqlalchemy import JSON, Column, DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value):
    """Aware UTC copy of ``value``; naive values are taken to be UTC already."""
    if not isinstance(value, datetime):
        return value
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timestamp column stored as UTC without an offset, read back as aware UTC."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return as_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return value.replace(tzinfo=timezone.utc)


class Role(str, Enum):
    company = "company"
    employee = "employee"


class JobStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"

    @classmethod
    def from_legacy(cls, value: str) -> "JobStatus":
        """Map any of the historical status spellings onto the single vocabulary."""
        v = (value or "").strip().lower()
        legacy = {
            "open": cls.pending,
            "new": cls.pending,
            "onhold": cls.pending,
            "pending": cls.pending,
            "in-progress": cls.in_progress,
            "in_progress": cls.in_progress,
            "inprogress": cls.in_progress,
            "closed": cls.completed,
            "completed": cls.completed,
            "canceled": cls.cancelled,
            "cancelled": cls.cancelled,
        }
        if v not in legacy:
            raise ValueError(f"unknown job status {value!r}")
        return legacy[v]

    @property
    def label(self) -> str:
        return JOB_STATUS_LABELS[self]

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.completed, JobStatus.cancelled)


JOB_STATUS_LABELS = {
    JobStatus.pending: "Offen",
    JobStatus.in_progress: "In Bearbeitung",
    JobStatus.completed: "Abgeschlossen",
    JobStatus.cancelled: "Storniert",
}


class Priority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    urgent = "urgent"


class JobCategory(str, Enum):
    maintenance = "maintenance"
    repair = "repair"
    inspection = "inspection"
    cleaning = "cleaning"
    other = "other"


class AppointmentStatus(str, Enum):
    scheduled = "scheduled"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


class PropertyStatus(str, Enum):
    active = "active"
    inactive = "inactive"
    maintenance = "maintenance"


class InvitationStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    expired = "expired"


# category -> (view flag, edit flag)
CATEGORY_FLAGS = {
    "jobs": ("can_view_jobs", "can_edit_jobs"),
    "properties": ("can_view_properties", "can_edit_properties"),
    "appointments": ("can_view_appointments", "can_edit_appointments"),
}
PERMISSION_FIELDS = [flag for pair in CATEGORY_FLAGS.values() for flag in pair]


class Permissions(SQLModel):
    can_view_jobs: bool = False
    can_edit_jobs: bool = False
    can_view_properties: bool = False
    can_edit_properties: bool = False
    can_view_appointments: bool = False
    can_edit_appointments: bool = False


# auth collaborator tables

class Principal(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    email: str = Field(index=True, unique=True)
    hashed_password: str
    email_verified: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class RevokedToken(SQLModel, table=True):
    jti: str = Field(primary_key=True)
    principal_id: Optional[str] = None
    revoked_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class PasswordReset(SQLModel, table=True):
    token: str = Field(primary_key=True)
    principal_id: str = Field(foreign_key="principal.id")
    expires_at: datetime = Field(sa_type=UTCDateTime)
    used_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


# application tables

class AppUser(SQLModel, table=True):
    """Application profile of a principal; the primary key is the principal id."""
    id: str = Field(primary_key=True)
    email: str
    role: Role
    display_name: str
    company_name: Optional[str] = None
    company_id: Optional[str] = Field(default=None, index=True)
    is_active: bool = Field(default=True)
    can_view_jobs: bool = Field(default=False)
    can_edit_jobs: bool = Field(default=False)
    can_view_properties: bool = Field(default=False)
    can_edit_properties: bool = Field(default=False)
    can_view_appointments: bool = Field(default=False)
    can_edit_appointments: bool = Field(default=False)
    created_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    updated_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    last_login: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    @property
    def tenant_id(self) -> Optional[str]:
        return self.id if self.role == Role.company else self.company_id

    @property
    def is_company(self) -> bool:
        return self.role == Role.company

    def allows(self, category: str, action: str = "view") -> bool:
        if self.is_company:
            return True
        view_flag, edit_flag = CATEGORY_FLAGS[category]
        return bool(getattr(self, edit_flag if action == "edit" else view_flag))


class Property(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    company_id: str = Field(index=True)
    name: str
    street: str = ""
    house_number: str = ""
    postal_code: str = ""
    city: str = ""
    country: str = "Deutschland"
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    property_type: str = ""
    size: Optional[float] = None
    rooms: Optional[int] = None
    description: Optional[str] = None
    status: PropertyStatus = Field(default=PropertyStatus.active)
    monthly_income: Optional[float] = None
    images: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    is_active: bool = Field(default=True)
    created_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    updated_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class Job(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    company_id: str = Field(index=True)
    property_id: str = Field(index=True)
    title: str
    description: str = ""
    status: JobStatus = Field(default=JobStatus.pending)
    priority: Priority = Field(default=Priority.medium)
    category: JobCategory = Field(default=JobCategory.other)
    assigned_to: Optional[str] = Field(default=None, index=True)
    created_by: Optional[str] = None
    due_date: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    estimated_hours: Optional[float] = None
    actual_hours: Optional[float] = None
    # [{"text": ..., "created_at": iso timestamp, "user": principal id}]
    notes: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    materials: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    attachments: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    updated_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class Appointment(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    company_id: str = Field(index=True)
    property_id: Optional[str] = None
    job_id: Optional[str] = None
    title: str
    description: str = ""
    start_time: datetime = Field(sa_type=UTCDateTime)
    end_time: datetime = Field(sa_type=UTCDateTime)
    status: AppointmentStatus = Field(default=AppointmentStatus.scheduled)
    assigned_to: Optional[str] = Field(default=None, index=True)
    created_by: Optional[str] = None
    location: str = ""
    notes: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    attendees: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    updated_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class EmployeeInvitation(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    company_id: str = Field(index=True)
    email: str
    status: InvitationStatus = Field(default=InvitationStatus.pending)
    token: str = Field(index=True, unique=True)
    can_view_jobs: bool = Field(default=False)
    can_edit_jobs: bool = Field(default=False)
    can_view_properties: bool = Field(default=False)
    can_edit_properties: bool = Field(default=False)
    can_view_appointments: bool = Field(default=False)
    can_edit_appointments: bool = Field(default=False)
    created_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    expires_at: datetime = Field(sa_type=UTCDateTime)
    accepted_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    accepted_by: Optional[str] = None


# request payloads

class CompanyRegistration(SQLModel):
    email: str
    password: str
    company_name: str = Field(min_length=1)


class PropertyCreate(SQLModel):
    name: str = Field(min_length=1)
    street: str = ""
    house_number: str = ""
    postal_code: str = ""
    city: str = ""
    country: str = "Deutschland"
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    property_type: str = ""
    size: Optional[float] = Field(default=None, ge=0)
    rooms: Optional[int] = Field(default=None, ge=0)
    description: Optional[str] = None
    status: PropertyStatus = PropertyStatus.active
    monthly_income: Optional[float] = Field(default=None, ge=0)
    images: List[str] = Field(default_factory=list)


class PropertyUpdate(SQLModel):
    name: Optional[str] = Field(default=None, min_length=1)
    street: Optional[str] = None
    house_number: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    property_type: Optional[str] = None
    size: Optional[float] = Field(default=None, ge=0)
    rooms: Optional[int] = Field(default=None, ge=0)
    description: Optional[str] = None
    status: Optional[PropertyStatus] = None
    monthly_income: Optional[float] = Field(default=None, ge=0)
    images: Optional[List[str]] = None
    is_active: Optional[bool] = None


class JobCreate(SQLModel):
    property_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str = ""
    status: JobStatus = JobStatus.pending
    priority: Priority = Priority.medium
    category: JobCategory = JobCategory.other
    assigned_to: Optional[str] = None
    due_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    actual_hours: Optional[float] = Field(default=None, ge=0)
    materials: List[str] = Field(default_factory=list)
    attachments: List[str] = Field(default_factory=list)


class JobUpdate(SQLModel):
    property_id: Optional[str] = None
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    priority: Optional[Priority] = None
    category: Optional[JobCategory] = None
    assigned_to: Optional[str] = None
    due_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    actual_hours: Optional[float] = Field(default=None, ge=0)
    materials: Optional[List[str]] = None
    attachments: Optional[List[str]] = None


class StatusChange(SQLModel):
    status: JobStatus


class NoteCreate(SQLModel):
    text: str = Field(min_length=1)


class AppointmentCreate(SQLModel):
    title: str = Field(min_length=1)
    description: str = ""
    start_time: datetime
    end_time: datetime
    property_id: Optional[str] = None
    job_id: Optional[str] = None
    status: AppointmentStatus = AppointmentStatus.scheduled
    assigned_to: Optional[str] = None
    location: str = ""
    notes: List[str] = Field(default_factory=list)
    attendees: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_times(self):
        if as_utc(self.end_time) < as_utc(self.start_time):
            raise ValueError("end_time must not be before start_time")
        return self


class AppointmentUpdate(SQLModel):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    property_id: Optional[str] = None
    job_id: Optional[str] = None
    status: Optional[AppointmentStatus] = None
    assigned_to: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[List[str]] = None
    attendees: Optional[List[str]] = None


class EmployeeUpdate(SQLModel):
    display_name: Optional[str] = Field(default=None, min_length=1)
    is_active: Optional[bool] = None
    can_view_jobs: Optional[bool] = None
    can_edit_jobs: Optional[bool] = None
    can_view_properties: Optional[bool] = None
    can_edit_properties: Optional[bool] = None
    can_view_appointments: Optional[bool] = None
    can_edit_appointments: Optional[bool] = None


class InvitationCreate(SQLModel):
    email: str = Field(min_length=3)
    permissions: Permissions = Field(default_factory=Permissions)


class InvitationAccept(SQLModel):
    password: str
    display_name: str = Field(min_length=1)


class PasswordResetRequest(SQLModel):
    email: str


class PasswordResetConfirm(SQLModel):
    token: str
    password: str
