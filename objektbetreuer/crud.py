import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlmodel import SQLModel, select

from .database import get_session, store_errors
from .errors import InvalidTransitionError, NotFoundError, PermissionDeniedError, ValidationError
from .live import LiveQuery, Subscription
from .models import (
    AppUser,
    Appointment,
    AppointmentCreate,
    AppointmentUpdate,
    EmployeeUpdate,
    Job,
    JobCreate,
    JobStatus,
    JobUpdate,
    Property,
    PropertyCreate,
    PropertyStatus,
    PropertyUpdate,
    Role,
    as_utc,
)

logger = logging.getLogger("portal.crud")

EARLIEST = datetime.min.replace(tzinfo=timezone.utc)
IMMUTABLE_FIELDS = {"id", "company_id", "created_at", "updated_at"}


@dataclass
class Scope:
    """Tenant boundary of a repository: the company and who is acting in it."""
    company_id: str
    actor: AppUser

    def __post_init__(self):
        if not self.company_id or self.actor.tenant_id != self.company_id:
            raise PermissionDeniedError("Zugriff auf fremde Unternehmensdaten verweigert.")

    @classmethod
    def for_user(cls, user: AppUser) -> "Scope":
        return cls(company_id=user.tenant_id, actor=user)


def validate_payload(schema: Type[BaseModel], payload: Any, partial: bool = False) -> Dict[str, Any]:
    """Run the payload through its schema; returns plain field values."""
    if isinstance(payload, schema):
        obj = payload
    else:
        raw = payload.model_dump(exclude_unset=True) if isinstance(payload, BaseModel) else dict(payload or {})
        if partial:
            touched = IMMUTABLE_FIELDS.intersection(raw)
            if touched:
                raise ValidationError(f"Felder können nicht geändert werden: {', '.join(sorted(touched))}")
        unknown = set(raw) - set(schema.model_fields)
        if "status" in unknown and schema is JobUpdate:
            raise ValidationError("status: Statusänderungen laufen über /api/jobs/{id}/status.")
        if unknown:
            raise ValidationError(f"Unbekannte Felder: {', '.join(sorted(unknown))}")
        try:
            obj = schema.model_validate(raw)
        except PydanticValidationError as e:
            raise ValidationError(_first_error(e)) from e
    return {k: as_utc(v) for k, v in obj.model_dump(exclude_unset=partial).items()}


def _first_error(e: PydanticValidationError) -> str:
    errs = e.errors()
    if not errs:
        return ValidationError.user_message
    loc = ".".join(str(p) for p in errs[0].get("loc", ()))
    return f"{loc}: {errs[0].get('msg')}" if loc else errs[0].get("msg")


class TenantRepository:
    """CRUD for one entity type, confined to ``scope.company_id``.

    Reads return ``None`` for ids outside the tenant, exactly like ids that
    do not exist. ``category`` selects the permission flags an employee
    needs; ``None`` means company accounts only.
    """

    model: Type[SQLModel]
    entity: str
    category: Optional[str] = None
    create_schema: Optional[Type[BaseModel]] = None
    update_schema: Optional[Type[BaseModel]] = None
    soft_delete = False
    filter_fields: tuple = ()

    def __init__(self, ctx, scope: Scope):
        self.ctx = ctx
        self.scope = scope

    @property
    def actor(self) -> AppUser:
        return self.scope.actor

    def _now(self) -> datetime:
        return self.ctx.clock()

    def _require(self, action: str = "view"):
        if self.category is None:
            if not self.actor.is_company:
                raise PermissionDeniedError("Nur für Unternehmenskonten.")
            return
        if not self.actor.allows(self.category, action):
            raise PermissionDeniedError()

    def _base_query(self):
        return select(self.model).where(self.model.company_id == self.scope.company_id)

    def _apply_filters(self, q, filters: Dict[str, Any]):
        for name, value in filters.items():
            if value is None:
                continue
            if name not in self.filter_fields:
                raise ValidationError(f"Unbekannter Filter: {name}")
            q = q.where(getattr(self.model, name) == value)
        return q

    def _sort(self, rows: List[Any]) -> List[Any]:
        # newest first; sorted here regardless of what order the store returned
        return sorted(rows, key=lambda r: r.created_at or EARLIEST, reverse=True)

    def _fetch(self, filters: Dict[str, Any]) -> List[Any]:
        with store_errors(), get_session(self.ctx.engine) as s:
            rows = s.exec(self._apply_filters(self._base_query(), filters)).all()
        return self._sort(list(rows))

    def _load(self, s, record_id: str):
        obj = s.get(self.model, record_id)
        if obj is None or obj.company_id != self.scope.company_id:
            return None
        return obj

    def _check_references(self, s, data: Dict[str, Any]):
        pass

    def _notify(self):
        self.ctx.live.notify(self.entity, self.scope.company_id)

    # public operations

    def list(self, **filters) -> List[Any]:
        self._require("view")
        return self._fetch(filters)

    def get(self, record_id: str):
        self._require("view")
        with store_errors(), get_session(self.ctx.engine) as s:
            return self._load(s, record_id)

    def create(self, payload) -> str:
        self._require("edit")
        data = validate_payload(self.create_schema, payload)
        now = self._now()
        with store_errors(), get_session(self.ctx.engine) as s:
            self._check_references(s, data)
            obj = self.model(**data, company_id=self.scope.company_id, created_at=now, updated_at=now)
            self._before_create(obj)
            s.add(obj)
            s.commit()
            s.refresh(obj)
            record_id = obj.id
        logger.info("Created %s id=%s company=%s", self.entity, record_id, self.scope.company_id)
        self._notify()
        return record_id

    def _before_create(self, obj):
        pass

    def update(self, record_id: str, partial) -> None:
        self._require("edit")
        data = validate_payload(self.update_schema, partial, partial=True)
        with store_errors(), get_session(self.ctx.engine) as s:
            obj = self._load(s, record_id)
            if obj is None:
                raise NotFoundError()
            self._check_references(s, data)
            for k, v in data.items():
                setattr(obj, k, v)
            self._validate_record(obj)
            obj.updated_at = self._now()
            s.add(obj)
            s.commit()
        self._notify()

    def _validate_record(self, obj):
        pass

    def delete(self, record_id: str) -> None:
        self._require("edit")
        with store_errors(), get_session(self.ctx.engine) as s:
            obj = self._load(s, record_id)
            if obj is None:
                raise NotFoundError()
            if self.soft_delete:
                obj.is_active = False
                obj.updated_at = self._now()
                s.add(obj)
            else:
                s.delete(obj)
            s.commit()
        logger.info(
            "%s %s id=%s company=%s",
            "Deactivated" if self.soft_delete else "Deleted",
            self.entity,
            record_id,
            self.scope.company_id,
        )
        self._notify()

    def subscribe(self, on_data, on_error=None, **filters) -> Subscription:
        query = LiveQuery(self.entity, self.scope.company_id, dict(filters))
        for name, value in filters.items():
            if value is not None and name not in self.filter_fields:
                raise ValidationError(f"Unbekannter Filter: {name}")
        return self.ctx.live.subscribe(
            query,
            fetch=lambda: self._fetch(filters),
            on_data=on_data,
            on_error=on_error,
            authorize=self._authorize_live,
        )

    def _authorize_live(self):
        # re-read the actor so revoked permissions stop the stream
        with store_errors(), get_session(self.ctx.engine) as s:
            actor = s.get(AppUser, self.actor.id)
            if actor is None or not actor.is_active or actor.tenant_id != self.scope.company_id:
                raise PermissionDeniedError()
            if self.category is None:
                if not actor.is_company:
                    raise PermissionDeniedError()
            elif not actor.allows(self.category, "view"):
                raise PermissionDeniedError()

    # helpers for subclasses

    def _require_in_tenant(self, s, model, record_id: Optional[str], label: str):
        if not record_id:
            return None
        obj = s.get(model, record_id)
        if obj is None or getattr(obj, "company_id", None) != self.scope.company_id:
            raise ValidationError(f"{label} gehört nicht zu diesem Unternehmen.")
        return obj

    def _require_member(self, s, user_id: Optional[str], label: str = "Mitarbeiter"):
        if not user_id:
            return None
        user = s.get(AppUser, user_id)
        if user is None or user.tenant_id != self.scope.company_id or not user.is_active:
            raise ValidationError(f"{label} gehört nicht zu diesem Unternehmen.")
        return user


class PropertyRepository(TenantRepository):
    model = Property
    entity = "properties"
    category = "properties"
    create_schema = PropertyCreate
    update_schema = PropertyUpdate
    soft_delete = True
    filter_fields = ("status",)

    def _base_query(self):
        # soft-deleted properties drop out of lists but stay readable by id
        return super()._base_query().where(Property.is_active == True)  # noqa: E712

    def balance(self, top: int = 5) -> Dict[str, Any]:
        """Monthly income of the portfolio, split by status and property type."""
        self._require("view")
        props = self._fetch({})
        earning = [p for p in props if (p.monthly_income or 0) > 0]
        by_status = {s.value: 0 for s in PropertyStatus}
        by_type: Dict[str, Dict[str, Any]] = {}
        for p in props:
            by_status[PropertyStatus(p.status).value] += 1
            bucket = by_type.setdefault(p.property_type or "Unbekannt", {"count": 0, "total_income": 0.0})
            bucket["count"] += 1
            bucket["total_income"] += p.monthly_income or 0.0
        earning.sort(key=lambda p: p.monthly_income, reverse=True)
        return {
            "total_monthly_income": sum(p.monthly_income for p in earning),
            "property_count": len(props),
            "by_status": by_status,
            "with_income": len(earning),
            "without_income": len(props) - len(earning),
            "by_type": by_type,
            "top": [{"id": p.id, "name": p.name, "monthly_income": p.monthly_income} for p in earning[:top]],
        }


class JobRepository(TenantRepository):
    model = Job
    entity = "jobs"
    category = "jobs"
    create_schema = JobCreate
    update_schema = JobUpdate
    filter_fields = ("property_id", "status", "assigned_to")

    def _check_references(self, s, data):
        if "property_id" in data:
            if not data["property_id"]:
                raise ValidationError("property_id: Objekt ist erforderlich.")
            self._require_in_tenant(s, Property, data["property_id"], "Objekt")
        if data.get("assigned_to"):
            self._require_member(s, data["assigned_to"])

    def _before_create(self, obj):
        obj.created_by = self.actor.id
        if obj.status == JobStatus.completed:
            obj.completed_at = obj.created_at

    def mine(self, **filters) -> List[Job]:
        """Jobs assigned to the acting user."""
        self._require("view")
        filters["assigned_to"] = self.actor.id
        return self._fetch(filters)

    def _require_job_write(self, job: Job):
        if self.actor.allows("jobs", "edit"):
            return
        # employees may work on their own jobs without the edit flag
        if self.actor.allows("jobs", "view") and job.assigned_to == self.actor.id:
            return
        raise PermissionDeniedError()

    def change_status(self, record_id: str, status) -> Job:
        try:
            new = status if isinstance(status, JobStatus) else JobStatus(status)
        except ValueError as e:
            raise ValidationError(f"status: ungültiger Wert {status!r}") from e
        with store_errors(), get_session(self.ctx.engine) as s:
            job = self._load(s, record_id)
            if job is None:
                raise NotFoundError()
            self._require_job_write(job)
            old = JobStatus(job.status)
            if old == new:
                return job
            if old.is_terminal:
                raise InvalidTransitionError()
            now = self._now()
            text = 'Status von "%s" auf "%s" geändert am %s um %s' % (
                old.label, new.label, now.strftime("%d.%m.%Y"), now.strftime("%H:%M"))
            job.notes = list(job.notes or []) + [_note(text, now, self.actor.id)]
            job.status = new
            if new == JobStatus.completed:
                job.completed_at = now
            job.updated_at = now
            s.add(job)
            s.commit()
            s.refresh(job)
        logger.info("Job id=%s status %s -> %s", record_id, old.value, new.value)
        self._notify()
        return job

    def add_note(self, record_id: str, text: str) -> Job:
        text = (text or "").strip()
        if not text:
            raise ValidationError("text: Notiz darf nicht leer sein.")
        with store_errors(), get_session(self.ctx.engine) as s:
            job = self._load(s, record_id)
            if job is None:
                raise NotFoundError()
            self._require_job_write(job)
            now = self._now()
            job.notes = list(job.notes or []) + [_note(text, now, self.actor.id)]
            job.updated_at = now
            s.add(job)
            s.commit()
            s.refresh(job)
        self._notify()
        return job


def _note(text: str, when: datetime, user_id: str) -> Dict[str, Any]:
    return {"text": text, "created_at": when.isoformat(), "user": user_id}


class AppointmentRepository(TenantRepository):
    model = Appointment
    entity = "appointments"
    category = "appointments"
    create_schema = AppointmentCreate
    update_schema = AppointmentUpdate
    filter_fields = ("assigned_to", "property_id", "job_id", "status")

    def _sort(self, rows):
        # calendar order: earliest start first
        return sorted(rows, key=lambda r: (r.start_time, r.created_at or EARLIEST))

    def _check_references(self, s, data):
        self._require_in_tenant(s, Property, data.get("property_id"), "Objekt")
        self._require_in_tenant(s, Job, data.get("job_id"), "Auftrag")
        self._require_member(s, data.get("assigned_to"))
        for attendee in data.get("attendees") or []:
            self._require_member(s, attendee, "Teilnehmer")

    def _before_create(self, obj):
        obj.created_by = self.actor.id

    def _validate_record(self, obj):
        if obj.end_time < obj.start_time:
            raise ValidationError("end_time: Ende liegt vor dem Beginn.")

    def mine(self, **filters) -> List[Appointment]:
        self._require("view")
        filters["assigned_to"] = self.actor.id
        return self._fetch(filters)


class EmployeeRepository(TenantRepository):
    """Employees of the company. Created only through accepted invitations."""
    model = AppUser
    entity = "employees"
    category = None
    update_schema = EmployeeUpdate
    soft_delete = True

    def _base_query(self):
        return (
            select(AppUser)
            .where(AppUser.company_id == self.scope.company_id)
            .where(AppUser.role == Role.employee)
            .where(AppUser.is_active == True)  # noqa: E712
        )

    def _load(self, s, record_id):
        obj = s.get(AppUser, record_id)
        if obj is None or obj.role != Role.employee or obj.company_id != self.scope.company_id:
            return None
        return obj

    def create(self, payload) -> str:
        raise PermissionDeniedError("Mitarbeiter werden über Einladungen angelegt.")

    def deactivate(self, record_id: str):
        self.delete(record_id)
