"""Import of jobs from the old flat job collection.

The export is a table (CSV, or JSON records) with the old camelCase columns:
title, description, propertyId, status, priority, category, assignedTo,
createdAt, dueDate, completedAt, estimatedHours, actualHours, materials, notes.
Status spellings of every old client are accepted; notes may be a single
string, newline separated, or a list of strings or note objects.
"""
import io
import json
import logging

import pandas as pd
from sqlmodel import select

from .crud import validate_payload
from .database import get_session, store_errors
from .errors import PortalError, ValidationError
from .models import AppUser, Job, JobCreate, JobStatus, Property, as_utc

logger = logging.getLogger("portal.legacy")

COLUMNS = {
    "propertyId": "property_id",
    "assignedTo": "assigned_to",
    "createdAt": "created_at",
    "dueDate": "due_date",
    "completedAt": "completed_at",
    "estimatedHours": "estimated_hours",
    "actualHours": "actual_hours",
}
LEGACY_USER = "legacy-import"


def read_export(source, fmt=None) -> pd.DataFrame:
    """Load an export from a path or raw bytes; ``fmt`` is "csv" or "json"."""
    if isinstance(source, bytes):
        buf = io.BytesIO(source)
    else:
        buf = source
        fmt = fmt or ("json" if str(source).lower().endswith(".json") else "csv")
    try:
        if fmt == "json":
            df = pd.read_json(buf, orient="records", dtype=False, convert_dates=False)
        else:
            df = pd.read_csv(buf)
    except ValueError as e:
        raise ValidationError(f"Export konnte nicht gelesen werden: {e}") from e
    return df.rename(columns=COLUMNS)


def _clean(value):
    if value is None or isinstance(value, (list, dict)):
        return value
    return None if pd.isna(value) else value


def _timestamp(value):
    value = _clean(value)
    if value is None or value == "":
        return None
    if isinstance(value, dict) and "seconds" in value:
        # Firestore timestamp objects
        ts = pd.to_datetime(value["seconds"], unit="s", utc=True)
    else:
        ts = pd.to_datetime(value, utc=True, errors="coerce")
    if pd.isna(ts):
        return None
    return as_utc(ts.to_pydatetime())


def _number(value):
    value = _clean(value)
    if value is None or value == "":
        return None
    return float(value)


def _list(value, sep=None):
    value = _clean(value)
    if value is None:
        return []
    if isinstance(value, list):
        return [v for v in value if v]
    text = str(value).strip()
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            return [v for v in parsed if v]
    parts = text.splitlines() if sep is None else text.split(sep)
    return [p.strip() for p in parts if p.strip()]


def _notes(value, when):
    notes = []
    for item in _list(value):
        if isinstance(item, dict):
            text = str(item.get("text") or "").strip()
            created = _timestamp(item.get("createdAt") or item.get("created_at")) or when
            user = item.get("user") or LEGACY_USER
        else:
            text, created, user = str(item).strip(), when, LEGACY_USER
        if text:
            notes.append({"text": text, "created_at": created.isoformat(), "user": user})
    return notes


def _job_from_record(record, company_id, members, now) -> Job:
    status = JobStatus.from_legacy(record.get("status") or "pending")
    assignee = record.get("assigned_to")
    data = validate_payload(JobCreate, {
        "property_id": str(record["property_id"]),
        "title": str(record.get("title") or "").strip(),
        "description": str(record.get("description") or ""),
        "status": status,
        "priority": str(record.get("priority") or "medium").lower(),
        "category": str(record.get("category") or "other").lower(),
        # assignees who are not (or no longer) members are dropped
        "assigned_to": assignee if assignee in members else None,
        "due_date": _timestamp(record.get("due_date")),
        "estimated_hours": _number(record.get("estimated_hours")),
        "actual_hours": _number(record.get("actual_hours")),
        "materials": [str(m) for m in _list(record.get("materials"), sep=",")],
    })
    created = _timestamp(record.get("created_at")) or now
    job = Job(**data, company_id=company_id, created_at=created, updated_at=now)
    job.notes = _notes(record.get("notes"), created)
    if status == JobStatus.completed:
        job.completed_at = _timestamp(record.get("completed_at")) or created
    return job


def import_jobs(ctx, company_id: str, frame: pd.DataFrame) -> dict:
    """Write the rows of ``frame`` as jobs of ``company_id``.

    Rows whose property is not one of the company's are skipped; rows that
    fail validation are reported in ``errors``. Returns counts for reporting.
    """
    result = {"imported": 0, "skipped": 0, "errors": []}
    now = ctx.clock()
    with store_errors(), get_session(ctx.engine) as s:
        properties = set(s.exec(select(Property.id).where(Property.company_id == company_id)).all())
        members = set(s.exec(
            select(AppUser.id)
            .where(AppUser.company_id == company_id)
            .where(AppUser.is_active == True)  # noqa: E712
        ).all())
        for index, row in frame.iterrows():
            record = {k: _clean(v) for k, v in row.to_dict().items()}
            property_id = record.get("property_id")
            if property_id is None or str(property_id) not in properties:
                result["skipped"] += 1
                logger.warning("Row %s references unknown property %r, skipped", index, property_id)
                continue
            try:
                job = _job_from_record(record, company_id, members, now)
            except (ValueError, PortalError) as e:
                result["errors"].append(f"row {index}: {e}")
                continue
            s.add(job)
            result["imported"] += 1
        s.commit()
    logger.info(
        "Legacy import for company=%s: %s imported, %s skipped, %s errors",
        company_id, result["imported"], result["skipped"], len(result["errors"]),
    )
    if result["imported"]:
        ctx.live.notify("jobs", company_id)
    return result
