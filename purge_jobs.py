#!/usr/bin/env python3
"""Delete all jobs of a company, or only those of one property.

Reads COMPANY_ID and, optionally, PROPERTY_ID from the environment.
"""
import os
import sys
sys.path.insert(0, '.')

from objektbetreuer.config import configure_logging
from objektbetreuer.context import build_context
from objektbetreuer.crud import JobRepository, Scope
from objektbetreuer.database import get_session
from objektbetreuer.models import AppUser


def purge_jobs():
    company_id = os.getenv("COMPANY_ID")
    property_id = os.getenv("PROPERTY_ID") or None
    if not company_id:
        print("COMPANY_ID must be set")
        return 1

    ctx = build_context()
    try:
        with get_session(ctx.engine) as session:
            company = session.get(AppUser, company_id)
        if company is None or not company.is_company:
            print(f"[ERROR] No company with id {company_id}")
            return 1

        repo = JobRepository(ctx, Scope.for_user(company))
        jobs = repo.list(property_id=property_id)
        if not jobs:
            print("No jobs found.")
            return 0

        print(f"Found {len(jobs)} jobs to delete.")
        for job in jobs:
            repo.delete(job.id)
            print(f"  [OK] Deleted job {job.id} ({job.title})")
    finally:
        ctx.close()

    print(f"\nDeleted {len(jobs)} jobs.")
    return 0


if __name__ == "__main__":
    configure_logging()
    sys.exit(purge_jobs())
