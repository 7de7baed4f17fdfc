#!/usr/bin/env python3
"""Import jobs from an export of the old flat job collection.

Reads LEGACY_EXPORT_PATH (a .csv or .json file) and COMPANY_ID from the
environment.
"""
import os
import sys
sys.path.insert(0, '.')

from objektbetreuer import legacy
from objektbetreuer.config import configure_logging
from objektbetreuer.context import build_context
from objektbetreuer.database import get_session
from objektbetreuer.models import AppUser


def migrate():
    path = os.getenv("LEGACY_EXPORT_PATH")
    company_id = os.getenv("COMPANY_ID")
    if not (path and company_id):
        print("LEGACY_EXPORT_PATH and COMPANY_ID must be set")
        return 1
    if not os.path.exists(path):
        print(f"[ERROR] Export not found: {path}")
        return 1

    ctx = build_context()
    try:
        with get_session(ctx.engine) as session:
            company = session.get(AppUser, company_id)
        if company is None or not company.is_company:
            print(f"[ERROR] No company with id {company_id}")
            return 1

        frame = legacy.read_export(path)
        print(f"Read {len(frame)} rows from {path}")
        result = legacy.import_jobs(ctx, company_id, frame)
    finally:
        ctx.close()

    print(f"[OK] Imported: {result['imported']}")
    print(f"     Skipped (unknown property): {result['skipped']}")
    if result["errors"]:
        print(f"[WARNING] {len(result['errors'])} rows could not be imported:")
        for err in result["errors"]:
            print(f"    - {err}")
    return 0


if __name__ == "__main__":
    configure_logging()
    sys.exit(migrate())
