#!/usr/bin/env python3
"""Create a company account for the Objektbetreuer Portal.

Reads COMPANY_EMAIL, COMPANY_PASSWORD and COMPANY_NAME from the environment.
"""
import os
import sys
sys.path.insert(0, '.')

from objektbetreuer import accounts
from objektbetreuer.config import configure_logging
from objektbetreuer.context import build_context


def create_company():
    email = os.getenv("COMPANY_EMAIL")
    password = os.getenv("COMPANY_PASSWORD")
    name = os.getenv("COMPANY_NAME")
    if not (email and password and name):
        print("COMPANY_EMAIL, COMPANY_PASSWORD and COMPANY_NAME must be set")
        return 1

    ctx = build_context()
    try:
        if ctx.auth.get_principal_by_email(email):
            print("Account already exists!")
            print(f"Email: {email}")
            return 0
        user, _ = accounts.register_company(ctx, {"email": email, "password": password, "company_name": name})
    finally:
        ctx.close()

    print("Company account created successfully!")
    print(f"Company: {user.company_name}")
    print(f"Company ID: {user.id}")
    print(f"Email: {user.email}")
    return 0


if __name__ == "__main__":
    configure_logging()
    sys.exit(create_company())
