import logging
from typing import Tuple

from .crud import validate_payload
from .database import get_session, store_errors
from .errors import NotAuthorizedError, ValidationError
from .models import AppUser, CompanyRegistration, Role

logger = logging.getLogger("portal.accounts")


def register_company(ctx, payload) -> Tuple[AppUser, str]:
    """Sign up a company account; returns the profile and a bearer token."""
    data = validate_payload(CompanyRegistration, payload)
    company_name = data["company_name"].strip()
    if not company_name:
        raise ValidationError("company_name: Firmenname ist erforderlich.")
    principal = ctx.auth.register(data["email"], data["password"])
    now = ctx.clock()
    try:
        with store_errors(), get_session(ctx.engine) as s:
            user = AppUser(
                id=principal.id,
                email=principal.email,
                role=Role.company,
                display_name=company_name,
                company_name=company_name,
                is_active=True,
                created_at=now,
                updated_at=now,
                last_login=now,
            )
            s.add(user)
            s.commit()
            s.refresh(user)
    except Exception:
        logger.exception("Creating company profile failed, removing principal id=%s", principal.id)
        ctx.auth.delete_principal(principal.id)
        raise
    logger.info("Registered company id=%s", user.id)
    token = ctx.auth.create_access_token(user.id)
    ctx.identity.resolve(user.id)
    return user, token


def login(ctx, email: str, password: str) -> Tuple[AppUser, str]:
    principal, token = ctx.auth.sign_in(email, password)
    user = ctx.identity.resolve(principal.id)
    if user is None:
        # valid credentials but no (active) profile
        ctx.auth.sign_out(token)
        raise NotAuthorizedError()
    ctx.identity.record_login(principal.id)
    return user, token
