"""Employee invitations.

pending -> accepted | expired. A company invites an email address with a set
of permissions; the invitee opens the token link, picks a password and gets
an employee account of that company.
"""
import logging
import string
from datetime import timedelta

from sqlalchemy import update
from sqlmodel import select

from .auth import EMAIL_RE, normalize_email
from .crud import TenantRepository, validate_payload
from .database import get_session, store_errors
from .errors import (
    InvitationAlreadyAcceptedError,
    InvitationExpiredError,
    InvitationNotFoundError,
    ValidationError,
)
from .models import (
    PERMISSION_FIELDS,
    AppUser,
    EmployeeInvitation,
    InvitationCreate,
    InvitationStatus,
    Role,
)

logger = logging.getLogger("portal.invitations")

TOKEN_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits
TOKEN_LENGTH = 32


def generate_token(rng) -> str:
    return "".join(rng.choice(TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))


def check_usable(invitation: EmployeeInvitation, now) -> EmployeeInvitation:
    """Raise unless the invitation can still be accepted at ``now``."""
    if invitation.status == InvitationStatus.accepted:
        raise InvitationAlreadyAcceptedError()
    # stored status and wall clock are both authoritative
    if invitation.status == InvitationStatus.expired or now > invitation.expires_at:
        raise InvitationExpiredError()
    return invitation


class InvitationRepository(TenantRepository):
    model = EmployeeInvitation
    entity = "invitations"
    category = None
    create_schema = InvitationCreate
    filter_fields = ("status",)

    def create(self, payload) -> str:
        self._require("edit")
        data = validate_payload(InvitationCreate, payload)
        email = normalize_email(data["email"])
        if not EMAIL_RE.match(email):
            raise ValidationError("email: Ungültige E-Mail-Adresse.")
        now = self._now()
        with store_errors(), get_session(self.ctx.engine) as s:
            member = s.exec(
                select(AppUser)
                .where(AppUser.email == email)
                .where(AppUser.company_id == self.scope.company_id)
                .where(AppUser.is_active == True)  # noqa: E712
            ).first()
            if member:
                raise ValidationError("Diese Person ist bereits Mitarbeiter Ihres Unternehmens.")
            open_invites = s.exec(
                self._base_query()
                .where(EmployeeInvitation.email == email)
                .where(EmployeeInvitation.status == InvitationStatus.pending)
            ).all()
            if any(inv.expires_at >= now for inv in open_invites):
                raise ValidationError("Für diese E-Mail-Adresse besteht bereits eine offene Einladung.")
            inv = EmployeeInvitation(
                company_id=self.scope.company_id,
                email=email,
                status=InvitationStatus.pending,
                token=self._unique_token(s),
                created_at=now,
                expires_at=now + timedelta(days=self.ctx.settings.invitation_ttl_days),
                **data["permissions"],
            )
            s.add(inv)
            s.commit()
            s.refresh(inv)
        logger.info("Invitation id=%s created by company=%s", inv.id, self.scope.company_id)
        self._send(inv)
        self._notify()
        return inv.id

    def _unique_token(self, s) -> str:
        for _ in range(5):
            token = generate_token(self.ctx.token_rng)
            if not s.exec(select(EmployeeInvitation).where(EmployeeInvitation.token == token)).first():
                return token
        raise RuntimeError("could not generate a unique invitation token")

    def _send(self, inv: EmployeeInvitation) -> bool:
        company = self.actor.company_name or self.actor.display_name or "Ihr Unternehmen"
        sent = self.ctx.mailer.send_invitation(inv.email, inv.token, company)
        if not sent:
            logger.warning("Invitation mail for id=%s was not delivered", inv.id)
        return sent

    def resend(self, record_id: str) -> EmployeeInvitation:
        """Issue a fresh token and expiry for a pending invitation and mail it again.

        Expired invitations stay expired; the company invites the address anew.
        """
        self._require("edit")
        now = self._now()
        with store_errors(), get_session(self.ctx.engine) as s:
            inv = self._load(s, record_id)
            if inv is None:
                raise InvitationNotFoundError()
            check_usable(inv, now)
            inv.token = self._unique_token(s)
            inv.expires_at = now + timedelta(days=self.ctx.settings.invitation_ttl_days)
            s.add(inv)
            s.commit()
            s.refresh(inv)
        self._send(inv)
        self._notify()
        return inv

    def delete(self, record_id: str) -> None:
        """Revoke an invitation that has not been accepted."""
        self._require("edit")
        with store_errors(), get_session(self.ctx.engine) as s:
            inv = self._load(s, record_id)
            if inv is None:
                raise InvitationNotFoundError()
            if inv.status == InvitationStatus.accepted:
                raise InvitationAlreadyAcceptedError()
            s.delete(inv)
            s.commit()
        logger.info("Invitation id=%s revoked", record_id)
        self._notify()

    revoke = delete

    def expire_stale(self) -> int:
        self._require("edit")
        now = self._now()
        with store_errors(), get_session(self.ctx.engine) as s:
            result = s.execute(
                update(EmployeeInvitation)
                .where(EmployeeInvitation.company_id == self.scope.company_id)
                .where(EmployeeInvitation.status == InvitationStatus.pending)
                .where(EmployeeInvitation.expires_at < now)
                .values(status=InvitationStatus.expired)
            )
            s.commit()
            count = result.rowcount or 0
        if count:
            logger.info("Expired %s invitations of company=%s", count, self.scope.company_id)
            self._notify()
        return count


class InvitationWorkflow:
    """Token side of the invitation flow; needs no signed-in user."""

    def __init__(self, ctx):
        self.ctx = ctx

    def resolve(self, token: str) -> EmployeeInvitation:
        if not token:
            raise InvitationNotFoundError()
        with store_errors(), get_session(self.ctx.engine) as s:
            inv = s.exec(select(EmployeeInvitation).where(EmployeeInvitation.token == token)).first()
        if inv is None:
            raise InvitationNotFoundError()
        return check_usable(inv, self.ctx.clock())

    def accept(self, token: str, password: str, display_name: str) -> AppUser:
        display_name = (display_name or "").strip()
        if not display_name:
            raise ValidationError("display_name: Name ist erforderlich.")
        inv = self.resolve(token)

        # phase 1: the identity provider (outside our transaction)
        principal = self.ctx.auth.register(inv.email, password)

        # phase 2: profile + invitation in one transaction, or undo phase 1
        try:
            user = self._commit_acceptance(inv, principal.id, display_name)
        except Exception:
            logger.exception("Accepting invitation id=%s failed, removing principal id=%s", inv.id, principal.id)
            self.ctx.auth.delete_principal(principal.id)
            raise
        logger.info("Invitation id=%s accepted by principal id=%s", inv.id, principal.id)
        self.ctx.live.notify("invitations", inv.company_id)
        self.ctx.live.notify("employees", inv.company_id)
        return user

    def _commit_acceptance(self, inv: EmployeeInvitation, principal_id: str, display_name: str) -> AppUser:
        now = self.ctx.clock()
        with store_errors(), get_session(self.ctx.engine) as s:
            try:
                result = s.execute(
                    update(EmployeeInvitation)
                    .where(EmployeeInvitation.id == inv.id)
                    .where(EmployeeInvitation.status == InvitationStatus.pending)
                    .values(status=InvitationStatus.accepted, accepted_at=now, accepted_by=principal_id)
                )
                if result.rowcount != 1:
                    # someone else got there first
                    raise InvitationAlreadyAcceptedError()
                user = AppUser(
                    id=principal_id,
                    email=inv.email,
                    role=Role.employee,
                    display_name=display_name,
                    company_id=inv.company_id,
                    is_active=True,
                    created_at=now,
                    updated_at=now,
                    last_login=now,
                    **{f: getattr(inv, f) for f in PERMISSION_FIELDS},
                )
                s.add(user)
                s.commit()
                s.refresh(user)
            except Exception:
                s.rollback()
                raise
        return user


def expire_overdue(ctx) -> int:
    """Mark overdue pending invitations of every company as expired."""
    now = ctx.clock()
    with store_errors(), get_session(ctx.engine) as s:
        companies = set(s.exec(
            select(EmployeeInvitation.company_id)
            .where(EmployeeInvitation.status == InvitationStatus.pending)
            .where(EmployeeInvitation.expires_at < now)
        ).all())
        if not companies:
            return 0
        result = s.execute(
            update(EmployeeInvitation)
            .where(EmployeeInvitation.status == InvitationStatus.pending)
            .where(EmployeeInvitation.expires_at < now)
            .values(status=InvitationStatus.expired)
        )
        s.commit()
        count = result.rowcount or 0
    logger.info("Expired %s invitations across %s companies", count, len(companies))
    for company_id in companies:
        ctx.live.notify("invitations", company_id)
    return count
