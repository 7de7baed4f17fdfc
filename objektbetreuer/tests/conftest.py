import random
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from objektbetreuer import accounts
from objektbetreuer.config import Settings
from objektbetreuer.context import build_context
from objektbetreuer.crud import Scope
from objektbetreuer.invitations import InvitationRepository, InvitationWorkflow
from objektbetreuer.main import create_app


class FrozenClock:
    def __init__(self, now=None):
        self.now = now or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class RecordingMailer:
    def __init__(self):
        self.sent = []

    def send_invitation(self, to, token, company_name):
        self.sent.append({"kind": "invitation", "to": to, "token": token, "company": company_name})
        return True

    def send_password_reset(self, to, token):
        self.sent.append({"kind": "password_reset", "to": to, "token": token})
        return True

    def last(self, kind):
        matches = [m for m in self.sent if m["kind"] == kind]
        return matches[-1] if matches else None


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def ctx(clock, mailer):
    context = build_context(
        Settings(database_url="sqlite://"),
        clock=clock,
        mailer=mailer,
        token_rng=random.Random(1234),
    )
    yield context
    context.close()


@pytest.fixture
def client(ctx):
    return TestClient(create_app(ctx))


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def signup(client):
    """Register a company over HTTP; returns (user json, auth headers)."""
    def _signup(email="firma@example.com", password="geheim123", company_name="Hausmeister Service GmbH"):
        r = client.post(
            "/api/auth/register",
            json={"email": email, "password": password, "company_name": company_name},
        )
        assert r.status_code == 200, r.text
        body = r.json()
        return body["user"], _bearer(body["access_token"])
    return _signup


@pytest.fixture
def hire(client):
    """Invite an employee and accept the invitation over HTTP."""
    def _hire(company_headers, email, password="mitarbeiter1", display_name="Max Muster", **permissions):
        r = client.post("/api/invitations", json={"email": email, "permissions": permissions}, headers=company_headers)
        assert r.status_code == 200, r.text
        token = r.json()["token"]
        r = client.post(
            f"/api/invitations/token/{token}/accept",
            json={"password": password, "display_name": display_name},
        )
        assert r.status_code == 200, r.text
        body = r.json()
        return body["user"], _bearer(body["access_token"])
    return _hire


@pytest.fixture
def company(ctx):
    user, _ = accounts.register_company(
        ctx, {"email": "chef@firma-a.de", "password": "geheim123", "company_name": "Firma A"}
    )
    return user


@pytest.fixture
def other_company(ctx):
    user, _ = accounts.register_company(
        ctx, {"email": "chef@firma-b.de", "password": "geheim123", "company_name": "Firma B"}
    )
    return user


@pytest.fixture
def make_employee(ctx):
    def _make(company_user, email, **permissions):
        repo = InvitationRepository(ctx, Scope.for_user(company_user))
        inv = repo.get(repo.create({"email": email, "permissions": permissions}))
        return InvitationWorkflow(ctx).accept(inv.token, "mitarbeiter1", email.split("@")[0])
    return _make
