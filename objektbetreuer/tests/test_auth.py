import pytest

from objektbetreuer.errors import UserNotFoundError


def _login(client, email, password):
    return client.post("/api/auth/login", data={"username": email, "password": password})


def test_register_and_me(client, signup):
    user, headers = signup()
    assert user["role"] == "company"
    assert user["company_name"] == "Hausmeister Service GmbH"

    r = client.get("/api/auth/me", headers=headers)
    assert r.status_code == 200
    assert r.json()["id"] == user["id"]
    assert r.json()["email"] == "firma@example.com"


def test_login_normalizes_email(client, signup):
    user, _ = signup()
    r = _login(client, "  Firma@Example.COM ", "geheim123")
    assert r.status_code == 200
    assert r.json()["user"]["id"] == user["id"]
    assert r.json()["token_type"] == "bearer"


def test_wrong_password_and_unknown_user(client, signup):
    signup()
    r = _login(client, "firma@example.com", "falsch")
    assert r.status_code == 401
    assert r.json()["code"] == "auth/wrong-password"

    r = _login(client, "niemand@example.com", "geheim123")
    assert r.status_code == 401
    assert r.json()["code"] == "auth/user-not-found"


def test_register_rejects_weak_password_invalid_email_and_duplicates(client, signup):
    r = client.post("/api/auth/register", json={"email": "a@b.de", "password": "123", "company_name": "X"})
    assert r.status_code == 400
    assert r.json()["code"] == "auth/weak-password"

    r = client.post("/api/auth/register", json={"email": "kein-at", "password": "geheim123", "company_name": "X"})
    assert r.status_code == 400
    assert r.json()["code"] == "auth/invalid-email"

    signup()
    r = client.post(
        "/api/auth/register",
        json={"email": "firma@example.com", "password": "geheim123", "company_name": "Nochmal"},
    )
    assert r.status_code == 409
    assert r.json()["code"] == "auth/email-already-in-use"


def test_failed_registration_leaves_no_principal(ctx, client):
    r = client.post("/api/auth/register", json={"email": "a@b.de", "password": "geheim123", "company_name": "   "})
    assert r.status_code == 422
    assert r.json()["code"] == "invalid-argument"
    assert ctx.auth.get_principal_by_email("a@b.de") is None


def test_login_rate_limit(client, clock, signup):
    signup()
    for _ in range(5):
        assert _login(client, "firma@example.com", "falsch").status_code == 401

    r = _login(client, "firma@example.com", "geheim123")
    assert r.status_code == 429
    assert r.json()["code"] == "auth/too-many-requests"

    clock.advance(seconds=301)
    assert _login(client, "firma@example.com", "geheim123").status_code == 200


def test_failed_login_bookkeeping_is_released(ctx, clock):
    for i in range(20):
        with pytest.raises(UserNotFoundError):
            ctx.auth.sign_in(f"niemand{i}@example.com", "egal")
    assert len(ctx.auth._failures) == 20

    clock.advance(seconds=301)
    for i in range(20):
        with pytest.raises(UserNotFoundError):
            ctx.auth.sign_in(f"niemand{i}@example.com", "egal")
    # old attempts aged out; only the fresh ones are kept
    assert all(len(q) == 1 for q in ctx.auth._failures.values())

    clock.advance(seconds=301)
    ctx.auth._check_rate_limit("niemand0@example.com")
    ctx.auth._check_rate_limit("nie-versucht@example.com")
    assert "niemand0@example.com" not in ctx.auth._failures
    assert "nie-versucht@example.com" not in ctx.auth._failures
    assert len(ctx.auth._failures) == 19


def test_logout_revokes_token(client, signup):
    _, headers = signup()
    assert client.post("/api/auth/logout", headers=headers).status_code == 200

    r = client.get("/api/auth/me", headers=headers)
    assert r.status_code == 401
    assert r.headers.get("www-authenticate") == "Bearer"


def test_token_expires_with_clock(client, clock, signup):
    _, headers = signup()
    clock.advance(days=2)
    assert client.get("/api/auth/me", headers=headers).status_code == 401


def test_missing_or_garbage_token(client):
    assert client.get("/api/auth/me").status_code == 401
    r = client.get("/api/auth/me", headers={"Authorization": "Bearer nonsense"})
    assert r.status_code == 401
    assert r.json()["code"] == "auth/not-authorized"


def test_password_reset_flow(client, mailer, signup):
    signup()
    r = client.post("/api/auth/password-reset", json={"email": "firma@example.com"})
    assert r.status_code == 200
    sent = mailer.last("password_reset")
    assert sent["to"] == "firma@example.com"

    r = client.post("/api/auth/password-reset/confirm", json={"token": sent["token"], "password": "neuespw1"})
    assert r.status_code == 200

    assert _login(client, "firma@example.com", "geheim123").status_code == 401
    assert _login(client, "firma@example.com", "neuespw1").status_code == 200

    # links are single use
    r = client.post("/api/auth/password-reset/confirm", json={"token": sent["token"], "password": "anderes1"})
    assert r.status_code == 401


def test_password_reset_for_unknown_email_is_silent(client, mailer):
    r = client.post("/api/auth/password-reset", json={"email": "wer@example.com"})
    assert r.status_code == 200
    assert mailer.last("password_reset") is None


def test_password_reset_link_expires(client, clock, mailer, signup):
    signup()
    client.post("/api/auth/password-reset", json={"email": "firma@example.com"})
    clock.advance(minutes=61)
    r = client.post(
        "/api/auth/password-reset/confirm",
        json={"token": mailer.last("password_reset")["token"], "password": "neuespw1"},
    )
    assert r.status_code == 401
