def test_company_lists_and_updates_employees(client, signup, hire):
    _, headers = signup()
    worker, worker_headers = hire(headers, "worker@example.com", display_name="Erika Muster", can_view_jobs=True)

    r = client.get("/api/employees", headers=headers)
    assert [e["id"] for e in r.json()] == [worker["id"]]
    assert r.json()[0]["company_id"] is not None

    r = client.patch(f"/api/employees/{worker['id']}", json={"can_view_properties": True}, headers=headers)
    assert r.status_code == 200
    assert r.json()["can_view_properties"] is True
    assert r.json()["can_view_jobs"] is True

    # the new flag applies on the employee's next request
    assert client.get("/api/properties", headers=worker_headers).status_code == 200


def test_employees_cannot_manage_employees(client, signup, hire):
    _, headers = signup()
    worker, worker_headers = hire(headers, "worker@example.com", can_edit_jobs=True)
    assert client.get("/api/employees", headers=worker_headers).status_code == 403
    r = client.patch(f"/api/employees/{worker['id']}", json={"can_edit_properties": True}, headers=worker_headers)
    assert r.status_code == 403


def test_deactivated_employee_loses_access(client, signup, hire):
    _, headers = signup()
    worker, worker_headers = hire(headers, "worker@example.com", can_view_jobs=True)

    assert client.delete(f"/api/employees/{worker['id']}", headers=headers).status_code == 200
    assert client.get("/api/employees", headers=headers).json() == []

    r = client.get("/api/auth/me", headers=worker_headers)
    assert r.status_code == 401
    assert r.json()["code"] == "auth/not-authorized"

    # credentials still check out but there is no active profile behind them
    r = client.post("/api/auth/login", data={"username": "worker@example.com", "password": "mitarbeiter1"})
    assert r.status_code == 401
    assert r.json()["code"] == "auth/not-authorized"


def test_other_company_cannot_touch_employee(client, signup, hire):
    _, headers = signup()
    worker, _ = hire(headers, "worker@example.com")
    _, other_headers = signup(email="b@firma-b.de", company_name="Firma B")
    assert client.get(f"/api/employees/{worker['id']}", headers=other_headers).status_code == 404
    assert client.delete(f"/api/employees/{worker['id']}", headers=other_headers).status_code == 404
