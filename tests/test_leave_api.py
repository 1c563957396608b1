from urllib.parse import parse_qs, urlparse

import pytest
from starlette.websockets import WebSocketDisconnect

from auth import create_access_token


APPLY = {
    "leave_type": "Annual Leave",
    "start_date": "2030-06-10",
    "end_date": "2030-06-12",
    "reason": "Family trip",
}


def _token_from(link):
    return parse_qs(urlparse(link).query)["token"][0]


def _annual(balances):
    return next(b for b in balances if b["leave_type"] == "Annual Leave")


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"


def test_users_me(client, org, headers_for):
    r = client.get("/users/me", headers=headers_for(org.employee))
    assert r.status_code == 200
    assert r.json()["username"] == "eve"
    assert r.json()["role"] == "employee"


def test_requires_authentication(client, org):
    assert client.get("/leave/mine").status_code == 401


def test_login(client, person_factory):
    person_factory("olga", password="s3cret-pass")

    r = client.post("/token", data={"username": "olga", "password": "s3cret-pass"})
    assert r.status_code == 200
    assert r.json()["token_type"] == "bearer"

    bad = client.post("/token", data={"username": "olga", "password": "nope"})
    assert bad.status_code == 401
    unknown = client.post("/token", data={"username": "nobody", "password": "nope"})
    assert unknown.status_code == 400


def test_stale_role_token_is_rejected(client, org):
    token = create_access_token({"sub": "eve", "role": "admin"})
    r = client.get("/users/me", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401


def test_apply_approve_by_email_then_admin(client, org, headers_for, email_sender, live_channel):
    r = client.post("/leave", json=APPLY, headers=headers_for(org.employee))
    assert r.status_code == 201, r.text
    leave = r.json()["leave"]
    assert leave["status"] == "pending"
    assert leave["number_of_days"] == 3

    # background dispatch has run by the time the response is returned
    mails = {m["to"]: m for m in email_sender.application}
    assert set(mails) == {"henry@acme.com", "alice@acme.com"}
    assert any(role == "admin" for role, _ in live_channel.to_roles)

    token = _token_from(mails["henry@acme.com"]["approve_link"])
    r = client.get("/leave/email-action", params={"token": token, "action": "approve"})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["approver_name"] == "Henry"
    assert body["action"] == "Approved"
    assert body["leave"]["hod_status"] == "Approved"
    assert body["leave"]["status"] == "pending"

    replay = client.get("/leave/email-action", params={"token": token, "action": "approve"})
    assert replay.status_code == 400

    r = client.patch(
        f"/leave/{leave['id']}/approve-admin",
        json={"status": "approved", "comment": "Enjoy"},
        headers=headers_for(org.admin),
    )
    assert r.status_code == 200, r.text
    assert r.json()["leave"]["status"] == "Approved"

    [decision] = email_sender.decision
    assert decision["to"] == "eve@acme.com"
    assert decision["status"] == "Approved"
    assert {m["to"] for m in email_sender.info} >= {"henry@acme.com", "alice@acme.com"}

    r = client.get("/leave/balance", params={"year": 2030}, headers=headers_for(org.employee))
    assert r.status_code == 200
    annual = _annual(r.json())
    assert annual["used_balance"] == 3
    assert annual["remaining_balance"] == 9


def test_overlap_endpoints(client, org, headers_for):
    headers = headers_for(org.employee)
    client.post("/leave", json=APPLY, headers=headers)

    r = client.post("/leave/check-overlap", json={"start_date": "2030-06-12", "end_date": "2030-06-20"}, headers=headers)
    assert r.status_code == 200
    assert r.json()["has_overlap"] is True
    assert len(r.json()["conflicts"]) == 1

    r = client.post("/leave", json={**APPLY, "start_date": "2030-06-11"}, headers=headers)
    assert r.status_code == 400
    assert "overlaps these dates" in r.json()["detail"]


def test_working_days_endpoint(client, org, headers_for):
    headers = headers_for(org.employee)

    r = client.post("/leave/working-days", json={"start_date": "2030-06-10", "end_date": "2030-06-16"}, headers=headers)
    assert r.status_code == 200
    assert r.json() == {
        "start_date": "2030-06-10",
        "end_date": "2030-06-16",
        "calendar_days": 7,
        "working_days": 5,
    }

    r = client.post("/leave/working-days", json={"start_date": "2030-06-15", "end_date": "2030-06-16"}, headers=headers)
    assert r.status_code == 400
    assert "No working days" in r.json()["detail"]

    assert client.post("/leave/working-days", json={"start_date": "2030-06-10", "end_date": "2030-06-16"}).status_code == 401


def test_hod_endpoints_are_scoped(client, org, headers_for):
    leave_id = client.post("/leave", json=APPLY, headers=headers_for(org.employee)).json()["leave"]["id"]

    assert client.get("/leave/all", headers=headers_for(org.employee)).status_code == 403

    r = client.patch(f"/leave/{leave_id}/approve-hod", json={"status": "Approved"}, headers=headers_for(org.sales_hod))
    assert r.status_code == 403

    r = client.patch(f"/leave/{leave_id}/approve-admin", json={"status": "Approved"}, headers=headers_for(org.hod))
    assert r.status_code == 403

    r = client.patch(f"/leave/{leave_id}/approve-hod", json={"status": "maybe"}, headers=headers_for(org.hod))
    assert r.status_code == 422

    r = client.patch(f"/leave/{leave_id}/approve-hod", json={"status": "Rejected"}, headers=headers_for(org.hod))
    assert r.status_code == 200
    assert r.json()["leave"]["status"] == "Rejected"

    r = client.patch(f"/leave/{leave_id}/approve-admin", json={"status": "Approved"}, headers=headers_for(org.admin))
    assert r.status_code == 403

    listed = client.get("/leave/all", params={"status": "Rejected"}, headers=headers_for(org.hod))
    assert [item["id"] for item in listed.json()] == [leave_id]


def test_bulk_admin_approval(client, org, headers_for):
    ids = [
        client.post("/leave", json=APPLY, headers=headers_for(org.employee)).json()["leave"]["id"],
        client.post("/leave", json=APPLY, headers=headers_for(org.sales_employee)).json()["leave"]["id"],
    ]

    r = client.post(
        "/leave/bulk-approve-admin",
        json={"leave_ids": ids + [999], "status": "Approved"},
        headers=headers_for(org.admin),
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["message"] == "Processed 2 of 3 leave applications"
    assert body["succeeded"] == 2
    assert body["failed_count"] == 1
    assert body["failed"][0] == {"id": 999, "success": False, "error": "Leave application not found", "status": 404}

    assert client.post(
        "/leave/bulk-approve-admin",
        json={"leave_ids": ids, "status": "Approved"},
        headers=headers_for(org.hod),
    ).status_code == 403


def test_edit_and_delete(client, org, headers_for):
    employee = headers_for(org.employee)
    leave_id = client.post("/leave", json=APPLY, headers=employee).json()["leave"]["id"]

    r = client.patch(f"/leave/{leave_id}", json={"end_date": "2030-06-13"}, headers=employee)
    assert r.status_code == 200
    assert r.json()["leave"]["number_of_days"] == 4

    client.patch(f"/leave/{leave_id}/approve-hod", json={"status": "Approved"}, headers=headers_for(org.hod))
    assert client.delete(f"/leave/{leave_id}", headers=employee).status_code == 403

    r = client.get("/leave/balance", params={"year": 2030}, headers=employee)
    assert _annual(r.json())["used_balance"] == 4

    r = client.delete(f"/leave/{leave_id}", headers=headers_for(org.admin))
    assert r.status_code == 200

    r = client.get("/leave/balance", params={"year": 2030}, headers=employee)
    assert _annual(r.json())["used_balance"] == 0
    assert client.get(f"/leave/{leave_id}", headers=employee).status_code == 404


def test_balance_of_another_employee_is_admin_only(client, org, headers_for):
    params = {"year": 2030, "employee_id": org.sales_employee.employee_id}
    assert client.get("/leave/balance", params=params, headers=headers_for(org.employee)).status_code == 403
    assert client.get("/leave/balance", params=params, headers=headers_for(org.admin)).status_code == 200


def test_leave_types_catalog(client, org, headers_for):
    admin = headers_for(org.admin)

    r = client.post("/leave-types", json={"name": "Comp Off", "code": "CO", "max_days": 5}, headers=admin)
    assert r.status_code == 201
    type_id = r.json()["id"]

    assert client.post("/leave-types", json={"name": "Comp Off"}, headers=admin).status_code == 400
    assert client.post("/leave-types", json={"name": "Other"}, headers=headers_for(org.employee)).status_code == 403

    names = [t["name"] for t in client.get("/leave-types", headers=headers_for(org.employee)).json()]
    assert "Comp Off" in names
    assert "Sabbatical" not in names

    assert client.delete(f"/leave-types/{type_id}", headers=admin).status_code == 204
    r = client.post("/leave", json={**APPLY, "leave_type": "Comp Off"}, headers=headers_for(org.employee))
    assert r.status_code == 400


def test_live_events_socket(client, org):
    token = create_access_token({"sub": "eve", "role": "employee"})
    with client.websocket_connect(f"/leave/events?token={token}") as ws:
        ws.send_text("ping")

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/leave/events?token=not-a-jwt") as ws:
            ws.receive_text()
