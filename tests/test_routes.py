"""End-to-end tests for the reimbursement HTTP routes."""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from io import BytesIO

from packages.reimbursement_common import ItemDraft


def _payload(**overrides):
    payload = {
        "title": "March travel",
        "description": "Client visit",
        "items": [
            {"description": "Taxi", "amount": 50000, "category": "Transportation", "date": "2025-03-01"},
            {"description": "Hotel", "amount": "75000", "category": "Business Travel", "date": "2025-03-02"},
        ],
    }
    payload.update(overrides)
    return payload


def _create_request(client, headers, **overrides):
    """Submit a valid request and return the response."""

    return client.post("/requests", json=_payload(**overrides), headers=headers)


def test_identity_headers_are_required(client):
    """Calls without an actor are unauthenticated."""

    response = client.post("/requests", json=_payload())
    assert response.status_code == 401
    assert response.get_json()["error"] == "authentication_required"

    bad_role = client.get("/requests", headers={"X-Actor-Id": "x", "X-Actor-Role": "root"})
    assert bad_role.status_code == 401


def test_full_request_flow(client, employee_headers, admin_headers):
    """Submit, approve, pay, and read back a request over HTTP."""

    created = _create_request(client, employee_headers)
    assert created.status_code == 201
    body = created.get_json()
    assert body["status"] == "pending"
    assert body["total_amount"] == "125000.00"
    assert body["user_id"] == "emp-1"
    location = created.headers["Location"]
    assert location.endswith(f"/requests/{body['id']}")

    approved = client.post(f"{location}/approve", json={"notes": "ok"}, headers=admin_headers)
    assert approved.status_code == 200
    assert approved.get_json()["processed_by"] == "admin-1"
    assert approved.get_json()["notes"] == "ok"

    again = client.post(f"{location}/approve", headers=admin_headers)
    assert again.status_code == 409
    assert again.get_json()["current_status"] == "approved"

    paid = client.post(f"{location}/pay", headers=admin_headers)
    assert paid.get_json()["status"] == "paid"

    fetched = client.get(location, headers=employee_headers)
    assert fetched.status_code == 200
    assert fetched.get_json()["status"] == "paid"

    history = client.get(f"{location}/history", headers=admin_headers)
    assert [entry["to_status"] for entry in history.get_json()] == ["approved", "paid"]


def test_validation_errors_are_listed(client, employee_headers):
    """Bad submissions answer 400 with every problem."""

    response = _create_request(
        client,
        employee_headers,
        items=[{"description": "", "amount": "0", "category": "Other", "date": "2025-03-01"}],
    )
    assert response.status_code == 400
    body = response.get_json()
    assert body["error"] == "validation_error"
    assert body["errors"] == [
        "Item 1: Description is required.",
        "Item 1: Amount must be greater than zero.",
    ]
    assert client.get("/requests", headers=employee_headers).get_json() == []

    not_object = client.post("/requests", json=["x"], headers=employee_headers)
    assert not_object.status_code == 400


def test_oversized_and_mistyped_items_are_rejected(client, employee_headers):
    """Huge amounts and non-text fields answer 400 and nothing is saved."""

    huge = _create_request(
        client,
        employee_headers,
        items=[{"description": "Yacht", "amount": "100000000000000000000", "category": "Other", "date": "2025-03-01"}],
    )
    assert huge.status_code == 400
    assert huge.get_json()["errors"] == ["Item 1: Amount cannot exceed 999,999,999,999.99."]

    mistyped = _create_request(
        client,
        employee_headers,
        items=[{"description": 123, "amount": "10", "category": "Other", "date": "2025-03-01"}],
    )
    assert mistyped.status_code == 400
    assert mistyped.get_json()["errors"] == ["Item 1: Description must be text."]

    location = _create_request(client, employee_headers).headers["Location"]
    edit = client.put(
        location,
        json=_payload(items=[{"description": "Taxi", "amount": "1E+30", "category": "Other", "date": "2025-03-01"}]),
        headers=employee_headers,
    )
    assert edit.status_code == 400
    assert client.get(location, headers=employee_headers).get_json()["total_amount"] == "125000.00"
    assert len(client.get("/requests", headers=employee_headers).get_json()) == 1


def test_employees_cannot_act_as_admins(client, employee_headers):
    """Employees are refused transitions, deletes, and other owners' data."""

    location = _create_request(client, employee_headers).headers["Location"]
    other = {"X-Actor-Id": "emp-2", "X-Actor-Role": "employee"}

    assert client.post(f"{location}/reject", headers=employee_headers).status_code == 403
    assert client.delete(location, headers=employee_headers).status_code == 403
    assert client.get(location, headers=other).status_code == 403
    assert client.get("/requests?owner=emp-1", headers=other).status_code == 403
    assert client.get(location, headers=employee_headers).get_json()["status"] == "pending"


def test_pay_before_approval_conflicts(client, employee_headers, admin_headers):
    """Marking a pending request paid reports the current status."""

    location = _create_request(client, employee_headers).headers["Location"]

    response = client.post(f"{location}/pay", headers=admin_headers)
    assert response.status_code == 409
    assert response.get_json()["current_status"] == "pending"


def test_missing_request_is_not_found(client, admin_headers):
    """Unknown ids answer 404 for reads, transitions, and deletes."""

    assert client.get("/requests/nope", headers=admin_headers).status_code == 404
    assert client.post("/requests/nope/approve", headers=admin_headers).status_code == 404
    assert client.delete("/requests/nope", headers=admin_headers).status_code == 404


def test_listing(client, employee_headers, admin_headers):
    """Employees see their own requests; admins can filter everything."""

    other = {"X-Actor-Id": "emp-2", "X-Actor-Role": "employee"}
    mine = _create_request(client, employee_headers).get_json()
    theirs = _create_request(client, other).get_json()
    client.post(f"/requests/{theirs['id']}/reject", headers=admin_headers)

    own = client.get("/requests", headers=employee_headers).get_json()
    assert [r["id"] for r in own] == [mine["id"]]

    by_owner = client.get("/requests?owner=emp-2", headers=admin_headers).get_json()
    assert [r["id"] for r in by_owner] == [theirs["id"]]

    rejected = client.get("/requests?status=rejected", headers=admin_headers).get_json()
    assert [r["id"] for r in rejected] == [theirs["id"]]
    assert len(client.get("/requests", headers=admin_headers).get_json()) == 2
    assert client.get("/requests?status=lost", headers=admin_headers).status_code == 400


def test_owner_can_edit_pending_request(client, employee_headers, admin_headers):
    """PUT replaces items while pending and conflicts afterwards."""

    location = _create_request(client, employee_headers).headers["Location"]
    new_items = [{"description": "Train", "amount": "12.50", "category": "Transportation", "date": "2025-03-04"}]

    updated = client.put(
        location, json=_payload(title="Train instead", items=new_items), headers=employee_headers
    )
    assert updated.status_code == 200
    assert updated.get_json()["total_amount"] == "12.50"
    assert len(updated.get_json()["items"]) == 1

    client.post(f"{location}/approve", headers=admin_headers)
    locked = client.put(location, json=_payload(), headers=employee_headers)
    assert locked.status_code == 409


def test_override_and_delete(client, employee_headers, admin_headers):
    """Admins can force a status and delete requests."""

    location = _create_request(client, employee_headers).headers["Location"]

    forced = client.post(
        f"{location}/status", json={"status": "paid", "notes": "paid offline"}, headers=admin_headers
    )
    assert forced.status_code == 200
    assert forced.get_json()["status"] == "paid"
    assert client.post(f"{location}/status", json={}, headers=admin_headers).status_code == 400

    history = client.get(f"{location}/history", headers=admin_headers).get_json()
    assert history[-1]["kind"] == "override"

    deleted = client.delete(location, headers=admin_headers)
    assert deleted.status_code == 204
    assert client.get(location, headers=admin_headers).status_code == 404


def test_receipt_upload_and_download(client, employee_headers):
    """A receipt can be attached to an item and downloaded by its owner."""

    body = _create_request(client, employee_headers).get_json()
    item_id = body["items"][0]["id"]

    upload = client.post(
        f"/requests/{body['id']}/items/{item_id}/receipt",
        data={"receipt": (BytesIO(b"%PDF-1.4"), "taxi.pdf", "application/pdf")},
        content_type="multipart/form-data",
        headers=employee_headers,
    )
    assert upload.status_code == 201
    reference = upload.get_json()["file_path"]

    fetched = client.get(f"/requests/{body['id']}", headers=employee_headers).get_json()
    assert fetched["items"][0]["receipt_reference"] == reference

    download = client.get(f"/receipts/{reference}", headers=employee_headers)
    assert download.status_code == 200
    assert download.data == b"%PDF-1.4"

    other = {"X-Actor-Id": "emp-2", "X-Actor-Role": "employee"}
    assert client.get(f"/receipts/{reference}", headers=other).status_code == 403


def test_receipt_failure_keeps_request(client, app, tmp_path, employee_headers):
    """A failed upload is reported while the request stays saved."""

    blocker = tmp_path / "blocked"
    blocker.write_text("not a directory")
    app.extensions["reimbursements"]["storage"].base_dir = blocker
    body = _create_request(client, employee_headers).get_json()

    upload = client.post(
        f"/requests/{body['id']}/items/{body['items'][0]['id']}/receipt",
        data={"receipt": (BytesIO(b"%PDF-1.4"), "taxi.pdf", "application/pdf")},
        content_type="multipart/form-data",
        headers=employee_headers,
    )
    assert upload.status_code == 503
    assert "saved" in upload.get_json()["message"]
    assert client.get(f"/requests/{body['id']}", headers=employee_headers).status_code == 200


def test_unsupported_receipt_type(client, employee_headers):
    """Uploads of unexpected file types are validation errors."""

    body = _create_request(client, employee_headers).get_json()
    response = client.post(
        f"/requests/{body['id']}/items/{body['items'][0]['id']}/receipt",
        data={"receipt": (BytesIO(b"hello"), "notes.txt", "text/plain")},
        content_type="multipart/form-data",
        headers=employee_headers,
    )
    assert response.status_code == 400


def test_preview_and_categories(client, employee_headers):
    """The preview is plain text and categories are public."""

    location = _create_request(client, employee_headers).headers["Location"]

    preview = client.get(f"{location}/preview", headers=employee_headers)
    assert preview.status_code == 200
    assert preview.mimetype == "text/plain"
    assert b"Total: 125,000.00" in preview.data
    assert b"Next actions: approve, reject" in preview.data

    categories = client.get("/categories").get_json()
    assert "Transportation" in categories


def test_reports(client, repo, clock, admin_headers, employee_headers):
    """Monthly, yearly, and summary figures are served to the dashboard."""

    for amount in ("100000", "200000"):
        repo.create_request(
            user_id="emp-1",
            title="March",
            description="",
            items=[ItemDraft("Expense", Decimal(amount), "Other", date(2025, 3, 1))],
        )
    clock.now = datetime(2025, 4, 2, tzinfo=timezone.utc)
    repo.create_request(
        user_id="emp-2",
        title="April",
        description="",
        items=[ItemDraft("Expense", Decimal("5"), "Other", date(2025, 4, 1))],
    )

    month = client.get("/reports/month?month=3&year=2025", headers=admin_headers)
    assert month.get_json() == {
        "month": 3,
        "year": 2025,
        "statuses": None,
        "total_amount": "300000.00",
    }
    year = client.get("/reports/year?year=2025&status=pending&status=paid", headers=admin_headers)
    assert year.get_json()["total_amount"] == "300005.00"
    assert year.get_json()["statuses"] == ["pending", "paid"]

    assert client.get("/reports/month?year=2025", headers=admin_headers).status_code == 400
    assert client.get("/reports/month?month=13&year=2025", headers=admin_headers).status_code == 400
    assert client.get("/reports/year?year=2025", headers=employee_headers).status_code == 403

    summary = client.get("/reports/summary", headers=employee_headers).get_json()
    assert summary["total"] == 2
    assert summary["pending"] == 2
    assert client.get("/reports/summary?owner=emp-2", headers=employee_headers).status_code == 403
    assert client.get("/reports/summary", headers=admin_headers).get_json()["total"] == 3
