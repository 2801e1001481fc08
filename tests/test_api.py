import os
import tempfile
from datetime import date

os.environ.setdefault("BUDGET_DATA_DIR", tempfile.mkdtemp(prefix="budget-ledger-"))
os.environ.setdefault("BUDGET_SCHEDULER_ENABLED", "0")

from fastapi.testclient import TestClient  # noqa: E402

from config import Settings  # noqa: E402
from errors import GENERIC_SAVE_FAILURE, StorageError  # noqa: E402
from main import create_app  # noqa: E402
from services import build_services  # noqa: E402


def make_client(tmp_path, today: date = date(2025, 1, 20)):
    settings = Settings(data_dir=tmp_path, timezone="UTC", undo_limit=5, scheduler_enabled=False)
    services = build_services(settings)
    services.months.today = lambda: today
    return TestClient(create_app(services, enable_scheduler=False)), services


def _create_rent(client, **overrides):
    payload = {"name": "Rent", "amount": 15000, "billing_period": "monthly", "day_of_month": 15}
    payload.update(overrides)
    response = client.post("/api/templates/bills", json=payload)
    assert response.status_code == 201
    return response.json()


def test_close_bill_end_to_end(tmp_path):
    client, _ = make_client(tmp_path)
    category = client.post("/api/categories", json={"name": "Housing", "type": "bill"}).json()
    _create_rent(client, category_id=category["id"])

    response = client.post("/api/months/2025-01")
    assert response.status_code == 201
    rent = response.json()["bill_instances"][0]
    occurrence = rent["occurrences"][0]
    assert occurrence["expected_date"] == "2025-01-15"

    response = client.post(
        f"/api/months/2025-01/bills/{rent['id']}/occurrences/{occurrence['id']}/close",
        json={"closed_date": "2025-01-10"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["total_paid"] == 15000
    assert body["remaining"] == 0
    assert body["is_closed"] is True

    detailed = client.get("/api/months/2025-01/detailed").json()
    section = detailed["billSections"][0]
    assert section["category"]["name"] == "Housing"
    assert section["subtotal"] == {"expected": 15000, "actual": 15000}
    assert detailed["tallies"]["totalExpenses"]["actual"] == 15000

    months = client.get("/api/months").json()
    assert [m["month"] for m in months] == ["2025-01"]


def test_close_instance_without_body_uses_today(tmp_path):
    client, _ = make_client(tmp_path, today=date(2025, 1, 12))
    _create_rent(client)
    rent = client.post("/api/months/2025-01").json()["bill_instances"][0]

    response = client.post(f"/api/months/2025-01/bills/{rent['id']}/close")
    assert response.status_code == 200
    assert response.json()["closed_date"] == "2025-01-12"


def test_locked_month_returns_423(tmp_path):
    client, _ = make_client(tmp_path)
    _create_rent(client)
    rent = client.post("/api/months/2025-01").json()["bill_instances"][0]
    assert client.post("/api/months/2025-01/lock").json()["is_read_only"] is True

    response = client.post(f"/api/months/2025-01/bills/{rent['id']}/reopen")
    assert response.status_code == 423
    assert "read-only" in response.json()["detail"]

    client.post("/api/months/2025-01/unlock")
    response = client.post(f"/api/months/2025-01/bills/{rent['id']}/reopen")
    assert response.status_code == 200


def test_error_statuses(tmp_path):
    client, _ = make_client(tmp_path)
    client.post("/api/months/2025-01")

    assert client.post("/api/months/2025-01").status_code == 409
    assert client.get("/api/months/2025-02").status_code == 404
    assert client.get("/api/templates/bills/missing").status_code == 404

    response = client.get("/api/months/2025-13")
    assert response.status_code == 400
    assert response.json()["field"] == "month"

    response = client.post(
        "/api/templates/bills",
        json={"name": "Rent", "amount": -5, "billing_period": "monthly", "day_of_month": 15},
    )
    assert response.status_code == 422
    assert client.get("/api/templates/savings").status_code == 422


def test_storage_failure_returns_generic_message(tmp_path, monkeypatch):
    client, services = make_client(tmp_path)

    def broken_write(path, value):
        raise StorageError("disk full", str(path))

    monkeypatch.setattr(services.storage, "_write_file", broken_write)
    response = client.post("/api/categories", json={"name": "Housing", "type": "bill"})
    assert response.status_code == 500
    assert response.json() == {"detail": GENERIC_SAVE_FAILURE}


def test_sync_and_undo_over_http(tmp_path):
    client, _ = make_client(tmp_path)
    client.post("/api/months/2025-01")
    salary = client.post(
        "/api/templates/incomes",
        json={"name": "Salary", "amount": 300000, "billing_period": "monthly", "day_of_month": 31},
    ).json()

    added = client.post("/api/months/2025-01/sync").json()["added"]
    assert [i["template_id"] for i in added] == [salary["id"]]
    assert added[0]["total_received"] == 0
    assert client.post("/api/months/2025-01/sync").json() == {"added": []}

    response = client.post("/api/undo")
    assert response.status_code == 200
    assert client.get("/api/templates/incomes").json() == []
    assert client.post("/api/undo").status_code == 409


def test_bank_balances_drive_leftover(tmp_path):
    client, _ = make_client(tmp_path)
    checking = client.post(
        "/api/payment-sources", json={"name": "Checking", "type": "bank_account"}
    ).json()
    _create_rent(client)
    client.post("/api/months/2025-01")

    detailed = client.get("/api/months/2025-01/detailed").json()
    assert detailed["leftoverBreakdown"]["isValid"] is False
    assert detailed["leftover"] == 0

    response = client.put(
        "/api/months/2025-01/bank-balances", json={"balances": {checking["id"]: 100000}}
    )
    assert response.status_code == 200
    detailed = client.get("/api/months/2025-01/detailed").json()
    assert detailed["leftoverBreakdown"]["isValid"] is True
    assert detailed["leftover"] == 100000 - 15000


def test_projection_over_http(tmp_path):
    client, _ = make_client(tmp_path)
    checking = client.post(
        "/api/payment-sources", json={"name": "Checking", "type": "bank_account"}
    ).json()
    _create_rent(client)
    client.post("/api/months/2025-01")

    response = client.get("/api/months/2025-01/projection")
    assert response.status_code == 400
    assert response.json()["field"] == "bank_balances"

    client.put("/api/months/2025-01/bank-balances", json={"balances": {checking["id"]: 20000}})
    body = client.get("/api/months/2025-01/projection").json()
    assert body["start_date"] == "2025-01-01"
    assert body["starting_balance"] == 20000
    assert body["overdue_bills"] == [{"name": "Rent", "amount": 15000, "due_date": "2025-01-15"}]
    today = body["days"][19]
    assert today["date"] == "2025-01-20"
    assert today["balance"] == 5000
    assert today["events"] == [
        {"name": "Rent", "amount": 15000, "type": "expense", "kind": "scheduled"}
    ]
    assert body["days"][0]["balance"] is None


def test_malformed_month_file_returns_generic_500(tmp_path):
    client, _ = make_client(tmp_path)
    (tmp_path / "months").mkdir()
    (tmp_path / "months" / "2025-01.json").write_text('{"month": 5, "bill_instances": "x"}')

    response = client.get("/api/months/2025-01")
    assert response.status_code == 500
    assert response.json() == {"detail": GENERIC_SAVE_FAILURE}


def test_main_runs_uvicorn(monkeypatch):
    import uvicorn

    import main

    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda *args, **kwargs: calls.append((args, kwargs)))
    main.main()
    assert calls == [(("main:app",), {"host": "0.0.0.0", "port": 8000, "reload": False})]
