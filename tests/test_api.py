from datetime import date

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from settlement import main
from settlement.db import Base
from settlement.debounce import RecomputeDebouncer
from settlement.main import app, get_db, get_session_factory, stats_cache


def _make_client() -> TestClient:
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
    stats_cache.clear()
    return TestClient(app)


def _order(order_id, total, branch_id="X", day="2024-05-01", transfer_to=None, split=(70, 30), status="completed", payment=None) -> dict:
    order = {
        "id": order_id,
        "branch_id": branch_id,
        "branch_name": f"Branch {branch_id}",
        "order_date": f"{day}T11:00:00",
        "status": status,
        "items": [{"id": "P-1", "name": "Rose bouquet", "price": total, "quantity": 1}],
        "summary": {"subtotal": total, "total": total},
        "payment": payment or {"method": "card", "status": "paid"},
    }
    if transfer_to is not None:
        order["transfer_info"] = {
            "is_transferred": True,
            "status": "accepted",
            "process_branch_id": transfer_to,
            "process_branch_name": f"Branch {transfer_to}",
            "amount_split": {"order_branch": split[0], "process_branch": split[1]},
        }
    return order


def _scenario_a() -> list[dict]:
    return [
        _order("a-1", 1000),
        _order("a-2", 2000, transfer_to="Y"),
        _order("a-3", 3000),
    ]


def _stats(client, **params) -> dict:
    resp = client.get("/api/v1/reports/stats", params={"from": "2024-05-01", "to": "2024-05-01", **params})
    assert resp.status_code == 200
    return resp.json()["data"]


def test_create_and_list_branches() -> None:
    client = _make_client()
    with client:
        resp = client.post("/api/v1/branches", json={"id": "main.store", "name": "Main Store"})
        assert resp.status_code == 200
        assert resp.json()["data"]["branch_key"] == "main_store"

        resp = client.post("/api/v1/branches", json={"id": "HQ", "name": "Head Office", "branch_type": "head_office"})
        assert resp.status_code == 200

        duplicate = client.post("/api/v1/branches", json={"id": "HQ", "name": "Again"})
        assert duplicate.status_code == 409

        list_resp = client.get("/api/v1/branches")
        assert [b["branch_id"] for b in list_resp.json()["data"]] == ["HQ", "main.store"]

        hq_scope = client.get("/api/v1/branches/HQ/default-scope").json()["data"]
        assert hq_scope["scope"] == "all"
        assert hq_scope["scope_branch_id"] is None

        store_scope = client.get("/api/v1/branches/main.store/default-scope").json()["data"]
        assert store_scope["scope"] == "branch:main.store"

        assert client.get("/api/v1/branches/nope/default-scope").status_code == 404


def test_ingest_orders_and_report_per_scope() -> None:
    client = _make_client()
    with client:
        resp = client.post("/api/v1/ingest/orders:bulkUpsert", json={"orders": _scenario_a()})
        assert resp.status_code == 200
        assert resp.json()["data"]["inserted"] == 3

        x = _stats(client, branch_id="X")
        assert x["total_sales"] == 5400
        assert x["total_orders"] == 3
        assert x["average_order_value"] == 1800
        assert x["daily_sales"] == [{"date": "2024-05-01", "sales": 5400, "orders": 3}]

        y = _stats(client, branch_id="Y")
        assert y["total_sales"] == 600
        assert y["transfer_stats"]["incoming_transfer_count"] == 1
        assert y["transfer_stats"]["incoming_transfer_amount"] == 600

        everything = _stats(client)
        assert everything["total_sales"] == 6000
        assert everything["scope_branch_id"] is None
        assert {b["branch_id"]: b["sales"] for b in everything["branch_sales"]} == {"X": 5400, "Y": 600}


def test_reingesting_an_order_updates_and_refreshes_stats() -> None:
    client = _make_client()
    with client:
        client.post("/api/v1/ingest/orders:bulkUpsert", json={"orders": _scenario_a()})
        assert _stats(client)["total_sales"] == 6000

        resp = client.post(
            "/api/v1/ingest/orders:bulkUpsert",
            json={"orders": [_order("a-1", 1000, status="canceled"), _order("a-4", 500)]},
        )
        data = resp.json()["data"]
        assert data["inserted"] == 1
        assert data["updated"] == 1
        assert [r["upsert_status"] for r in data["results"]] == ["UPDATED", "INSERTED"]

        assert _stats(client)["total_sales"] == 5500


def test_stats_include_expenses_and_purchases() -> None:
    client = _make_client()
    with client:
        client.post("/api/v1/ingest/orders:bulkUpsert", json={"orders": _scenario_a()})
        expense_resp = client.post(
            "/api/v1/ingest/expenses:bulkUpsert",
            json={
                "expenses": [
                    {"id": "e-1", "branch_id": "X", "created_at": "2024-05-01T09:00:00", "total_amount": 400, "status": "approved"},
                    {"id": "e-2", "branch_id": "X", "created_at": "2024-05-01T09:00:00", "total_amount": 900, "status": "pending"},
                ]
            },
        )
        assert expense_resp.json()["data"] == {"inserted": 2, "updated": 0}

        purchase_resp = client.post(
            "/api/v1/ingest/purchases:bulkAppend",
            json={
                "purchases": [
                    {"entry_date": "2024-05-01T08:00:00", "branch_id": "X", "supplier": "Flower Market", "item_name": "Rose", "quantity": 50, "total_amount": 25000},
                    {"entry_date": "2024-05-01T08:30:00", "branch_id": "X", "supplier": "Flower Market", "item_name": "Rose", "quantity": 5, "total_amount": 2500, "direction": "out"},
                ]
            },
        )
        assert purchase_resp.json()["data"] == {"accepted": 2}

        x = _stats(client, branch_id="X")
        assert x["total_expenses"] == 400
        assert x["net_profit"] == 5000
        assert x["purchase_stats"]["total_amount"] == 25000
        assert x["purchase_stats"]["by_supplier"] == [{"name": "Flower Market", "amount": 25000, "quantity": 50}]


def test_stats_rejects_inverted_range() -> None:
    client = _make_client()
    with client:
        resp = client.get("/api/v1/reports/stats", params={"from": "2024-05-02", "to": "2024-05-01"})
        assert resp.status_code == 400


def test_snapshot_build_is_idempotent_and_past_days_are_immutable() -> None:
    client = _make_client()
    with client:
        client.post("/api/v1/ingest/orders:bulkUpsert", json={"orders": _scenario_a()})

        first = client.post("/api/v1/snapshots:build", json={"start": "2024-05-01"}).json()["data"]
        assert first["computed"] == 1
        assert first["days"][0]["status"] == "COMPUTED"
        first_hash = first["days"][0]["summary_hash"]

        again = client.post("/api/v1/snapshots:build", json={"start": "2024-05-01"}).json()["data"]
        assert again["computed"] == 0
        assert again["days"][0] == {"day": "2024-05-01", "status": "SKIPPED_IMMUTABLE", "summary_hash": first_hash}

        client.post("/api/v1/ingest/orders:bulkUpsert", json={"orders": [_order("a-1", 1500)]})
        unchanged = client.get("/api/v1/snapshots/2024-05-01").json()["data"]
        assert unchanged["total_settled_amount"] == 6000

        forced = client.post("/api/v1/snapshots:build", json={"start": "2024-05-01", "force_rebuild": True}).json()["data"]
        assert forced["days"][0]["status"] == "COMPUTED"
        assert forced["days"][0]["summary_hash"] != first_hash

        snapshot = client.get("/api/v1/snapshots/2024-05-01").json()["data"]
        assert snapshot["day"] == "2024-05-01"
        assert snapshot["total_settled_amount"] == 6500
        assert snapshot["total_order_count"] == 3
        assert snapshot["branches"]["X"]["settled_amount"] == 5900
        assert snapshot["branches"]["Y"]["settled_amount"] == 600


def test_snapshot_lookup_and_listing() -> None:
    client = _make_client()
    with client:
        assert client.get("/api/v1/snapshots/2024-05-01").status_code == 404

        client.post("/api/v1/ingest/orders:bulkUpsert", json={"orders": _scenario_a()})
        client.post("/api/v1/snapshots:build", json={"start": "2024-05-01", "end": "2024-05-03"})

        page = client.get("/api/v1/snapshots", params={"limit": 2}).json()
        assert [s["day"] for s in page["data"]] == ["2024-05-01", "2024-05-02"]
        cursor = page["meta"]["page"]["cursor"]
        assert cursor is not None

        rest = client.get("/api/v1/snapshots", params={"limit": 2, "cursor": cursor}).json()
        assert [s["day"] for s in rest["data"]] == ["2024-05-03"]
        assert rest["data"][0]["total_settled_amount"] == 0

        bad = client.post("/api/v1/snapshots:build", json={"start": "2024-05-03", "end": "2024-05-01"})
        assert bad.status_code == 400


def test_rollups_report_no_data_until_snapshots_exist() -> None:
    client = _make_client()
    with client:
        client.post("/api/v1/ingest/orders:bulkUpsert", json={"orders": _scenario_a()})
        params = {"bucketing": "week", "from": "2024-04-29", "to": "2024-05-12"}

        empty = client.get("/api/v1/dashboard/rollups", params=params).json()
        assert empty["data"]["status"] == "NO_DATA"
        assert empty["data"]["buckets"] == []
        assert empty["meta"]["warnings"] == ["no_snapshot_data"]

        client.post("/api/v1/snapshots:build", json={"start": "2024-05-01", "end": "2024-05-01"})

        weekly = client.get("/api/v1/dashboard/rollups", params=params).json()
        assert weekly["data"]["status"] == "OK"
        assert [(b["key"], b["sales"]) for b in weekly["data"]["buckets"]] == [("2024-W18", 6000)]

        y_monthly = client.get(
            "/api/v1/dashboard/rollups",
            params={"bucketing": "month", "from": "2024-05-01", "to": "2024-05-31", "branch_id": "Y"},
        ).json()
        assert [(b["key"], b["sales"], b["order_count"]) for b in y_monthly["data"]["buckets"]] == [("2024-05", 600, 1)]

        assert client.get("/api/v1/dashboard/rollups", params={"bucketing": "year"}).status_code == 422


def test_dashboard_summary_collects_sections(monkeypatch) -> None:
    monkeypatch.setattr(main.settings, "fetch_max_workers", 1)
    client = _make_client()
    with client:
        client.post(
            "/api/v1/ingest/orders:bulkUpsert",
            json={
                "orders": _scenario_a()
                + [_order("p-1", 700, status="pending", payment={"method": "transfer", "status": "pending"})]
            },
        )

        data = client.get("/api/v1/dashboard/summary", params={"branch_id": "X"}).json()
        summary = data["data"]
        assert summary["scope_branch_id"] == "X"
        assert len(summary["recent_orders"]) == 4
        assert summary["pending"] == {"pending_orders": 1, "pending_payment_count": 1, "pending_payment_amount": 700.0}
        assert summary["failed"] == []
        assert summary["snapshot_status"] == "NO_DATA"
        assert data["meta"]["warnings"] == ["no_snapshot_data"]


def test_dashboard_summary_survives_a_failed_section(monkeypatch) -> None:
    monkeypatch.setattr(main.settings, "fetch_max_workers", 1)

    def broken(session_factory, scope, today):
        raise RuntimeError("snapshot store unavailable")

    monkeypatch.setattr(main, "_snapshot_summary", broken)
    client = _make_client()
    with client:
        client.post("/api/v1/ingest/orders:bulkUpsert", json={"orders": _scenario_a()})

        data = client.get("/api/v1/dashboard/summary").json()
        summary = data["data"]
        assert summary["snapshot_status"] == "FAILED"
        assert summary["failed"] == ["snapshots"]
        assert summary["snapshot_summary"] is None
        assert len(summary["recent_orders"]) == 3
        assert data["meta"]["warnings"] == ["snapshots_failed"]


def test_ingested_timestamps_are_filed_under_the_business_day() -> None:
    client = _make_client()
    with client:
        late_utc = _order("utc-1", 1000)
        late_utc["order_date"] = "2024-05-01T20:00:00+00:00"
        client.post("/api/v1/ingest/orders:bulkUpsert", json={"orders": [late_utc, _order("local-1", 300, day="2024-05-02")]})
        client.post(
            "/api/v1/ingest/expenses:bulkUpsert",
            json={"expenses": [{"id": "e-1", "branch_id": "X", "created_at": "2024-05-01T22:30:00+00:00", "total_amount": 200, "status": "approved"}]},
        )

        assert _stats(client)["total_sales"] == 0
        may_2 = _stats(client, **{"from": "2024-05-02", "to": "2024-05-02"})
        assert may_2["total_sales"] == 1300
        assert may_2["total_expenses"] == 200
        assert may_2["daily_sales"] == [{"date": "2024-05-02", "sales": 1300, "orders": 2}]

        client.post("/api/v1/snapshots:build", json={"start": "2024-05-01", "end": "2024-05-02"})
        assert client.get("/api/v1/snapshots/2024-05-01").json()["data"]["total_settled_amount"] == 0
        assert client.get("/api/v1/snapshots/2024-05-02").json()["data"]["total_settled_amount"] == 1300


def test_startup_configures_logging_and_shutdown_drops_pending_recomputes(monkeypatch) -> None:
    calls = []
    fired = []
    pending = RecomputeDebouncer(60, fired.append)
    monkeypatch.setattr(main, "configure_logging", lambda: calls.append("configured"))
    monkeypatch.setattr(main, "today_recompute", pending)

    client = _make_client()
    with client:
        assert calls == ["configured"]
        pending.trigger(date(2024, 5, 1))
        assert pending.pending() == [date(2024, 5, 1)]

    assert pending.pending() == []
    assert fired == []
