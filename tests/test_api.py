from fastapi.testclient import TestClient

from conftest import add_recipe, make_ingredient, make_menu_item, make_table
from tableside import crud, main
from tableside.models import Role


def _login(client: TestClient, email: str, password: str = "secret123") -> dict:
    response = client.post("/auth/login", data={"username": email, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def _staff(client, db_session, role: Role, email: str) -> dict:
    crud.create_user(db_session, email, "secret123", full_name=role.value, role=role)
    return _login(client, email)


def test_register_login_and_profile(client):
    response = client.post(
        "/auth/register",
        json={"email": "Awa@Example.com", "password": "secret123", "full_name": "Awa"},
    )
    assert response.status_code == 200
    assert response.json()["role"] == "customer"

    again = client.post("/auth/register", json={"email": "awa@example.com", "password": "secret123"})
    assert again.status_code == 400

    headers = _login(client, "awa@example.com")
    me = client.get("/me", headers=headers)
    assert me.json()["email"] == "awa@example.com"

    perms = client.get("/me/permissions", headers=headers).json()
    assert perms["role"] == "customer"
    assert perms["permissions"] == []
    assert perms["is_staff"] is False


def test_anonymous_permissions_and_protected_routes(client):
    assert client.get("/me").status_code == 401
    assert client.get("/me", headers={"Authorization": "Bearer junk"}).status_code == 401
    assert client.get("/me/permissions").json()["role"] is None
    assert client.get("/tables").status_code == 401
    assert client.get("/kitchen/board").status_code == 401


def test_role_management(client, db_session):
    admin = _staff(client, db_session, Role.admin, "admin@example.com")
    user = crud.create_user(db_session, "moussa@example.com", "secret123")

    response = client.put(f"/admin/users/{user.id}/role", json={"role": "chef"}, headers=admin)
    assert response.status_code == 200
    assert response.json()["role"] == "chef"

    grant = client.put(f"/admin/users/{user.id}/role", json={"role": "super_admin"}, headers=admin)
    assert grant.status_code == 400

    chef = _login(client, "moussa@example.com")
    assert client.get("/admin/users", headers=chef).status_code == 403
    assert "KITCHEN_ACCESS" in client.get("/me/permissions", headers=chef).json()["permissions"]


def test_menu_management(client, db_session):
    admin = _staff(client, db_session, Role.admin, "admin@example.com")
    body = {"name": "Yassa Poulet", "category": "Plats", "price_cents": 3000}

    assert client.post("/menu", json=body).status_code == 401
    created = client.post("/menu", json=body, headers=admin)
    assert created.status_code == 200
    item_id = created.json()["id"]

    body["is_available"] = False
    assert client.put(f"/menu/{item_id}", json=body, headers=admin).status_code == 200
    assert client.get("/menu", params={"available_only": True}).json() == []
    assert client.delete(f"/menu/{item_id}", headers=admin).json() == {"ok": True}
    assert client.delete(f"/menu/{item_id}", headers=admin).status_code == 404


def test_table_scan_opens_one_session(client, db_session):
    server = _staff(client, db_session, Role.server, "server@example.com")
    table = client.post(
        "/tables", json={"table_number": 4, "label": "Table 4"}, headers=server
    ).json()
    token = table["access_token"]

    assert client.get(f"/t/{token}").json()["table_number"] == 4
    first = client.post(f"/t/{token}/session").json()
    second = client.post(f"/t/{token}/session").json()
    assert first["in_progress"] is False
    assert second["in_progress"] is True
    assert first["session"]["id"] == second["session"]["id"]

    listed = client.get("/tables", headers=server).json()
    assert listed[0]["active_session"]["id"] == first["session"]["id"]

    assert client.post("/t/unknown/session").status_code == 404
    closed = client.post(f"/sessions/{first['session']['id']}/close", headers=server)
    assert closed.json()["status"] == "closed"
    check = client.get(f"/t/{token}/s/{first['session']['session_token']}").json()
    assert (check["valid"], check["reason"]) == (False, "closed")


def test_session_order_through_kitchen(client, db_session):
    item = make_menu_item(db_session, "Thiebou Dieune", 3500)
    make_table(db_session, token="tbl")
    chef = _staff(client, db_session, Role.chef, "chef@example.com")
    cashier = _staff(client, db_session, Role.cashier, "cashier@example.com")

    session_token = client.post("/t/tbl/session").json()["session"]["session_token"]
    response = client.post(
        f"/t/tbl/s/{session_token}/orders",
        json={"items": [{"menu_item_id": item.id, "quantity": 2}], "client_name": "Fatou"},
    )
    assert response.status_code == 200
    order = response.json()
    assert order["channel"] == "dine_in"
    assert order["total_cents"] == 7000
    assert [o["id"] for o in client.get(f"/t/tbl/s/{session_token}/orders").json()] == [order["id"]]
    assert client.get("/t/tbl/s/bogus/orders").status_code == 404

    anonymous = client.post(f"/orders/{order['id']}/status", json={"status": "confirmed"})
    assert anonymous.status_code == 403
    assert anonymous.json()["detail"]["error"] == "permission_denied"

    skipped = client.post(f"/orders/{order['id']}/status", json={"status": "ready"}, headers=chef)
    assert skipped.status_code == 409
    assert skipped.json()["detail"]["error"] == "invalid_transition"

    for status in ("confirmed", "preparing", "ready"):
        moved = client.post(f"/orders/{order['id']}/status", json={"status": status}, headers=chef)
        assert moved.json()["status"] == status
        board = [o["id"] for o in client.get("/kitchen/board", headers=chef).json()]
        assert board == [order["id"]]

    done = client.post(f"/orders/{order['id']}/status", json={"status": "completed"}, headers=cashier)
    assert done.json()["completed_at"] is not None
    assert client.get("/kitchen/board", headers=chef).json() == []

    paid = client.post(f"/orders/{order['id']}/payment", json={"method": "wave"}, headers=cashier)
    assert paid.json()["payment_status"] == "paid"
    assert client.post(f"/orders/{order['id']}/payment", json={"method": "cash"}, headers=chef).status_code == 403


def test_confirming_without_stock_is_a_conflict(client, db_session):
    item = make_menu_item(db_session, "thiebou-dieune")
    fish = make_ingredient(db_session, "fish", quantity=1)
    add_recipe(db_session, item, fish, 2)
    cashier = _staff(client, db_session, Role.cashier, "cashier@example.com")
    order = client.post(
        "/orders", json={"items": [{"menu_item_id": item.id}]}, headers=cashier
    ).json()

    response = client.post(
        f"/orders/{order['id']}/status", json={"status": "confirmed"}, headers=cashier
    )
    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["error"] == "insufficient_stock"
    assert detail["details"]["shortages"][0]["name"] == "fish"
    assert client.get(f"/orders/{order['id']}", headers=cashier).json()["status"] == "pending"


def test_stock_endpoints(client, db_session):
    admin = _staff(client, db_session, Role.admin, "admin@example.com")
    chef = _staff(client, db_session, Role.chef, "chef@example.com")

    created = client.post(
        "/stock/ingredients",
        json={"name": "oil", "unit": "ml", "quantity_on_hand": 500, "reorder_threshold": 100},
        headers=admin,
    ).json()
    assert created["initial_quantity"] == 500
    denied = client.post("/stock/ingredients", json={"name": "rice"}, headers=chef)
    assert denied.status_code == 403

    waste = client.post(
        "/stock/adjust",
        json={"ingredient_id": created["id"], "delta": -450, "reason": "waste"},
        headers=admin,
    )
    assert waste.json()["new_quantity"] == 50
    negative = client.post(
        "/stock/adjust", json={"ingredient_id": created["id"], "delta": -60}, headers=admin
    )
    assert negative.status_code == 400

    alerts = client.get("/stock/alerts", headers=chef).json()
    assert [a["name"] for a in alerts] == ["oil"]

    request = client.post(
        "/stock/requests", json={"ingredient_id": created["id"], "quantity": 200}, headers=chef
    ).json()
    assert client.post(f"/stock/requests/{request['id']}/fulfill", headers=chef).status_code == 403
    fulfilled = client.post(f"/stock/requests/{request['id']}/fulfill", headers=admin).json()
    assert fulfilled["status"] == "fulfilled"

    report = client.get(
        "/stock/reconcile", params={"ingredient_id": created["id"]}, headers=admin
    ).json()
    assert report["quantity_on_hand"] == 250
    assert report["consistent"] is True


def test_staff_accounts_are_created_and_deleted_by_managers(client, db_session):
    admin = _staff(client, db_session, Role.admin, "admin@example.com")
    body = {
        "email": "chef@example.com",
        "password": "secret123",
        "full_name": "Chef",
        "role": "chef",
    }

    assert client.post("/admin/users", json=body).status_code == 401
    created = client.post("/admin/users", json=body, headers=admin)
    assert created.status_code == 200
    assert created.json()["role"] == "chef"
    assert client.post("/admin/users", json=body, headers=admin).status_code == 400
    boss = dict(body, email="boss@example.com", role="super_admin")
    assert client.post("/admin/users", json=boss, headers=admin).status_code == 400

    chef = _login(client, "chef@example.com")
    chef_id = created.json()["id"]
    assert client.delete(f"/admin/users/{chef_id}", headers=chef).status_code == 403

    me = client.get("/me", headers=admin).json()
    assert client.delete(f"/admin/users/{me['id']}", headers=admin).status_code == 400
    root = crud.create_user(db_session, "root@example.com", "secret123", role=Role.super_admin)
    assert client.delete(f"/admin/users/{root.id}", headers=admin).status_code == 400

    assert client.delete(f"/admin/users/{chef_id}", headers=admin).json() == {"ok": True}
    assert client.delete(f"/admin/users/{chef_id}", headers=admin).status_code == 404
    assert crud.get_user_by_email(db_session, "chef@example.com") is None


def test_deleting_a_user_keeps_their_orders(client, db_session):
    admin = _staff(client, db_session, Role.admin, "admin@example.com")
    cashier = _staff(client, db_session, Role.cashier, "cashier@example.com")
    item = make_menu_item(db_session)
    order = client.post("/orders", json={"items": [{"menu_item_id": item.id}]}, headers=cashier)
    cashier_id = crud.get_user_by_email(db_session, "cashier@example.com").id

    assert client.delete(f"/admin/users/{cashier_id}", headers=admin).status_code == 200
    kept = client.get(f"/orders/{order.json()['id']}", headers=admin)
    assert kept.status_code == 200
    assert kept.json()["total_cents"] == 3500


def test_reports_require_reporting_rights(client, db_session):
    cashier = _staff(client, db_session, Role.cashier, "cashier@example.com")
    chef = _staff(client, db_session, Role.chef, "chef@example.com")
    item = make_menu_item(db_session, "Yassa Poulet", 3000)
    client.post("/orders", json={"items": [{"menu_item_id": item.id, "quantity": 2}]}, headers=cashier)

    assert client.get("/reports/summary").status_code == 401
    assert client.get("/reports/summary", headers=chef).status_code == 403

    summary = client.get("/reports/summary", params={"period": "day"}, headers=cashier).json()
    assert summary["revenue_cents"] == 6000
    assert summary["open_orders"] == 1
    assert client.get("/reports/summary", params={"period": "year"}, headers=cashier).status_code == 422

    popular = client.get("/reports/popular-items", headers=cashier).json()
    assert popular == [{"name": "Yassa Poulet", "quantity": 2, "revenue_cents": 6000}]
    daily = client.get("/reports/daily-revenue", params={"days": 7}, headers=cashier).json()
    assert len(daily) == 7
    assert daily[-1]["revenue_cents"] == 6000
    assert client.get("/reports/daily-revenue", params={"days": 0}, headers=cashier).status_code == 422

    channels = client.get("/reports/channels", headers=cashier).json()
    assert {row["channel"]: row["orders"] for row in channels}["takeaway"] == 1
    assert client.get("/reports/orders", headers=cashier).json()["today"]["orders"] == 1
    assert client.get("/reports/stock", headers=cashier).json()["value_cents"] == 0


def test_movement_listing_limit_is_bounded(client, db_session):
    admin = _staff(client, db_session, Role.admin, "admin@example.com")
    fish = make_ingredient(db_session, "fish", quantity=5)
    for delta in (1, 2, 3):
        client.post("/stock/adjust", json={"ingredient_id": fish.id, "delta": delta}, headers=admin)

    latest = client.get("/stock/movements", params={"limit": 2}, headers=admin).json()
    assert [m["delta"] for m in latest] == [3, 2]
    assert client.get("/stock/movements", params={"limit": 0}, headers=admin).status_code == 422
    assert client.get("/stock/movements", params={"limit": -1}, headers=admin).status_code == 422
    assert client.get("/stock/movements", params={"limit": 501}, headers=admin).status_code == 422


def test_run_serves_the_app(monkeypatch):
    calls = []
    monkeypatch.setattr(main.uvicorn, "run", lambda app, **options: calls.append((app, options)))

    main.run()
    assert calls == [("tableside.main:app", {"host": main.HOST, "port": main.PORT})]
