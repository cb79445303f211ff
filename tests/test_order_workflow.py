import pytest

import orders
from conftest import bearer, identity_for, stock_of
from errors import ERROR_CODES, InsufficientStockError
from roles import Role
from schemas import PlaceOrderBody


def order_body(seed, lines, **extra):
    return {
        "restaurant_id": seed["restaurant_id"],
        "items": [{"menu_item_id": item_id, "quantity": qty, "price": price} for item_id, qty, price in lines],
        "payment_method": "UPI",
        **extra,
    }


class TestPlaceOrder:
    def test_order_is_confirmed_and_paid(self, client, database, seed):
        """2 x 150 + 1 x 300 gives a confirmed, paid order of 600."""
        body = order_body(seed, [(seed["curry_id"], 2, 150), (seed["biryani_id"], 1, 300)])
        resp = client.post("/orders", json=body, headers=bearer(seed["customer"]))
        assert resp.status_code == 201

        data = resp.json()
        order = data["order"]
        assert order["total_amount"] == 600
        assert order["status"] == "confirmed"
        assert order["payment_status"] == "completed"
        assert order["user_id"] == seed["customer"].user_id
        assert order["batch_number"].startswith("foodontrack-")
        assert len(order["batch_number"]) == len("foodontrack-") + 6
        assert {"order_placed", "confirmed"} <= set(order["timeline"])
        assert [i["name"] for i in order["items"]] == ["Paneer Curry", "Veg Biryani"]

        assert data["payment"]["amount"] == 600
        assert data["payment"]["order_id"] == order["id"]
        assert data["payment"]["transaction_id"].startswith("TXN-")
        assert stock_of(database, seed["curry_id"]) == 8
        assert stock_of(database, seed["biryani_id"]) == 4

    def test_total_equals_sum_of_lines(self, database, seed):
        lines = [(seed["curry_id"], 3, 150), (seed["biryani_id"], 2, 300)]
        result = orders.place_order(database, seed["customer"], PlaceOrderBody(**order_body(seed, lines)))
        stored = database.get_document("order", result["order"]["id"])
        assert stored["total_amount"] == sum(i["price"] * i["quantity"] for i in stored["items"]) == 1050

    def test_audit_entry_written(self, client, database, seed):
        client.post("/orders", json=order_body(seed, [(seed["curry_id"], 1, 150)]), headers=bearer(seed["customer"]))
        entry = database.find_one("auditlog", {"action": "ORDER_CREATED"})
        assert entry["performed_by"] == seed["customer"].user_id


class TestRollback:
    def test_injected_failure_leaves_no_trace(self, client, database, seed):
        body = order_body(seed, [(seed["curry_id"], 2, 150), (seed["biryani_id"], 1, 300)], fail=True)
        resp = client.post("/orders", json=body, headers=bearer(seed["customer"]))

        assert resp.status_code == 500
        assert resp.json()["success"] is False
        assert resp.json()["error"]["code"] == ERROR_CODES["TRANSACTION_FAILED"]
        assert database.count("order") == 0
        assert database.count("payment") == 0
        assert stock_of(database, seed["curry_id"]) == 10
        assert stock_of(database, seed["biryani_id"]) == 5

    def test_second_order_for_last_units_fails(self, client, database, seed):
        """Two orders each asking for the whole stock: exactly one succeeds."""
        body = order_body(seed, [(seed["biryani_id"], 5, 300)])
        first = client.post("/orders", json=body, headers=bearer(seed["customer"]))
        second = client.post("/orders", json=body, headers=bearer(identity_for(Role.CUSTOMER)))

        assert first.status_code == 201
        assert second.status_code == 400
        assert second.json()["error"]["code"] == ERROR_CODES["INSUFFICIENT_STOCK"]
        assert stock_of(database, seed["biryani_id"]) == 0
        assert database.count("order") == 1
        assert database.count("payment") == 1

    def test_earlier_lines_are_restored_when_a_later_line_is_short(self, database, seed):
        body = PlaceOrderBody(**order_body(seed, [(seed["curry_id"], 4, 150), (seed["biryani_id"], 6, 300)]))
        with pytest.raises(InsufficientStockError):
            orders.place_order(database, seed["customer"], body)
        assert stock_of(database, seed["curry_id"]) == 10
        assert database.count("order") == 0

    def test_missing_menu_item_is_not_found(self, client, database, seed):
        body = order_body(seed, [(seed["curry_id"], 1, 150), ("64b7f0000000000000000000", 1, 10)])
        resp = client.post("/orders", json=body, headers=bearer(seed["customer"]))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == ERROR_CODES["NOT_FOUND"]
        assert stock_of(database, seed["curry_id"]) == 10
        assert database.count("order") == 0


class TestValidation:
    def test_amount_mismatch(self, client, database, seed):
        body = order_body(seed, [(seed["curry_id"], 2, 150)], total_amount=250)
        resp = client.post("/orders", json=body, headers=bearer(seed["customer"]))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == ERROR_CODES["VALIDATION_ERROR"]
        assert database.count("order") == 0

    def test_stale_price(self, client, seed):
        body = order_body(seed, [(seed["curry_id"], 1, 99)])
        assert client.post("/orders", json=body, headers=bearer(seed["customer"])).status_code == 400

    def test_unknown_payment_method(self, client, seed):
        body = order_body(seed, [(seed["curry_id"], 1, 150)], payment_method="BARTER")
        resp = client.post("/orders", json=body, headers=bearer(seed["customer"]))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == ERROR_CODES["VALIDATION_ERROR"]

    def test_empty_order(self, client, seed):
        assert client.post("/orders", json=order_body(seed, []), headers=bearer(seed["customer"])).status_code == 400

    def test_item_from_another_restaurant(self, client, database, seed):
        other = database.create_document("restaurant", {"name": "Other", "is_active": True})
        body = order_body(seed, [(seed["curry_id"], 1, 150)])
        body["restaurant_id"] = other
        assert client.post("/orders", json=body, headers=bearer(seed["customer"])).status_code == 400
        assert stock_of(database, seed["curry_id"]) == 10


class TestAccess:
    def test_requires_authentication(self, client, seed):
        assert client.post("/orders", json=order_body(seed, [(seed["curry_id"], 1, 150)])).status_code == 401

    def test_owner_cannot_place_orders(self, client, seed):
        resp = client.post("/orders", json=order_body(seed, [(seed["curry_id"], 1, 150)]), headers=bearer(seed["owner"]))
        assert resp.status_code == 403

    def test_customer_cannot_order_for_someone_else(self, client, seed):
        body = order_body(seed, [(seed["curry_id"], 1, 150)], user_id=identity_for(Role.CUSTOMER).user_id)
        assert client.post("/orders", json=body, headers=bearer(seed["customer"])).status_code == 403

    def test_listing_is_scoped_by_role(self, client, seed, make_order):
        mine = make_order()
        make_order(user_id=identity_for(Role.CUSTOMER).user_id)

        resp = client.get("/orders", headers=bearer(seed["customer"]))
        assert [o["id"] for o in resp.json()["orders"]] == [mine["id"]]
        assert resp.json()["pagination"]["total"] == 1
        assert client.get("/orders", headers=bearer(seed["owner"])).json()["pagination"]["total"] == 2
        assert client.get("/orders", headers=bearer(seed["delivery"])).json()["pagination"]["total"] == 0

    def test_get_order_uses_ownership(self, client, seed, make_order):
        order = make_order()
        assert client.get(f"/orders/{order['id']}", headers=bearer(seed["customer"])).status_code == 200
        assert client.get(f"/orders/{order['id']}", headers=bearer(seed["admin"])).status_code == 200
        stranger = identity_for(Role.CUSTOMER)
        assert client.get(f"/orders/{order['id']}", headers=bearer(stranger)).status_code == 403
        assert client.get("/orders/not-an-id", headers=bearer(seed["customer"])).status_code == 400


class TestDeliveryAddress:
    def test_order_ships_to_buyers_address(self, client, database, seed):
        address_id = database.create_document(
            "address",
            {"user_id": seed["customer"].user_id, "street": "4 Lake View", "city": "Pune", "state": "MH", "zip_code": "411001"},
        )
        body = order_body(seed, [(seed["curry_id"], 1, 150)], address_id=address_id)
        resp = client.post("/orders", json=body, headers=bearer(seed["customer"]))
        assert resp.status_code == 201
        assert resp.json()["order"]["address_id"] == address_id

    def test_someone_elses_address_is_refused(self, client, database, seed):
        address_id = database.create_document(
            "address",
            {"user_id": identity_for(Role.CUSTOMER).user_id, "street": "9 Hill Rd", "city": "Pune", "state": "MH", "zip_code": "411002"},
        )
        body = order_body(seed, [(seed["curry_id"], 1, 150)], address_id=address_id)
        resp = client.post("/orders", json=body, headers=bearer(seed["customer"]))
        assert resp.status_code == 400
        assert stock_of(database, seed["curry_id"]) == 10


class TestTransactions:
    def test_payments_are_scoped_to_visible_orders(self, client, seed):
        body = order_body(seed, [(seed["curry_id"], 1, 150)])
        mine = client.post("/orders", json=body, headers=bearer(seed["customer"])).json()
        stranger = identity_for(Role.CUSTOMER)
        client.post("/orders", json=body, headers=bearer(stranger))

        resp = client.get("/transactions", headers=bearer(seed["customer"]))
        assert resp.status_code == 200
        assert [t["order_id"] for t in resp.json()["transactions"]] == [mine["order"]["id"]]
        assert resp.json()["pagination"]["total"] == 1

        owner = client.get("/transactions", headers=bearer(seed["owner"]))
        admin = client.get("/transactions", headers=bearer(seed["admin"]))
        assert owner.json()["pagination"]["total"] == admin.json()["pagination"]["total"] == 2

    def test_filter_by_order_checks_ownership(self, client, seed):
        placed = client.post(
            "/orders", json=order_body(seed, [(seed["curry_id"], 1, 150)]), headers=bearer(seed["customer"])
        ).json()
        order_id = placed["order"]["id"]
        resp = client.get("/transactions", params={"order_id": order_id}, headers=bearer(seed["customer"]))
        assert resp.json()["transactions"][0]["transaction_id"] == placed["payment"]["transaction_id"]

        other = identity_for(Role.CUSTOMER)
        assert client.get("/transactions", params={"order_id": order_id}, headers=bearer(other)).status_code == 403

    def test_requires_authentication(self, client):
        assert client.get("/transactions").status_code == 401
