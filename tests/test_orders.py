import threading

import mongomock
import pytest

import database
import orders
from conftest import ADDRESS, add_product, bearer, register, stock_of
from errors import InsufficientStock
from schemas import User


def add_to_cart(client, headers, product_id, quantity=1, size=None):
    response = client.post("/api/cart", json={"productId": product_id, "quantity": quantity, "size": size}, headers=headers)
    assert response.status_code == 200, response.json()
    return response.json()


def place(client, headers, payment_method="cod", items=None, address=None, **extra):
    payload = {"shippingAddress": address or ADDRESS, "paymentMethod": payment_method, **extra}
    if items is not None:
        payload["items"] = items
    return client.post("/api/orders", json=payload, headers=headers)


def test_cart_order_snapshots_items_and_decrements_stock(client, db, user_headers):
    boots = add_product(name="Boots", price=400, stock=5, image="/img/boots.png")
    add_to_cart(client, user_headers, boots, quantity=2, size="42")

    response = place(client, user_headers)
    assert response.status_code == 201
    order, payment = response.json()["order"], response.json()["payment"]

    assert order["items"] == [{
        "product": boots, "name": "Boots", "price": 400, "quantity": 2, "image": "/img/boots.png", "size": "42",
    }]
    assert order["subtotal"] == 800
    assert order["shipping_fee"] == 100
    assert order["total"] == 900
    assert order["order_status"] == "confirmed"
    assert order["order_number"].startswith("ORD-")
    assert order["payment"] == payment["_id"]
    assert payment["order"] == order["_id"]
    assert payment["amount"] == 900
    assert payment["status"] == "pending"

    assert stock_of(db, boots) == 3
    assert client.get("/api/cart", headers=user_headers).json() == []


def test_snapshot_survives_product_edits(client, db, user_headers, admin_headers):
    ball = add_product(name="Ball", price=500, stock=5)
    add_to_cart(client, user_headers, ball)
    order_id = place(client, user_headers).json()["order"]["_id"]

    client.put(f"/api/products/{ball}", json={"name": "Ball v2", "price": 999}, headers=admin_headers)
    item = client.get(f"/api/orders/{order_id}", headers=user_headers).json()["items"][0]
    assert item["name"] == "Ball"
    assert item["price"] == 500


def test_online_order_starts_pending_and_free_shipping_over_threshold(client, user_headers):
    jersey = add_product(name="Jersey", price=600, stock=5)
    add_to_cart(client, user_headers, jersey, quantity=2)
    order = place(client, user_headers, payment_method="online").json()["order"]
    assert order["order_status"] == "pending"
    assert order["subtotal"] == 1200
    assert order["shipping_fee"] == 0
    assert order["total"] == 1200


def test_second_order_from_cart_fails_when_stock_runs_out(client, db, user_headers):
    product = add_product(name="P", price=100, stock=2)
    add_to_cart(client, user_headers, product, quantity=2)
    assert place(client, user_headers).status_code == 201
    assert stock_of(db, product) == 0

    add_to_cart(client, user_headers, product, quantity=2)
    second = place(client, user_headers)
    assert second.status_code == 400
    assert second.json()["message"] == "Insufficient stock for P"
    assert stock_of(db, product) == 0


def test_empty_cart_rejected(client, user_headers):
    response = place(client, user_headers)
    assert response.status_code == 400
    assert response.json()["message"] == "Cart is empty"


def test_inactive_cart_products_are_skipped(client, db, user_headers):
    ball = add_product(name="Ball", price=500, stock=5)
    socks = add_product(name="Socks", price=50, stock=5)
    add_to_cart(client, user_headers, ball)
    add_to_cart(client, user_headers, socks)
    db["product"].update_one({"name": "Socks"}, {"$set": {"status": "archived"}})

    order = place(client, user_headers).json()["order"]
    assert [item["name"] for item in order["items"]] == ["Ball"]
    assert stock_of(db, socks) == 5


def test_cart_with_only_unavailable_products(client, db, user_headers):
    ball = add_product(name="Ball", price=500, stock=5)
    add_to_cart(client, user_headers, ball)
    db["product"].delete_one({"name": "Ball"})
    response = place(client, user_headers)
    assert response.status_code == 400
    assert response.json()["message"] == "No available products in cart"


def test_direct_order_uses_server_prices(client, db, user_headers):
    ball = add_product(name="Ball", price=500, stock=5)
    add_to_cart(client, user_headers, ball, quantity=3)
    items = [{"product": ball, "name": "Ball", "price": 1, "quantity": 1}]

    response = place(client, user_headers, items=items, subtotal=1, shippingFee=0, total=1)
    assert response.status_code == 201
    order = response.json()["order"]
    assert order["items"][0]["price"] == 500
    assert order["total"] == 600
    assert stock_of(db, ball) == 4
    # buy-now leaves the cart alone
    assert client.get("/api/cart", headers=user_headers).json()[0]["quantity"] == 3


def test_direct_order_unknown_product(client, user_headers):
    items = [{"product": "65f000000000000000000000", "name": "Ghost", "quantity": 1}]
    response = place(client, user_headers, items=items)
    assert response.status_code == 400
    assert response.json()["message"] == "Product Ghost not found"


def test_failed_reservation_returns_earlier_lines(client, db, user_headers):
    gloves = add_product(name="Gloves", price=300, stock=10)
    ball = add_product(name="Ball", price=500, stock=3)
    items = [
        {"product": gloves, "quantity": 4},
        {"product": ball, "quantity": 2, "size": "4"},
        {"product": ball, "quantity": 2, "size": "5"},
    ]
    response = place(client, user_headers, items=items)
    assert response.status_code == 400
    assert response.json()["message"] == "Insufficient stock for Ball"
    assert stock_of(db, gloves) == 10
    assert stock_of(db, ball) == 3
    assert db["order"].count_documents({}) == 0
    assert db["payment"].count_documents({}) == 0


def test_orders_never_oversell(client, db):
    product = add_product(name="Limited Shirt", price=1500, stock=2)
    results = []
    for n in range(4):
        headers = bearer(register(client, email=f"buyer{n}@x.com")["token"])
        results.append(place(client, headers, items=[{"product": product, "quantity": 1}]).status_code)
    assert results.count(201) == 2
    assert results.count(400) == 2
    assert stock_of(db, product) == 0


@pytest.fixture
def atomic_find_and_modify(monkeypatch):
    # mongod applies find_one_and_update to a single document atomically;
    # mongomock runs the find and the update as two steps
    lock = threading.Lock()
    original = mongomock.collection.Collection.find_one_and_update

    def locked(self, *args, **kwargs):
        with lock:
            return original(self, *args, **kwargs)

    monkeypatch.setattr(mongomock.collection.Collection, "find_one_and_update", locked)


def run_together(count, target):
    barrier = threading.Barrier(count)
    results = [None] * count

    def worker(n):
        barrier.wait()
        try:
            results[n] = target(n)
        except Exception as exc:
            results[n] = exc

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    return results


def test_concurrent_reservations_never_oversell(db, atomic_find_and_modify):
    shirt = add_product(name="Limited Shirt", price=1500, stock=3)
    results = run_together(8, lambda n: database.reserve_stock(shirt, 1))

    assert sum(1 for result in results if result is not None) == 3
    assert sorted(result["stock"] for result in results if result is not None) == [0, 1, 2]
    assert stock_of(db, shirt) == 0


def test_concurrent_orders_are_all_or_nothing(db, atomic_find_and_modify):
    socks = add_product(name="Socks", price=50, stock=10)
    shirt = add_product(name="Limited Shirt", price=1500, stock=3)
    buyers = []
    for n in range(6):
        user_id = database.create_document("user", User(name=f"Buyer {n}", email=f"buyer{n}@x.com", password_hash="x"))
        buyers.append(database.get_document_by_id("user", user_id))
    address = {"full_name": "Ram Thapa", "phone": "9800000000", "address": "Baneshwor 10", "city": "Kathmandu"}
    items = [{"product": socks, "quantity": 1}, {"product": shirt, "quantity": 1}]

    results = run_together(6, lambda n: orders.place_order(buyers[n], address, "cod", items))

    placed = [result for result in results if isinstance(result, dict)]
    failed = [result for result in results if not isinstance(result, dict)]
    assert len(placed) == 3
    assert all(isinstance(result, InsufficientStock) for result in failed)
    assert stock_of(db, shirt) == 0
    assert stock_of(db, socks) == 7
    assert db["order"].count_documents({}) == 3
    assert db["payment"].count_documents({}) == 3


def test_order_creates_admin_notification(client, db, user_headers, admin_headers):
    ball = add_product(name="Ball", price=500, stock=5)
    add_to_cart(client, user_headers, ball)
    order = place(client, user_headers).json()["order"]

    feed = client.get("/api/admin/notifications", headers=admin_headers).json()
    assert len(feed) == 1
    assert feed[0]["message"] == f"New order #{order['_id'][-6:]} from Ram - Rs. 600 (COD)"
    assert feed[0]["metadata"] == {"orderId": order["_id"], "userId": order["user"]}
    assert feed[0]["user"] is None


def test_shipping_address_validation(client, user_headers):
    bad_phone = place(client, user_headers, address={**ADDRESS, "phone": "98000"})
    assert bad_phone.status_code == 400
    assert bad_phone.json()["message"] == "Phone must be 10 digits"

    letters = place(client, user_headers, address={**ADDRESS, "phone": "98000abcde"})
    assert letters.json()["message"] == "Phone must be numeric"

    no_name = {key: value for key, value in ADDRESS.items() if key != "fullName"}
    assert place(client, user_headers, address=no_name).json()["message"] == "Full Name is required"

    method = place(client, user_headers, payment_method="card")
    assert method.status_code == 400
    assert method.json()["message"] == "Invalid payment method"


def test_shipping_address_is_escaped(client, user_headers):
    ball = add_product(name="Ball", price=500, stock=5)
    add_to_cart(client, user_headers, ball)
    order = place(client, user_headers, address={**ADDRESS, "fullName": "  <b>Ram</b> "}).json()["order"]
    assert order["shipping_address"]["full_name"] == "&lt;b&gt;Ram&lt;/b&gt;"


def test_order_requires_login(client):
    assert place(client, {}).status_code == 401


def test_order_creation_is_rate_limited(client, user_headers):
    codes = [place(client, user_headers).status_code for _ in range(6)]
    assert codes[:5] == [400] * 5
    assert codes[5] == 429
    assert place(client, user_headers).json()["message"] == (
        "Too many orders created from this IP, please try again after 15 minutes"
    )


def test_cancel_pending_order_restores_stock(client, db, user_headers):
    ball = add_product(name="Ball", price=500, stock=5)
    gloves = add_product(name="Gloves", price=300, stock=4)
    add_to_cart(client, user_headers, ball, quantity=2)
    add_to_cart(client, user_headers, gloves, quantity=3)
    order = place(client, user_headers, payment_method="online").json()["order"]
    assert (stock_of(db, ball), stock_of(db, gloves)) == (3, 1)

    response = client.delete(f"/api/orders/{order['_id']}", headers=user_headers)
    assert response.status_code == 200
    assert response.json()["message"] == "Order cancelled successfully"
    assert (stock_of(db, ball), stock_of(db, gloves)) == (5, 4)
    assert db["order"].count_documents({}) == 0
    assert db["payment"].count_documents({}) == 0

    again = client.delete(f"/api/orders/{order['_id']}", headers=user_headers)
    assert again.status_code == 404
    assert (stock_of(db, ball), stock_of(db, gloves)) == (5, 4)


def test_only_owner_or_admin_can_cancel(client, db, user_headers, admin_headers):
    ball = add_product(name="Ball", price=500, stock=5)
    add_to_cart(client, user_headers, ball)
    order_id = place(client, user_headers, payment_method="online").json()["order"]["_id"]

    stranger = bearer(register(client, email="other@x.com")["token"])
    denied = client.delete(f"/api/orders/{order_id}", headers=stranger)
    assert denied.status_code == 403
    assert client.get(f"/api/orders/{order_id}", headers=stranger).status_code == 403

    assert client.delete(f"/api/orders/{order_id}", headers=admin_headers).status_code == 200
    assert stock_of(db, ball) == 5


def test_customer_cannot_cancel_confirmed_order(client, db, user_headers, admin_headers):
    ball = add_product(name="Ball", price=500, stock=5)
    add_to_cart(client, user_headers, ball)
    order_id = place(client, user_headers, payment_method="cod").json()["order"]["_id"]

    response = client.delete(f"/api/orders/{order_id}", headers=user_headers)
    assert response.status_code == 400
    assert response.json()["message"] == "Only pending orders can be cancelled"
    assert stock_of(db, ball) == 4

    assert client.delete(f"/api/orders/{order_id}", headers=admin_headers).status_code == 200
    assert stock_of(db, ball) == 5


def test_cancel_unknown_order(client, user_headers):
    assert client.delete("/api/orders/65f000000000000000000000", headers=user_headers).status_code == 404
    assert client.delete("/api/orders/not-an-id", headers=user_headers).status_code == 404


def test_order_listings_and_payment_lookup(client, user_headers, admin_headers):
    ball = add_product(name="Ball", price=500, stock=5)
    add_to_cart(client, user_headers, ball)
    created = place(client, user_headers).json()

    mine = client.get("/api/orders/my-orders", headers=user_headers).json()
    assert [order["_id"] for order in mine] == [created["order"]["_id"]]
    assert mine[0]["payment"]["_id"] == created["payment"]["_id"]

    everything = client.get("/api/orders/admin/all", headers=admin_headers).json()
    assert everything[0]["customer"]["email"] == "a@x.com"
    assert client.get("/api/orders/admin/all", headers=user_headers).status_code == 403

    payment = client.get(f"/api/payments/{created['payment']['_id']}", headers=user_headers)
    assert payment.status_code == 200
    assert payment.json()["method"] == "cod"
