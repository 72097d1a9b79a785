import re

import mongomock
import pytest
from fastapi.testclient import TestClient

import config
import database
from mailer import get_email_sender
from main import app, order_limiter
from schemas import Product

ADMIN_EMAIL = "admin@shop.com"
ADMIN_PASSWORD = "admin123"

ADDRESS = {
    "fullName": "Ram Thapa",
    "phone": "9800000000",
    "address": "Baneshwor 10",
    "city": "Kathmandu",
}


class Outbox:
    """Collects outgoing mail instead of calling SendGrid."""

    def __init__(self):
        self.messages = []
        self.fail = False

    async def send(self, to, subject, message):
        if self.fail:
            raise ConnectionRefusedError("mail api down")
        self.messages.append({"to": to, "subject": subject, "message": message})
        return "test-message-id"

    def last_otp(self):
        return re.search(r"\b(\d{6})\b", self.messages[-1]["message"]).group(1)


@pytest.fixture
def db():
    mock_db = mongomock.MongoClient()["storefront_test"]
    database.set_database(mock_db)
    yield mock_db
    database.set_database(None)


@pytest.fixture
def outbox():
    box = Outbox()
    app.dependency_overrides[get_email_sender] = lambda: box.send
    yield box
    app.dependency_overrides.pop(get_email_sender, None)


@pytest.fixture
def client(db, outbox, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_EMAIL", ADMIN_EMAIL)
    monkeypatch.setattr(config, "ADMIN_PASSWORD", ADMIN_PASSWORD)
    monkeypatch.setattr(config, "OTP_BYPASS_EMAILS", [])
    order_limiter.reset()
    with TestClient(app) as c:
        yield c
    order_limiter.reset()


def register(client, email="a@x.com", password="pw123456", name="Ram"):
    response = client.post("/api/auth/register", json={"name": name, "email": email, "password": password, "phone": "9800000000"})
    assert response.status_code == 201, response.json()
    return response.json()


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_headers(client):
    return bearer(register(client)["token"])


@pytest.fixture
def admin_headers(client):
    response = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert response.status_code == 200, response.json()
    return bearer(response.json()["token"])


def add_product(name="Match Ball", price=500, stock=10, status="active", **extra):
    return database.create_document("product", Product(name=name, price=price, stock=stock, status=status, **extra))


def stock_of(db, product_id):
    return db["product"].find_one({"_id": database.to_object_id(product_id)})["stock"]
