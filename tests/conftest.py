import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import create_document, ensure_indexes
from images import FakeImageHost
from main import create_app
from money import to_cents
from push import FakePushAdapter
from schemas import Product, User
from security import hash_password
from settings import Settings

ADMIN_EMAIL = "store-admin@example.com"
ADMIN_PASSWORD = "admin-pass"


@pytest.fixture()
def db():
    database = mongomock.MongoClient()["holohaven_test"]
    ensure_indexes(database)
    return database


@pytest.fixture()
def push():
    return FakePushAdapter()


@pytest.fixture()
def images():
    return FakeImageHost()


@pytest.fixture()
def settings():
    return Settings(
        jwt_secret="test-secret",
        environment="test",
        seed_on_startup=False,
        token_sweep_interval_seconds=0,
    )


@pytest.fixture()
def client(db, push, images, settings):
    app = create_app(settings=settings, db=db, push=push, images=images)
    with TestClient(app) as test_client:
        yield test_client


def auth_header(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def register(client):
    """Register a user and return (user_id, auth headers)."""

    def _register(username="fan", email=None, password="secret123"):
        res = client.post(
            "/auth/register",
            json={"email": email or f"{username}@example.com", "username": username, "password": password},
        )
        assert res.status_code == 200, res.text
        body = res.json()
        return body["userId"], auth_header(body["token"])

    return _register


@pytest.fixture()
def admin(client, db):
    """Insert an admin directly and return (admin_id, auth headers)."""
    create_document(
        db,
        "user",
        User(email=ADMIN_EMAIL, username="store-admin", password_hash=hash_password(ADMIN_PASSWORD), is_admin=True),
    )
    res = client.post("/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert res.status_code == 200, res.text
    body = res.json()
    return body["userId"], auth_header(body["token"])


@pytest.fixture()
def make_product(db):
    def _make(name="Shiranui Flare Hoodie", price="35.00", category="Apparel", uploaded_by=None, **extra):
        product = Product(name=name, price_cents=to_cents(price), category=category, uploaded_by=uploaded_by, **extra)
        return create_document(db, "product", product)

    return _make


@pytest.fixture()
def expo_token():
    counter = iter(range(1, 10_000))

    def _token():
        return f"ExponentPushToken[device-{next(counter)}]"

    return _token
