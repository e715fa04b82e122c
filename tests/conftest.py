import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")

import fakeredis
import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from cache import Cache
from database import EntityStore
from main import build_services, create_app
from schemas import AddressDTO, Product
from security import Principal
from settings import Settings


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def send_verification_code(self, email, code):
        self.sent.append((email, code))
        return True

    def last_code(self, email):
        return [code for to, code in self.sent if to == email][-1]


@pytest.fixture
def settings(tmp_path):
    return Settings(jwt_secret="test-secret", upload_dir=str(tmp_path / "images"), allowed_origins=["*"])


@pytest.fixture
def store():
    db = mongomock.MongoClient()["flameandcrumble_test"]
    store = EntityStore(db)
    store.ensure_indexes()
    return store


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def cache(redis_server):
    return Cache(fakeredis.FakeRedis(server=redis_server, decode_responses=True))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(settings, store, cache, notifier):
    return build_services(settings, store=store, cache=cache, notifier=notifier)


@pytest.fixture
def client(settings, store, cache, notifier):
    app = create_app(settings, store=store, cache=cache, notifier=notifier, seed=False)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_product(store):
    def _make(name="Vanilla Candle", price=10.0, stock=50, category="candles"):
        return store.create_document("product", Product(name=name, price=price, category=category, stock=stock,
                                                        image=f"/images/{name.lower().replace(' ', '-')}.jpg"))
    return _make


@pytest.fixture
def alice():
    return Principal(user_id=str(ObjectId()), email="alice@mailbox.org", role="user")


@pytest.fixture
def bob():
    return Principal(user_id=str(ObjectId()), email="bob@mailbox.org", role="user")


def address_dto(**overrides):
    data = {
        "type": "Home",
        "full_name": "Alice Baker",
        "phone": "+1 555 0100",
        "line1": "12 Wick Lane",
        "city": "Portland",
        "state": "OR",
        "zip": "97201",
        "country": "US",
    }
    data.update(overrides)
    return AddressDTO(**data)


def register(client, email, name="Test User", password="s3cret-pass"):
    res = client.post("/auth/register", json={"name": name, "email": email, "password": password})
    assert res.status_code == 201, res.text
    # tests authenticate with explicit headers; drop the session cookie
    client.cookies.clear()
    return res.json()


def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}
