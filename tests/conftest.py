import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("ENABLE_EXPIRY_WORKER", "false")
os.environ.setdefault("CASHFREE_APP_ID", "test-app")
os.environ.setdefault("CASHFREE_SECRET_KEY", "test-key")
os.environ.setdefault("CASHFREE_API_URL", "https://cashfree.test/pg")

from datetime import date, datetime, timezone  # noqa: E402

import pytest  # noqa: E402
from jose import jwt  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from ground_booking import models  # noqa: E402,F401
from ground_booking import redis_client as redis_module  # noqa: E402
from ground_booking.catalog import GroundCatalog  # noqa: E402
from ground_booking.db import Base  # noqa: E402
from ground_booking.errors import GatewayUnavailable, GroundNotFound, NotFound  # noqa: E402
from ground_booking.gateway import GatewayOrder, PaymentGateway  # noqa: E402

# 10:00 in Asia/Kolkata
NOW = datetime(2024, 6, 1, 4, 30, tzinfo=timezone.utc)
DAY = date(2024, 6, 1)

GROUNDS = {
    "G1": {
        "_id": "G1",
        "name": "Oval Turf",
        "owner": {"userId": "owner-1"},
        "price": {
            "ranges": [
                {"start": "06:00", "end": "18:00", "perHour": 500},
                {"start": "18:00", "end": "06:00", "perHour": 800},
            ],
            "discount": 0,
        },
        "features": {"capacity": 22},
    },
    "G2": {
        "_id": "G2",
        "owner": {"userId": "owner-2"},
        "price": {"perHour": 600, "discount": 100},
        "features": {"capacity": 12},
    },
    "CHEAP": {
        "_id": "CHEAP",
        "owner": {"userId": "owner-3"},
        "price": {"perHour": 0.5},
        "features": {},
    },
}

PLAYERS = {
    "teamName": "Strikers",
    "playerCount": 11,
    "contactPerson": {"name": "Asha", "phone": "9876543210", "email": "asha@example.com"},
}


class DummyPipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    def set(self, *args, **kwargs):
        self.ops.append(("set", args, kwargs))
        return self

    def expire(self, *args, **kwargs):
        self.ops.append(("expire", args, kwargs))
        return self

    def delete(self, *args, **kwargs):
        self.ops.append(("delete", args, kwargs))
        return self

    async def execute(self):
        results = []
        for name, args, kwargs in self.ops:
            results.append(await getattr(self.redis, name)(*args, **kwargs))
        self.ops = []
        return results


class DummyRedis:
    def __init__(self):
        self.store = {}
        self.ttl = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return False
        self.store[key] = value
        if ex is not None:
            self.ttl[key] = ex
        return True

    async def exists(self, key):
        return 1 if key in self.store else 0

    async def incr(self, key):
        value = int(self.store.get(key, 0)) + 1
        self.store[key] = str(value)
        return value

    async def expire(self, key, seconds):
        self.ttl[key] = seconds
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    def pipeline(self):
        return DummyPipeline(self)


class StaticCatalog(GroundCatalog):
    def __init__(self, grounds=None):
        super().__init__(base_url="http://catalog.test")
        self.grounds = GROUNDS if grounds is None else grounds
        self.calls = 0

    async def get_ground(self, ground_id):
        self.calls += 1
        if ground_id not in self.grounds:
            raise GroundNotFound(f"Ground {ground_id} not found")
        return self.grounds[ground_id]


class FakeGateway(PaymentGateway):
    """In-memory gateway: orders start ACTIVE, tests flip them with ``set_status``."""

    def __init__(self, webhook_secret=None):
        super().__init__(base_url="https://cashfree.test/pg", app_id="app", secret_key="key",
                         webhook_secret=webhook_secret)
        self.orders = {}
        self.created = []
        self.down = False

    def set_status(self, order_id, status):
        self.orders[order_id]["order_status"] = status

    async def create_order(self, order_id, amount, currency, customer, return_url, notify_url):
        if self.down:
            raise GatewayUnavailable("Payment gateway timed out", status_code=503)
        self.created.append({"order_id": order_id, "amount": amount, "customer": customer})
        self.orders[order_id] = {"order_id": order_id, "order_status": "ACTIVE", "order_amount": float(amount)}
        session = f"session_{len(self.created)}"
        return GatewayOrder(order_id=order_id, payment_session_id=session, checkout_url=f"{self.checkout_url}/{session}")

    async def fetch_order(self, order_id):
        if self.down:
            raise GatewayUnavailable("Payment gateway unreachable")
        if order_id not in self.orders:
            raise NotFound("Payment order not found at gateway")
        return dict(self.orders[order_id])


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def emit(self, user_id, kind, payload):
        self.events.append((user_id, kind, payload))

    def kinds(self):
        return [kind for _, kind, _ in self.events]


def make_token(sub, roles=("user",)):
    return jwt.encode({"sub": sub, "roles": list(roles)}, os.environ["JWT_SECRET"], algorithm="HS256")


def auth(sub, roles=("user",)):
    return {"Authorization": f"Bearer {make_token(sub, roles)}"}


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    r = DummyRedis()
    monkeypatch.setattr(redis_module, "redis_client", r)
    return r


@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bookings.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def catalog():
    return StaticCatalog()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()
