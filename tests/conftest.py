import hashlib
import hmac
import json
import threading
import time
import uuid
from datetime import datetime
from decimal import Decimal

import pytest

from fuel_service.auth import hash_password
from fuel_service.payments import StripeGateway
from fuel_service.schemas import OrderStatus
from fuel_service.store import MemoryStore

WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway(StripeGateway):
    """Real webhook verification, canned checkout sessions."""

    def __init__(self):
        super().__init__(api_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET)
        self.sessions = []
        self.threads = []

    def create_checkout_session(self, order, customer_email, success_url, cancel_url):
        self.threads.append(threading.get_ident())
        session = {
            "id": f"cs_test_{len(self.sessions) + 1}",
            "url": f"https://checkout.example.test/{order['id']}",
        }
        self.sessions.append({"order": order, "email": customer_email, **session})
        return session


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def make_event(event_type: str, obj: dict, event_id: str = None) -> str:
    return json.dumps({
        "id": event_id or f"evt_{uuid.uuid4().hex}",
        "type": event_type,
        "data": {"object": obj},
    })


def actor(user: dict) -> dict:
    return {"id": user["id"], "role": user["role"], "trace_id": "test-trace"}


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def gateway():
    return FakeGateway()


async def _add_user(store, role, email, **profile):
    user = await store.add_user({
        "id": str(uuid.uuid4()),
        "email": email,
        "password_hash": hash_password("secret123"),
        "name": email.split("@")[0],
        "phone": None,
        "role": role,
        "created_at": datetime.utcnow(),
    })
    if role == "driver":
        await store.add_driver_profile({
            "user_id": user["id"],
            "vehicle_type": profile.get("vehicle_type", "truck"),
            "license_plate": profile.get("license_plate", "FUEL-1"),
        })
    return actor(user)


@pytest.fixture
async def customer(store):
    return await _add_user(store, "customer", "carol@example.com")


@pytest.fixture
async def other_customer(store):
    return await _add_user(store, "customer", "dave@example.com")


@pytest.fixture
async def driver(store):
    return await _add_user(store, "driver", "dan@example.com")


@pytest.fixture
async def other_driver(store):
    return await _add_user(store, "driver", "erin@example.com", license_plate="FUEL-2")


@pytest.fixture
def admin():
    return {"id": str(uuid.uuid4()), "role": "admin", "trace_id": "test-trace"}


@pytest.fixture
def place_order(store):
    """Insert an order directly in the given status."""

    async def _place(customer, status=OrderStatus.PENDING, driver=None,
                     delivery_lat=0.0, delivery_lng=0.001, total_amount=Decimal("39.49")):
        order_id = str(uuid.uuid4())
        return await store.add_order({
            "id": order_id,
            "order_number": f"GR{order_id[:8]}",
            "customer_id": customer["id"],
            "driver_id": driver["id"] if driver else None,
            "status": OrderStatus(status).value,
            "gas_type": "regular",
            "quantity": Decimal("10"),
            "delivery_lat": delivery_lat,
            "delivery_lng": delivery_lng,
            "delivery_address": "1 Main St",
            "price_per_unit": Decimal("3.45"),
            "total_amount": total_amount,
            "created_at": datetime.utcnow(),
        })

    return _place
