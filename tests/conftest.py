import asyncio
import os
import tempfile

# settings are read at import time, so point them at throwaway resources first
_DB_DIR = tempfile.mkdtemp(prefix="raffle-ledger-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/test.db"
os.environ["AUTH_SIGNING_SECRET"] = "test_auth_secret"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["RATE_LIMIT_PER_MINUTE"] = "10000"

import time
import uuid
from decimal import Decimal

import httpx
import pytest_asyncio

from raffle_ledger.config import MIN_CHARGE_AMOUNT
from raffle_ledger.db import AutocommitSessionLocal, SessionLocal, create_all, drop_all, engine
from raffle_ledger.deps import get_coordinator, get_gateway, get_redis
from raffle_ledger.errors import GatewayError, ValidationFailed
from raffle_ledger.gateway import IntentResult, RefundResult, StripeGateway
from raffle_ledger.main import app
from raffle_ledger.transactions import TransactionCoordinator


class FakeRedis:
    """Just enough of redis.asyncio.Redis (decode_responses=True) for the API and worker."""

    def __init__(self):
        self.kv = {}
        self.hashes = {}
        self.streams = {}
        self._seq = 0

    async def get(self, key):
        return self.kv.get(key)

    async def set(self, key, value):
        self.kv[key] = str(value)
        return True

    async def setex(self, key, ttl, value):
        self.kv[key] = str(value)
        return True

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def hset(self, key, mapping=None, **kwargs):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in (mapping or {}).items()})
        return len(mapping or {})

    async def expire(self, key, seconds):
        return True

    async def xadd(self, stream, fields):
        self._seq += 1
        msg_id = f"{int(time.time() * 1000)}-{self._seq}"
        self.streams.setdefault(stream, []).append((msg_id, {k: str(v) for k, v in fields.items()}))
        return msg_id

    async def xread(self, streams, block=None, count=None):
        out = []
        for stream, last_id in streams.items():
            msgs = [m for m in self.streams.get(stream, []) if _stream_id(m[0]) > _stream_id(last_id)]
            if msgs:
                out.append((stream, msgs[:count] if count else msgs))
        if not out and block:
            await asyncio.sleep(block / 1000)
        return out

    async def xdel(self, stream, msg_id):
        before = len(self.streams.get(stream, []))
        self.streams[stream] = [m for m in self.streams.get(stream, []) if m[0] != msg_id]
        return before - len(self.streams[stream])

    async def aclose(self):
        pass


def _stream_id(msg_id: str) -> tuple[int, int]:
    ms, seq = msg_id.split("-")
    return int(ms), int(seq)


class RecordingGateway(StripeGateway):
    """Stripe stand-in: hands out intent ids and records every call."""

    def __init__(self):
        super().__init__(api_key="sk_test_dummy")
        self.intents = []
        self.refunds = []
        self.fail_refunds = False

    async def create_intent(self, amount, currency="usd", metadata=None, idempotency_key=None):
        if amount < MIN_CHARGE_AMOUNT:
            raise ValidationFailed(f"Amount must be at least ${MIN_CHARGE_AMOUNT}", code="AMOUNT_TOO_LOW")
        intent_id = f"pi_test_{uuid.uuid4().hex[:16]}"
        self.intents.append(
            {
                "intent_id": intent_id,
                "amount": Decimal(amount),
                "currency": currency,
                "metadata": metadata or {},
                "idempotency_key": idempotency_key,
            }
        )
        return IntentResult(intent_id=intent_id, client_secret=f"{intent_id}_secret_test")

    async def create_refund(self, intent_id, amount=None):
        if self.fail_refunds:
            raise GatewayError("Stripe refund failed: charge_already_refunded")
        refund_id = f"re_test_{uuid.uuid4().hex[:16]}"
        self.refunds.append({"intent_id": intent_id, "amount": amount, "refund_id": refund_id})
        return RefundResult(refund_id=refund_id)


@pytest_asyncio.fixture(autouse=True, scope="function")
async def fresh_db():
    await drop_all()
    await create_all()
    yield


@pytest_asyncio.fixture(scope="function")
async def fake_redis():
    return FakeRedis()


@pytest_asyncio.fixture(scope="function")
async def gateway():
    return RecordingGateway()


@pytest_asyncio.fixture(scope="function")
async def coordinator():
    return TransactionCoordinator(engine, SessionLocal, AutocommitSessionLocal, mode="auto")


@pytest_asyncio.fixture(scope="function")
async def client(fake_redis, gateway, coordinator):
    app.dependency_overrides[get_redis] = lambda: fake_redis
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    try:
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test", timeout=10.0
        ) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def offline_client(client):
    """The API client with transactions switched off: every flush commits on its own."""
    offline = TransactionCoordinator(engine, SessionLocal, AutocommitSessionLocal, mode="off")
    app.dependency_overrides[get_coordinator] = lambda: offline
    return client
