import hashlib
import hmac
import json
import os
import time
import uuid
from datetime import datetime, timedelta, timezone

import httpx
from jose import jwt


def auth(user_id: str, role: str = "user", ttl_minutes: int = 60) -> dict:
    secret = os.environ["AUTH_SIGNING_SECRET"]
    exp = int((datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes)).timestamp())
    token = jwt.encode({"sub": user_id, "role": role, "exp": exp}, secret, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


ADMIN = auth("admin-1", role="admin")


def sign(payload: str, secret: str | None = None, timestamp: int | None = None) -> str:
    """Stripe-Signature header value for `payload`."""
    secret = secret or os.environ["STRIPE_WEBHOOK_SECRET"]
    t = timestamp or int(time.time())
    digest = hmac.new(secret.encode(), f"{t}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={t},v1={digest}"


def make_event(event_type: str, intent_id: str, **intent_fields) -> dict:
    return {
        "id": f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "data": {"object": {"id": intent_id, "object": "payment_intent", **intent_fields}},
    }


async def send_event(client: httpx.AsyncClient, event: dict, secret: str | None = None) -> httpx.Response:
    payload = json.dumps(event)
    return await client.post(
        "/webhooks/gateway",
        content=payload,
        headers={"Stripe-Signature": sign(payload, secret), "Content-Type": "application/json"},
    )


async def create_competition(
    client: httpx.AsyncClient, title="Test Raffle", ticket_price="10.00", max_tickets=10, max_per_person=5, status="active"
) -> str:
    r = await client.post(
        "/admin/competitions",
        json={
            "title": title,
            "ticket_price": ticket_price,
            "max_tickets": max_tickets,
            "max_per_person": max_per_person,
            "status": status,
        },
        headers=ADMIN,
    )
    r.raise_for_status()
    data = r.json()
    assert data.get("ok") is True, data
    return data["competition_id"]


async def buy(client: httpx.AsyncClient, user_id: str, competition_id: str, quantity: int = 1) -> httpx.Response:
    return await client.post(
        "/tickets/purchase", json={"competition_id": competition_id, "quantity": quantity}, headers=auth(user_id)
    )


async def give_points(client: httpx.AsyncClient, user_id: str, amount: int) -> dict:
    # opens the points account first
    (await client.get("/points/summary", headers=auth(user_id))).raise_for_status()
    r = await client.post("/admin/points/add", json={"user_id": user_id, "amount": amount}, headers=ADMIN)
    r.raise_for_status()
    return r.json()


async def competition(client: httpx.AsyncClient, competition_id: str) -> dict:
    rows = (await client.get("/admin/competitions", headers=ADMIN)).json()
    return next(c for c in rows if c["competition_id"] == competition_id)


async def payment_by_intent(client: httpx.AsyncClient, intent_id: str) -> dict:
    rows = (await client.get("/admin/payments", params={"limit": 500}, headers=ADMIN)).json()
    return next(p for p in rows if p["payment_intent_id"] == intent_id)
