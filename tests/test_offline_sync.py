import asyncio
import json

import pytest
from sqlalchemy.exc import OperationalError

import raffle_ledger.deps as deps
import raffle_ledger.main as main_module
import raffle_ledger.worker as worker
from raffle_ledger.errors import TicketNumberExhausted
from raffle_ledger.worker import CURSOR_KEY, DEAD_LETTER_STREAM, STREAM, drain, process_one
from tests.helpers import ADMIN, auth, competition, create_competition, make_event, send_event

pytestmark = pytest.mark.asyncio


async def test_store_outage_queues_event_and_worker_settles_it(client, fake_redis, coordinator, monkeypatch):
    comp_id = await create_competition(client, ticket_price="10.00")
    r = await client.post(
        "/payments/intents/single", json={"competition_id": comp_id, "quantity": 1}, headers=auth("alice")
    )
    intent_id = r.json()["payment_intent_id"]

    async def store_down(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(main_module, "handle_event", store_down)
    r = await send_event(client, make_event("payment_intent.succeeded", intent_id))
    assert r.status_code == 202
    assert r.json()["status"] == "PENDING_SYNC"
    monkeypatch.undo()

    queued = fake_redis.streams[STREAM]
    assert len(queued) == 1
    assert (await competition(client, comp_id))["tickets_sold"] == 0

    _, data = queued[0]
    outcome = await process_one(data, coordinator=coordinator)
    assert outcome["reason_code"] == "SETTLED"
    assert (await competition(client, comp_id))["tickets_sold"] == 1

    # replaying the same backlog entry again is harmless
    outcome = await process_one(data, coordinator=coordinator)
    assert outcome["duplicate"] is True
    assert (await competition(client, comp_id))["tickets_sold"] == 1

    events = (await client.get("/admin/gateway-events", params={"payment_intent_id": intent_id}, headers=ADMIN)).json()
    codes = {e["reason_code"] for e in events}
    assert {"STORE_UNAVAILABLE", "SETTLED_SYNCED", "DUPLICATE_SYNCED"} <= codes


async def _queued_intent(client, fake_redis, user_id, comp_id) -> str:
    r = await client.post(
        "/payments/intents/single", json={"competition_id": comp_id, "quantity": 1}, headers=auth(user_id)
    )
    intent_id = r.json()["payment_intent_id"]
    await fake_redis.xadd(STREAM, {"event": json.dumps(make_event("payment_intent.succeeded", intent_id))})
    return intent_id


async def test_worker_parks_an_unsettleable_event_and_keeps_draining(client, fake_redis, monkeypatch):
    bad_comp = await create_competition(client, title="Bad")
    good_comp = await create_competition(client, title="Good")
    bad_intent = await _queued_intent(client, fake_redis, "alice", bad_comp)
    await _queued_intent(client, fake_redis, "bob", good_comp)

    real_handle_event = worker.handle_event

    async def exhausted_for_one_intent(coordinator, event):
        if event["data"]["object"]["id"] == bad_intent:
            raise TicketNumberExhausted("Unable to generate unique ticket numbers. Please try again.")
        return await real_handle_event(coordinator, event)

    monkeypatch.setattr(worker, "handle_event", exhausted_for_one_intent)
    monkeypatch.setattr(deps, "redis", fake_redis)

    # main() never returns; it must still be polling once the backlog is empty
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(worker.main(), 2.0)

    assert fake_redis.streams[STREAM] == []
    assert (await competition(client, good_comp))["tickets_sold"] == 1
    assert (await competition(client, bad_comp))["tickets_sold"] == 0

    dead = fake_redis.streams[DEAD_LETTER_STREAM]
    assert len(dead) == 1
    _, parked = dead[0]
    assert json.loads(parked["event"])["data"]["object"]["id"] == bad_intent
    assert "TicketNumberExhausted" in parked["error"]
    assert fake_redis.kv[CURSOR_KEY] != "0-0"


async def test_malformed_backlog_entry_does_not_block_the_next(client, fake_redis, coordinator):
    comp_id = await create_competition(client)
    await fake_redis.xadd(STREAM, {"payload": "not an event"})
    await _queued_intent(client, fake_redis, "alice", comp_id)
    last_good = fake_redis.streams[STREAM][-1][0]

    cursor = await drain(fake_redis, "0-0", coordinator=coordinator)

    assert cursor == last_good
    assert fake_redis.kv[CURSOR_KEY] == last_good
    assert fake_redis.streams[STREAM] == []
    assert (await competition(client, comp_id))["tickets_sold"] == 1
    assert "KeyError" in fake_redis.streams[DEAD_LETTER_STREAM][0][1]["error"]


async def test_store_outage_leaves_the_backlog_in_place(client, fake_redis, coordinator, monkeypatch):
    comp_id = await create_competition(client)
    await _queued_intent(client, fake_redis, "alice", comp_id)

    async def store_down(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(worker, "handle_event", store_down)
    monkeypatch.setattr(worker, "BACKOFF_SECONDS", 0)

    cursor = await drain(fake_redis, "0-0", coordinator=coordinator)

    assert cursor == "0-0"
    assert len(fake_redis.streams[STREAM]) == 1
    assert DEAD_LETTER_STREAM not in fake_redis.streams
