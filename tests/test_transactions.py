from decimal import Decimal

import pytest
from sqlalchemy import event, select
from sqlalchemy.exc import DBAPIError, IntegrityError, NotSupportedError
from sqlalchemy.orm.exc import StaleDataError

from raffle_ledger.db import AutocommitSessionLocal, SessionLocal, engine
from raffle_ledger.errors import ConcurrentUpdateError, ValidationFailed
from raffle_ledger.models import Competition, CompetitionStatus
from raffle_ledger.transactions import (
    SUPPORTED,
    UNKNOWN,
    UNSUPPORTED,
    TransactionCoordinator,
    is_transaction_unsupported,
)

pytestmark = pytest.mark.asyncio


def _coordinator(mode="auto") -> TransactionCoordinator:
    return TransactionCoordinator(engine, SessionLocal, AutocommitSessionLocal, mode=mode)


def _competition(title: str) -> Competition:
    return Competition(
        title=title, ticket_price=Decimal("2.00"), max_tickets=5, max_per_person=5,
        tickets_sold=0, status=CompetitionStatus.ACTIVE,
    )


async def _titles() -> list[str]:
    async with SessionLocal() as db:
        return list((await db.execute(select(Competition.title))).scalars())


async def test_probe_detects_sqlite_transactions():
    coord = _coordinator()
    assert coord.capability == UNKNOWN

    assert await coord.supports_transactions() is True
    assert coord.capability == SUPPORTED
    assert [(t.from_state, t.to_state) for t in coord.transitions] == [(UNKNOWN, SUPPORTED)]


async def test_modes_pin_the_state_without_probing():
    assert _coordinator("on").capability == SUPPORTED
    assert _coordinator("off").capability == UNSUPPORTED
    with pytest.raises(ValueError):
        _coordinator("sometimes")


async def test_failed_unit_rolls_back_everything():
    coord = _coordinator()

    async def unit(db):
        db.add(_competition("rolled back"))
        await db.flush()
        raise ValidationFailed("nope")

    with pytest.raises(ValidationFailed):
        await coord.run(unit)
    assert "rolled back" not in await _titles()


async def test_runtime_rejection_downgrades_and_reruns_once():
    coord = _coordinator("on")
    calls = []

    async def unit(db):
        calls.append(coord.capability)
        if len(calls) == 1:
            raise NotSupportedError("SAVEPOINT sp1", {}, Exception("savepoints are not supported"))
        db.add(_competition("after downgrade"))
        await db.flush()
        return "done"

    assert await coord.run(unit) == "done"
    assert calls == [SUPPORTED, UNSUPPORTED]
    assert coord.capability == UNSUPPORTED
    assert coord.transitions[-1].to_state == UNSUPPORTED
    assert "after downgrade" in await _titles()


async def test_other_errors_are_not_retried():
    coord = _coordinator("on")
    calls = []

    async def unit(db):
        calls.append(1)
        raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: tickets.ticket_number"))

    with pytest.raises(IntegrityError):
        await coord.run(unit)
    assert len(calls) == 1
    assert coord.capability == SUPPORTED


async def test_without_transactions_earlier_writes_survive_a_failure():
    coord = _coordinator("off")

    async def unit(db):
        db.add(_competition("partial write"))
        await db.flush()
        raise ValidationFailed("late failure")

    with pytest.raises(ValidationFailed):
        await coord.run(unit)
    assert "partial write" in await _titles()


async def test_lost_update_surfaces_as_conflict():
    coord = _coordinator()

    async def unit(db):
        raise StaleDataError("UPDATE statement on table 'competitions' expected to update 1 row(s); 0 were matched.")

    with pytest.raises(ConcurrentUpdateError) as exc:
        await coord.run(unit)
    assert exc.value.status_code == 409


async def test_version_column_rejects_a_stale_writer():
    coord = _coordinator("off")

    async def create(db):
        comp = _competition("versioned")
        db.add(comp)
        await db.flush()
        return comp.id

    comp_id = await coord.run(create)

    async with AutocommitSessionLocal() as stale:
        stale_comp = await stale.get(Competition, comp_id)

        async def bump(db):
            comp = await db.get(Competition, comp_id)
            comp.tickets_sold += 1
            await db.flush()

        await coord.run(bump)

        stale_comp.tickets_sold += 1
        with pytest.raises(StaleDataError):
            await stale.flush()

    async with SessionLocal() as db:
        assert (await db.get(Competition, comp_id)).tickets_sold == 1


async def test_classifies_capability_errors():
    assert is_transaction_unsupported(NotSupportedError("BEGIN", {}, Exception("x")))
    assert is_transaction_unsupported(
        DBAPIError("BEGIN", {}, Exception("Transaction numbers are only allowed on a replica set member or mongos"))
    )
    assert not is_transaction_unsupported(DBAPIError("INSERT", {}, Exception("disk I/O error")))
    assert not is_transaction_unsupported(ValueError("transactions are not supported"))


async def test_read_runs_without_taking_the_writer_lock():
    statements = []

    def _record(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    event.listen(engine.sync_engine, "before_cursor_execute", _record)
    try:
        coord = _coordinator("on")
        titles = await coord.read(_all_titles)
        assert titles == []
        assert not any(s.startswith("BEGIN") for s in statements)

        await coord.run(_all_titles)
        assert "BEGIN IMMEDIATE" in statements
    finally:
        event.remove(engine.sync_engine, "before_cursor_execute", _record)


async def _all_titles(db) -> list[str]:
    return list((await db.execute(select(Competition.title))).scalars())
