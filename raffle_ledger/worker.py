import asyncio
import json
import logging

from sqlalchemy.exc import SQLAlchemyError

from . import deps
from .config import LOG_LEVEL
from .db import create_all
from .errors import ConcurrentUpdateError
from .settlement import handle_event, record_gateway_event
from .transactions import TransactionCoordinator

logger = logging.getLogger(__name__)

STREAM = "pending_settlements"
DEAD_LETTER_STREAM = "pending_settlements:dead"
CURSOR_KEY = "worker:last_id"
BACKOFF_SECONDS = 1.0


async def main():
    await create_all()

    # resume where we left off so the backlog drains after an outage
    last_id = await deps.redis.get(CURSOR_KEY) or "0-0"

    while True:
        last_id = await drain(deps.redis, last_id)


async def drain(redis, last_id: str, coordinator: TransactionCoordinator | None = None) -> str:
    """Replays one batch from the backlog and returns the new cursor."""
    resp = await redis.xread({STREAM: last_id}, block=5000, count=50)
    if not resp:
        return last_id

    _, messages = resp[0]
    for msg_id, data in messages:
        try:
            await process_one(data, coordinator)
        except (SQLAlchemyError, ConcurrentUpdateError):
            # store down or row busy; leave the message and retry from here
            logger.warning("Ledger store unavailable, backing off", extra={"message_id": msg_id})
            await asyncio.sleep(BACKOFF_SECONDS)
            break
        except Exception as e:
            # replaying it again would fail the same way; park it for an operator
            logger.exception("Queued gateway event cannot be settled, moving it aside", extra={"message_id": msg_id})
            await redis.xadd(DEAD_LETTER_STREAM, {**data, "message_id": msg_id, "error": repr(e)})

        last_id = msg_id
        await redis.xdel(STREAM, msg_id)
        await redis.set(CURSOR_KEY, last_id)
    return last_id


async def process_one(data: dict, coordinator: TransactionCoordinator | None = None) -> dict:
    coordinator = coordinator or deps.coordinator
    event = json.loads(data["event"])
    logger.info(
        "Replaying queued gateway event",
        extra={"event_id": event.get("id"), "event_type": event.get("type")},
    )

    outcome = await handle_event(coordinator, event)
    await record_gateway_event(coordinator, event, outcome["status"], f"{outcome['reason_code']}_SYNCED")
    return outcome


if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(main())
