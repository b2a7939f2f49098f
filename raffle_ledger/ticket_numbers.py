import secrets
import string
import time
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import TICKET_NUMBER_MAX_ATTEMPTS, TICKET_NUMBER_PREFIX
from .errors import TicketNumberExhausted
from .models import Ticket

_B36 = string.digits + string.ascii_uppercase


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_B36[r])
    return "".join(reversed(out))


def generate_ticket_number() -> str:
    # TMG-<ms timestamp base36>-<4 random chars>, e.g. TMG-M1X2Y3Z4-7QKD
    stamp = _base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_B36) for _ in range(4))
    return f"{TICKET_NUMBER_PREFIX}-{stamp}-{suffix}"


async def _number_taken(db: AsyncSession, number: str) -> bool:
    found = await db.execute(select(Ticket.id).where(Ticket.ticket_number == number).limit(1))
    return found.first() is not None


async def allocate_ticket_numbers(
    db: AsyncSession,
    count: int,
    generate: Callable[[], str] = generate_ticket_number,
    max_attempts: int = TICKET_NUMBER_MAX_ATTEMPTS,
) -> list[str]:
    """
    Returns `count` ticket numbers that are neither in the store nor repeated
    within the batch. Each number gets `max_attempts` tries; running out aborts
    the whole purchase unit.
    """
    numbers: list[str] = []
    seen: set[str] = set()
    for _ in range(count):
        candidate = generate()
        attempts = 0
        while candidate in seen or await _number_taken(db, candidate):
            attempts += 1
            if attempts >= max_attempts:
                raise TicketNumberExhausted("Failed to generate unique ticket number. Please try again.")
            candidate = generate()
        seen.add(candidate)
        numbers.append(candidate)
    return numbers
