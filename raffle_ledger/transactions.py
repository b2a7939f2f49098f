"""
Runs a unit of work against the ledger store, inside one atomic transaction
when the store can do that, or statement-by-statement when it cannot.

Capability is a small state machine:

    UNKNOWN --probe--> SUPPORTED | UNSUPPORTED
    SUPPORTED --store rejects a transaction at runtime--> UNSUPPORTED

TRANSACTIONS_MODE=on/off pins the state at startup; only "auto" probes.
In the UNSUPPORTED state each flush commits on its own, so a failure half way
through a unit leaves the earlier writes in place. That is logged, never hidden.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, NotSupportedError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from .errors import ConcurrentUpdateError

logger = logging.getLogger(__name__)

T = TypeVar("T")
UnitOfWork = Callable[[AsyncSession], Awaitable[T]]

UNKNOWN = "unknown"
SUPPORTED = "supported"
UNSUPPORTED = "unsupported"

_UNSUPPORTED_MARKERS = (
    "transaction numbers are only allowed on a replica set",
    "replica set",
    "transactions are not supported",
    "transaction is not supported",
    "savepoint is not supported",
    "savepoints are not supported",
    "cannot start a transaction",
)


def is_transaction_unsupported(exc: BaseException) -> bool:
    """True only for errors meaning 'this store cannot do transactions'."""
    if isinstance(exc, NotSupportedError):
        return True
    if isinstance(exc, DBAPIError):
        msg = str(exc.orig or exc).lower()
        return any(m in msg for m in _UNSUPPORTED_MARKERS)
    return False


@dataclass
class Transition:
    from_state: str
    to_state: str
    reason: str
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class TransactionCoordinator:
    def __init__(
        self,
        engine: AsyncEngine,
        session_factory: async_sessionmaker,
        autocommit_session_factory: async_sessionmaker,
        mode: str = "auto",
    ):
        self.engine = engine
        self.session_factory = session_factory
        self.autocommit_session_factory = autocommit_session_factory
        self.transitions: list[Transition] = []
        self._lock = asyncio.Lock()

        if mode == "on":
            self._state = SUPPORTED
        elif mode == "off":
            self._state = UNSUPPORTED
        elif mode == "auto":
            self._state = UNKNOWN
        else:
            raise ValueError(f"TRANSACTIONS_MODE must be auto, on or off, got {mode!r}")

    @property
    def capability(self) -> str:
        return self._state

    def _move(self, to_state: str, reason: str) -> None:
        if to_state == self._state:
            return
        self.transitions.append(Transition(self._state, to_state, reason))
        if to_state == UNSUPPORTED:
            logger.warning(
                "Ledger store transactions unavailable (%s). Running units of work without "
                "a transaction; a mid-unit failure can leave partial writes.",
                reason,
            )
        else:
            logger.info("Ledger store transactions %s (%s)", to_state, reason)
        self._state = to_state

    async def _probe(self) -> None:
        try:
            async with self.engine.connect() as conn:
                async with conn.begin():
                    nested = await conn.begin_nested()
                    await conn.execute(text("SELECT 1"))
                    await nested.rollback()
        except Exception as e:
            if is_transaction_unsupported(e):
                self._move(UNSUPPORTED, f"probe: {e}")
                return
            raise
        self._move(SUPPORTED, "probe")

    async def supports_transactions(self) -> bool:
        if self._state == UNKNOWN:
            async with self._lock:
                if self._state == UNKNOWN:
                    await self._probe()
        return self._state == SUPPORTED

    async def run(self, unit: UnitOfWork[T]) -> T:
        if await self.supports_transactions():
            try:
                return await self._run_transactional(unit)
            except Exception as e:
                if not is_transaction_unsupported(e):
                    raise
                self._move(UNSUPPORTED, f"runtime: {e}")
        return await self._run_autocommit(unit)

    async def read(self, unit: UnitOfWork[T]) -> T:
        """Runs a unit that only reads. No transaction is opened, so no writer lock is taken."""
        async with self.autocommit_session_factory() as db:
            return await unit(db)

    async def _run_transactional(self, unit: UnitOfWork[T]) -> T:
        async with self.session_factory() as db:
            try:
                async with db.begin():
                    return await unit(db)
            except StaleDataError as e:
                raise ConcurrentUpdateError(
                    "The record was changed by another request. Please retry.", code="CONFLICT"
                ) from e

    async def _run_autocommit(self, unit: UnitOfWork[T]) -> T:
        async with self.autocommit_session_factory() as db:
            try:
                result = await unit(db)
                await db.commit()
                return result
            except StaleDataError as e:
                logger.warning("Optimistic lock conflict outside a transaction; earlier writes kept")
                raise ConcurrentUpdateError(
                    "The record was changed by another request. Please retry.", code="CONFLICT"
                ) from e
            except Exception:
                logger.warning("Unit of work failed without a transaction; earlier writes kept", exc_info=True)
                raise
