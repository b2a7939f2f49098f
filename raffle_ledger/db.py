from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from .config import DATABASE_URL


class Base(DeclarativeBase):
    pass


def _make_engine(url: str):
    if url.startswith("sqlite"):
        # sqlite connections are plain file handles; no pooling across event loops
        eng = create_async_engine(url, poolclass=NullPool)
        _serialize_sqlite_writers(eng)
        return eng
    return create_async_engine(url, pool_pre_ping=True)


def _serialize_sqlite_writers(eng) -> None:
    # pysqlite's own BEGIN is deferred, so two writers can read the same
    # tickets_sold before either takes the write lock. BEGIN IMMEDIATE takes it up front.
    @event.listens_for(eng.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng.sync_engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get("isolation_level") == "AUTOCOMMIT":
            return
        conn.exec_driver_sql("BEGIN IMMEDIATE")


engine = _make_engine(DATABASE_URL)

# Same pool, but every statement commits on its own. Used when the store
# cannot run multi-statement transactions.
autocommit_engine = engine.execution_options(isolation_level="AUTOCOMMIT")

SessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
AutocommitSessionLocal = async_sessionmaker(autocommit_engine, class_=AsyncSession, expire_on_commit=False)


async def create_all() -> None:
    from . import models  # noqa: F401  registers tables on Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_all() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
