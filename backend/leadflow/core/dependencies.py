from collections.abc import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from leadflow.core.config import get_settings

settings = get_settings()

engine = None
if settings.database_url:
    engine_kwargs: dict[str, object] = {"pool_pre_ping": True}

    if settings.is_sqlite:
        # Tests run several sessions concurrently in one event loop (e.g. racing lead
        # acceptances), so give writers a generous busy timeout instead of failing fast.
        engine_kwargs["connect_args"] = {"timeout": 30}

    engine = create_async_engine(settings.database_url, **engine_kwargs)

    if settings.is_sqlite:
        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
            # Take transaction control away from the driver so BEGIN can be emitted below.
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn) -> None:  # type: ignore[no-untyped-def]
            # Acquire the write lock up front: check-then-update sequences (lead acceptance,
            # reassignment) must not interleave with another writer.
            conn.exec_driver_sql("BEGIN IMMEDIATE")

AsyncSessionLocal = (
    async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False) if engine else None
)


async def get_db() -> AsyncIterator[AsyncSession]:
    if AsyncSessionLocal is None:
        raise RuntimeError("DATABASE_URL is not configured")
    async with AsyncSessionLocal() as db:
        yield db
