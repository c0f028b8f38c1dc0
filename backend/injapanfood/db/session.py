from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from injapanfood.core.config import settings


def enable_sqlite_immediate_transactions(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock up front.

    A deferred transaction that reads and then writes can hit SQLITE_BUSY without
    the busy handler being consulted; BEGIN IMMEDIATE queues writers instead.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, _connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str) -> AsyncEngine:
    is_sqlite = database_url.startswith("sqlite")
    connect_args = (
        {"check_same_thread": False, "timeout": settings.database_busy_timeout_seconds} if is_sqlite else {}
    )
    built = create_async_engine(database_url, future=True, echo=False, connect_args=connect_args)
    if is_sqlite:
        enable_sqlite_immediate_transactions(built)
    return built


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, expire_on_commit=False, autoflush=False, class_=AsyncSession)


engine = build_engine(settings.database_url)
SessionLocal = build_session_factory(engine)


async def get_session() -> AsyncSession:
    """FastAPI dependency to provide a database session."""
    async with SessionLocal() as session:
        yield session
