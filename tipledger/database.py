from contextlib import asynccontextmanager

from sqlalchemy import event, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from tipledger.config import settings
from tipledger.core.exceptions import NotFoundError

_is_sqlite = settings.database_url.startswith("sqlite")

# Engine config: PostgreSQL needs connection pool settings, SQLite does not
_engine_kwargs: dict = {"echo": False}
if not _is_sqlite:
    _engine_kwargs.update({
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 30,
        "pool_recycle": 1800,  # Recycle connections every 30 min (prevent stale connections)
    })

engine = create_async_engine(settings.database_url, **_engine_kwargs)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# SQLite-only: Enable WAL mode and busy_timeout for concurrent access.
if _is_sqlite:
    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()


class Base(DeclarativeBase):
    pass


def dialect_name(db: AsyncSession) -> str:
    """Name of the dialect the session is bound to ("sqlite", "postgresql", ...)."""
    bind = db.bind if db.bind is not None else engine
    return bind.dialect.name


def supports_row_locks(db: AsyncSession) -> bool:
    """SELECT ... FOR UPDATE is meaningless on SQLite (the whole file is locked on write)."""
    return dialect_name(db) != "sqlite"


def exact_amount_arithmetic(db: AsyncSession) -> bool:
    """Whether SQL can add, compare and SUM ``AtomicAmount`` columns exactly.

    False on SQLite, where amounts are stored as text.  Callers then do the
    arithmetic in Python after their first write statement has taken the
    database write lock.
    """
    return dialect_name(db) != "sqlite"


async def sum_amounts(db: AsyncSession, column, *criteria) -> int:
    """Exact SUM of an ``AtomicAmount`` column over the rows matching ``criteria``."""
    if exact_amount_arithmetic(db):
        result = await db.execute(select(func.sum(column)).where(*criteria))
        return int(result.scalar() or 0)
    result = await db.execute(select(column).where(*criteria))
    return sum(value for value in result.scalars() if value is not None)


def insert_ignore(db: AsyncSession, table):
    """INSERT ... ON CONFLICT DO NOTHING for the session's dialect."""
    if dialect_name(db) == "sqlite":
        return sqlite_insert(table).on_conflict_do_nothing()
    return pg_insert(table).on_conflict_do_nothing()


@asynccontextmanager
async def unit_of_work(db: AsyncSession):
    """Commit everything done inside the block, or roll all of it back."""
    try:
        yield db
        await db.commit()
    except BaseException:
        await db.rollback()
        raise


async def get_db() -> AsyncSession:
    """FastAPI dependency that yields a database session."""
    async with async_session() as session:
        yield session


async def init_db():
    """Create all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db():
    """Drop all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def dispose_engine():
    """Dispose of the engine connection pool. Call on shutdown."""
    await engine.dispose()


async def load_row(db: AsyncSession, model, entity_id, *, lock: bool = False):
    """Fresh read of one row by id, row-locked on PostgreSQL when ``lock``.

    ``populate_existing`` overwrites any stale copy in the identity map, since
    the services change state with bulk ``UPDATE`` statements.
    """
    stmt = select(model).where(model.id == entity_id).execution_options(populate_existing=True)
    if lock and supports_row_locks(db):
        stmt = stmt.with_for_update()
    row = (await db.execute(stmt)).scalar_one_or_none()
    if row is None:
        raise NotFoundError(model.__name__, entity_id)
    return row
