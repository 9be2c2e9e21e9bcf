from collections.abc import AsyncGenerator

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from agent_settlement.config import settings

engine = create_async_engine(settings.database_url, echo=(settings.env == "development"))
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
async_session_factory = async_session  # alias used by background services


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        yield session


def insert_ignoring_conflicts(db: AsyncSession, model: type[Base]):  # type: ignore[no-untyped-def]
    """Return a dialect-specific INSERT supporting ON CONFLICT DO NOTHING.

    This is the only way new rows enter the unique-keyed tables (payments,
    votes, feedback, stake actions): the database decides the race, never a
    read-then-write in application code.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise RuntimeError(f"Unsupported database dialect for conflict-free insert: {dialect}")
