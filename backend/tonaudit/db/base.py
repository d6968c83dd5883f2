"""Shared SQLAlchemy base and database initialization."""

from enum import Enum

from sqlalchemy import JSON, make_url
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from tonaudit.core.config import get_settings
from tonaudit.domain.enums import PG_ENUM_NAMES


class Base(DeclarativeBase):
    pass


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def enum_column(enum_cls: type[Enum]) -> SAEnum:
    """Column type storing the enum's lowercase values under its Postgres enum name."""
    return SAEnum(
        enum_cls,
        name=PG_ENUM_NAMES[enum_cls],
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


def insert_for(session: AsyncSession, model):
    """Dialect-specific INSERT supporting ON CONFLICT DO NOTHING."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise RuntimeError(f"Unsupported database dialect: {dialect}")


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def engine_options(url: str, settings) -> dict:
    """create_async_engine() keyword arguments for the URL's dialect.

    Pool sizing only applies to server databases; SQLite (tests, local runs)
    keeps SQLAlchemy's default pool.
    """
    options = {"echo": settings.debug}
    if make_url(url).get_backend_name() == "postgresql":
        options.update(
            pool_pre_ping=True,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
        )
    return options


async def init_db(url: str | None = None, create_tables: bool = True) -> None:
    """Create the process-wide engine and session factory. No-op when already initialized.

    Tables are created from Base.metadata unless create_tables is False;
    production schemas are owned by alembic.
    """
    global _engine, _session_factory

    if _engine is not None:
        return

    settings = get_settings()
    db_url = url or settings.database_url

    _engine = create_async_engine(db_url, **engine_options(db_url, settings))
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)

    if create_tables:
        # Models register themselves on Base.metadata at import
        import tonaudit.db.models  # noqa: F401

        async with _engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Raises RuntimeError if init_db() has not been called."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory
