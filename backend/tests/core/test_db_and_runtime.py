"""Test process-wide database setup and the worker lifespan."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import text

from tonaudit.core.config import Settings
from tonaudit.db import base as db_base
from tonaudit.pipeline import runtime

pytestmark = pytest.mark.unit


def test_engine_options_pool_sizing_only_for_postgres():
    settings = Settings(db_pool_size=7, db_max_overflow=3)

    pg = db_base.engine_options("postgresql+asyncpg://u:p@db/tonaudit", settings)
    lite = db_base.engine_options("sqlite+aiosqlite:///audit.db", settings)

    assert pg["pool_size"] == 7 and pg["max_overflow"] == 3 and pg["pool_pre_ping"] is True
    assert lite == {"echo": settings.debug}


@pytest.mark.asyncio
async def test_init_and_close_db(tmp_path):
    await db_base.init_db(f"sqlite+aiosqlite:///{tmp_path / 'init.db'}")
    try:
        async with db_base.get_session_factory()() as session:
            count = await session.scalar(text("SELECT count(*) FROM audit_runs"))
        assert count == 0
    finally:
        await db_base.close_db()

    with pytest.raises(RuntimeError):
        db_base.get_session_factory()


@pytest.mark.asyncio
async def test_worker_lifespan_builds_services_and_closes(session_factory, redis_client, storage, audit_engine):
    with (
        patch.object(runtime, "configure_structlog") as configure,
        patch.object(runtime, "init_db", AsyncMock()) as init_db,
        patch.object(runtime, "init_redis", AsyncMock()),
        patch.object(runtime, "close_db", AsyncMock()) as close_db,
        patch.object(runtime, "close_redis", AsyncMock()) as close_redis,
        patch.object(runtime, "get_session_factory", MagicMock(return_value=session_factory)),
        patch.object(runtime, "get_redis", MagicMock(return_value=redis_client)),
        patch.object(runtime.S3BlobStorage, "from_settings", MagicMock(return_value=storage)),
    ):
        async with runtime.worker_lifespan(engine=audit_engine) as services:
            assert services.handlers.engine is audit_engine
            assert services.content_store is not None

        configure.assert_called_once()
        init_db.assert_awaited_once_with(create_tables=False)
        close_redis.assert_awaited_once()
        close_db.assert_awaited_once()
