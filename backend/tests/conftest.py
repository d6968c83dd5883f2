"""Shared test fixtures for all test groups."""

import os

import pytest
from fakeredis import aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from tenacity import wait_none

import tonaudit.db.models  # noqa: F401
from tonaudit.core.config import Settings
from tonaudit.core.exceptions import StorageUnavailable
from tonaudit.db.base import Base
from tonaudit.pipeline.wiring import build_services
from tonaudit.schemas.files import UploadedFile


class InMemoryBlobStorage:
    """BlobStorage double. fail_puts / fail_gets make the next N calls raise StorageUnavailable."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.put_calls: list[str] = []
        self.fail_puts = 0
        self.fail_gets = 0

    async def exists(self, key: str) -> bool:
        return key in self.objects

    async def put_object(self, key: str, data: bytes, content_type: str, sha256: str | None = None) -> None:
        if self.fail_puts > 0:
            self.fail_puts -= 1
            raise StorageUnavailable(f"PUT {key} failed: injected")
        self.put_calls.append(key)
        self.objects[key] = data

    async def get_object(self, key: str) -> bytes:
        if self.fail_gets > 0:
            self.fail_gets -= 1
            raise StorageUnavailable(f"GET {key} failed: injected")
        if key not in self.objects:
            raise StorageUnavailable(f"GET {key} failed: missing")
        return self.objects[key]


class FakeAuditEngine:
    """AuditEngine double returning a fixed report."""

    def __init__(self, findings: list[dict] | None = None, error: Exception | None = None):
        self.findings = findings or []
        self.error = error
        self.calls = []

    async def run(self, context, verification):
        self.calls.append((context, verification))
        if self.error is not None:
            raise self.error
        return {"summary": "fake audit", "findings": list(self.findings)}


@pytest.fixture
def settings():
    return Settings(audit_model_allowlist="google/gemini-2.5-flash", json_logs=False)


@pytest.fixture
async def db_engine(tmp_path):
    """Async engine on TEST_DATABASE_URL, or a throwaway SQLite file."""
    url = os.environ.get("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'tonaudit.db'}"
    engine = create_async_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def redis_client():
    """Create a fake Redis client for testing."""
    client = aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def storage():
    return InMemoryBlobStorage()


@pytest.fixture
def audit_engine():
    return FakeAuditEngine(findings=[{"findingId": "F-1", "severity": "high", "title": "Unchecked bounce"}])


@pytest.fixture
def services(session_factory, redis_client, storage, audit_engine, settings):
    return build_services(
        session_factory,
        redis_client,
        storage,
        engine=audit_engine,
        settings=settings,
        retry_wait=wait_none(),
    )


@pytest.fixture
async def project(services):
    return await services.projects.create_project("user-1", "Jetton Vault", "jetton-vault")


@pytest.fixture
def make_revision(services):
    """Commit an upload revision from a {path: content} mapping."""

    async def _make(project_id, files: dict[str, str], parent_revision_id=None, **kwargs):
        return await services.revisions.commit_upload(
            project_id,
            [UploadedFile(path=path, content=content) for path, content in files.items()],
            created_by_user_id="user-1",
            parent_revision_id=parent_revision_id,
            **kwargs,
        )

    return _make


@pytest.fixture
def complete_run(services):
    """Request, start and complete an audit run reporting the given findings."""

    async def _complete(project_id, revision_id, findings: list[dict]):
        audit_run = await services.audit_runs.request_audit(project_id, revision_id, "user-1")
        await services.audit_runs.mark_running(audit_run.id)
        await services.audit_runs.complete(audit_run.id, {"findings": findings})
        return audit_run.id

    return _complete

