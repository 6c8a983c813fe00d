"""pytest fixtures shared across all tests."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from scantrack.ci.base import (
    PipelineExecutor,
    PipelineNotFoundError,
    PipelineStatus,
    RegistryArtifact,
)
from scantrack.core.config import Settings
from scantrack.models import Base, ScanMode, ScanRecord, ScanState, Service

# SQLite in-memory, no PostgreSQL required.
# Each test function gets its own fresh DB to avoid cross-test pollution.
TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


class FakeExecutor(PipelineExecutor):
    """In-memory CI system.

    ``statuses`` maps pipeline id -> raw status; ids absent from it are 404.
    ``failures`` maps pipeline id -> exception raised by ``get_status``.
    """

    def __init__(self) -> None:
        self.statuses: dict[str, str] = {}
        self.failures: dict[str, Exception] = {}
        self.delays: dict[str, float] = {}
        self.tags: dict[str, list[str]] = {}
        self.registry_error: Exception | None = None
        self.trigger_error: Exception | None = None
        self.cancel_error: Exception | None = None
        self.status_calls: list[str] = []
        self.cancelled: list[str] = []
        self.triggered: list[tuple[str, dict[str, str]]] = []
        self.played: list[tuple[str, str]] = []
        self.deleted: list[tuple[str, str]] = []
        self._next_id = 1000

    async def get_status(self, pipeline_id: str) -> PipelineStatus:
        self.status_calls.append(pipeline_id)
        if pipeline_id in self.delays:
            await asyncio.sleep(self.delays[pipeline_id])
        if pipeline_id in self.failures:
            raise self.failures[pipeline_id]
        if pipeline_id not in self.statuses:
            raise PipelineNotFoundError(f"pipeline {pipeline_id} not found")
        return PipelineStatus(id=pipeline_id, status=self.statuses[pipeline_id])

    async def cancel(self, pipeline_id: str) -> None:
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append(pipeline_id)
        self.statuses[pipeline_id] = "canceled"

    async def trigger(self, ref: str, variables: dict[str, str]) -> PipelineStatus:
        if self.trigger_error is not None:
            raise self.trigger_error
        self._next_id += 1
        pipeline_id = str(self._next_id)
        self.statuses[pipeline_id] = "created"
        self.triggered.append((ref, variables))
        return PipelineStatus(
            id=pipeline_id,
            status="created",
            web_url=f"https://gitlab.test/pipelines/{pipeline_id}",
        )

    async def play_manual_job(self, pipeline_id: str, job_name: str) -> None:
        if pipeline_id not in self.statuses:
            raise PipelineNotFoundError(pipeline_id)
        self.played.append((pipeline_id, job_name))

    async def list_registry_tags(self, artifact: RegistryArtifact) -> list[str]:
        if self.registry_error is not None:
            raise self.registry_error
        if artifact.image_name not in self.tags:
            raise PipelineNotFoundError(artifact.image_name)
        return list(self.tags[artifact.image_name])

    async def delete_tag(self, artifact: RegistryArtifact, tag: str) -> None:
        self.tags[artifact.image_name].remove(tag)
        self.deleted.append((artifact.image_name, tag))


@pytest_asyncio.fixture
async def engine():
    """Create a fresh in-memory SQLite engine per test function."""
    eng = create_async_engine(
        TEST_DB_URL,
        echo=False,
        connect_args={"check_same_thread": False},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=True)


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Yield an async session bound to the test engine."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def settings():
    return Settings(
        database_url=TEST_DB_URL,
        app_debug=True,
        reconcile_enabled=False,
        webhook_secret="",
    )


@pytest_asyncio.fixture
async def service(session_factory):
    async with session_factory() as session:
        svc = Service(
            name="payments-api",
            repo_url="https://gitlab.test/acme/payments-api.git",
            ref="main",
            image_name="payments-api",
        )
        session.add(svc)
        await session.commit()
        return svc


@pytest.fixture
def make_scan(session_factory, service):
    """Factory that persists a ScanRecord for ``service`` and returns it."""

    async def _make(**kwargs) -> ScanRecord:
        kwargs.setdefault("service_id", service.id)
        kwargs.setdefault("scan_mode", ScanMode.SCAN_ONLY)
        kwargs.setdefault("state", ScanState.RUNNING)
        async with session_factory() as session:
            record = ScanRecord(**kwargs)
            session.add(record)
            await session.commit()
            return record

    return _make


@pytest.fixture
def app(session_factory, executor, settings):
    """FastAPI app wired to the test DB and a fake CI; tests may add overrides."""
    from scantrack.api.app import create_app
    from scantrack.api.dependencies import (
        get_app_settings,
        get_db,
        get_executor,
        get_sessionmaker,
    )

    app = create_app()

    async def override_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_sessionmaker] = lambda: session_factory
    app.dependency_overrides[get_executor] = lambda: executor
    app.dependency_overrides[get_app_settings] = lambda: settings
    return app


@pytest_asyncio.fixture
async def client(app):
    """HTTPX async test client for the test app."""
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

