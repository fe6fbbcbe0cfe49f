from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from deploy_engine.database import Base
from deploy_engine.models import project_db  # noqa: F401
from deploy_engine.models.project import Project
from deploy_engine.repositories.project_repository import ProjectRepository
from deploy_engine.services.build_registry import BuildRegistry
from deploy_engine.services.build_service import BuildResult, BuildService
from deploy_engine.services.deploy_service import DeployService
from deploy_engine.services.exceptions import ProxyClientError, ServiceManagerError
from deploy_engine.services.git_service import GitService
from deploy_engine.services.log_sink import LogSink
from deploy_engine.services.port_allocator import PortAllocator
from deploy_engine.services.process_service import ProcessService
from deploy_engine.services.task_service import TaskService


class FakeServiceManager:
    """Records service manager calls; ``active`` drives ``is_active``."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str | None]] = []
        self.active = True
        self.fail_on: set[str] = set()

    async def _record(self, action: str, name: str | None = None) -> None:
        self.calls.append((action, name))
        if action in self.fail_on:
            raise ServiceManagerError(f"{action} {name or ''} failed".strip())

    async def daemon_reload(self) -> None:
        await self._record("daemon-reload")

    async def enable(self, name: str) -> None:
        await self._record("enable", name)

    async def disable(self, name: str) -> None:
        await self._record("disable", name)

    async def start(self, name: str) -> None:
        await self._record("start", name)

    async def stop(self, name: str) -> None:
        await self._record("stop", name)

    async def restart(self, name: str) -> None:
        await self._record("restart", name)

    async def is_active(self, name: str) -> bool:
        return self.active

    def actions(self) -> list[str]:
        return [action for action, _ in self.calls]


class FakeProxyClient:
    def __init__(self, host_id: int = 7) -> None:
        self.host_id = host_id
        self.created = []
        self.deleted: list[int] = []
        self.reloads = 0
        self.fail = False

    async def create_host(self, request) -> int:
        if self.fail:
            raise ProxyClientError("POST /hosts failed: connection refused")
        self.created.append(request)
        return self.host_id

    async def delete_host(self, host_id: int) -> None:
        self.deleted.append(host_id)

    async def reload_caddy(self) -> None:
        self.reloads += 1


class ScriptedBuildService(BuildService):
    """BuildService whose pipeline returns queued results instead of running commands.

    Set ``gate`` to hold the pipeline open until the test releases it.
    """

    def __init__(self, git_service: GitService, logs_dir) -> None:
        super().__init__(git_service, logs_dir)
        self.results: list[BuildResult | Exception] = []
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()
        self.calls: list[Project] = []

    async def run_pipeline(self, project: Project, sink: LogSink) -> BuildResult:
        self.calls.append(project)
        sink.write_line(f"building {project.name}")
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.results.pop(0) if self.results else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or BuildResult(success=True, commit="abc1234", duration=1.0)


@pytest.fixture
async def db_session():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)
    async with SessionLocal() as session:
        yield session

    await engine.dispose()


@pytest.fixture
def session_factory(db_session):
    # Background builds open their own session; in tests they share the fixture's.
    mock_factory = MagicMock()
    mock_factory.return_value.__aenter__.return_value = db_session
    mock_factory.return_value.__aexit__.return_value = None
    return mock_factory


@pytest.fixture
def manager() -> FakeServiceManager:
    return FakeServiceManager()


@pytest.fixture
def proxy() -> FakeProxyClient:
    return FakeProxyClient()


@pytest.fixture
def build_service(tmp_path) -> ScriptedBuildService:
    return ScriptedBuildService(GitService(tmp_path / "sources"), tmp_path / "logs")


@pytest.fixture
def process_service(tmp_path, manager) -> ProcessService:
    return ProcessService(tmp_path / "units", tmp_path / "logs", manager)


@pytest.fixture
def deploy_service(db_session, session_factory, build_service, process_service, proxy):
    return DeployService(
        repository=ProjectRepository(db_session),
        session_factory=session_factory,
        registry=BuildRegistry(),
        task_service=TaskService(),
        git_service=build_service.git_service,
        build_service=build_service,
        process_service=process_service,
        port_allocator=PortAllocator(10000),
        proxy_client=proxy,
        build_timeout=5.0,
        start_grace=0.0,
    )
