from __future__ import annotations

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import HTTPConnection

from deploy_engine.config import settings
from deploy_engine.database import AsyncSessionLocal, get_db
from deploy_engine.repositories.project_repository import ProjectRepository
from deploy_engine.services.build_registry import BuildRegistry
from deploy_engine.services.build_service import BuildService
from deploy_engine.services.deploy_service import DeployService
from deploy_engine.services.git_service import GitService
from deploy_engine.services.port_allocator import PortAllocator
from deploy_engine.services.process_service import ProcessService, SystemdManager
from deploy_engine.services.proxy_client import HttpProxyHostClient, ProxyHostClient
from deploy_engine.services.task_service import TaskService

AsyncDBSession = Annotated[AsyncSession, Depends(get_db)]


def get_task_service(connection: HTTPConnection) -> TaskService:
    return connection.app.state.task_service


def get_build_registry(connection: HTTPConnection) -> BuildRegistry:
    return connection.app.state.build_registry


def get_git_service() -> GitService:
    return GitService(settings.sources_dir)


def get_build_service(
    git_service: Annotated[GitService, Depends(get_git_service)],
) -> BuildService:
    return BuildService(git_service, settings.logs_dir, shell=settings.shell)


def get_process_service() -> ProcessService:
    return ProcessService(
        unit_dir=settings.unit_dir,
        logs_dir=settings.logs_dir,
        manager=SystemdManager(),
        unit_prefix=settings.unit_prefix,
    )


def get_port_allocator() -> PortAllocator:
    return PortAllocator(settings.base_port)


def get_proxy_client() -> ProxyHostClient | None:
    if not settings.proxy_api_url:
        return None
    return HttpProxyHostClient(settings.proxy_api_url, settings.proxy_api_token)


def get_project_repository(db: AsyncDBSession) -> ProjectRepository:
    return ProjectRepository(db)


def get_deploy_service(
    repository: Annotated[ProjectRepository, Depends(get_project_repository)],
    registry: Annotated[BuildRegistry, Depends(get_build_registry)],
    task_service: Annotated[TaskService, Depends(get_task_service)],
    git_service: Annotated[GitService, Depends(get_git_service)],
    build_service: Annotated[BuildService, Depends(get_build_service)],
    process_service: Annotated[ProcessService, Depends(get_process_service)],
    port_allocator: Annotated[PortAllocator, Depends(get_port_allocator)],
    proxy_client: Annotated[ProxyHostClient | None, Depends(get_proxy_client)],
) -> DeployService:
    return DeployService(
        repository=repository,
        session_factory=AsyncSessionLocal,
        registry=registry,
        task_service=task_service,
        git_service=git_service,
        build_service=build_service,
        process_service=process_service,
        port_allocator=port_allocator,
        proxy_client=proxy_client,
        build_timeout=settings.build_timeout_seconds,
        start_grace=settings.start_grace_seconds,
    )


DeployServiceDep = Annotated[DeployService, Depends(get_deploy_service)]
