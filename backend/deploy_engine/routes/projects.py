from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, HTTPException, Query, status

from deploy_engine.config import settings
from deploy_engine.dependencies import DeployServiceDep
from deploy_engine.models.api import (
    BuildStartedResponse,
    OkResponse,
    ProjectCreateRequest,
    ProjectListResponse,
    ProjectLogResponse,
    ProjectResponse,
    ProjectUpdateRequest,
    RollbackRequest,
)
from deploy_engine.models.project import Deployment
from deploy_engine.repositories.project_repository import ProjectNotFoundError
from deploy_engine.services.exceptions import (
    BuildInProgressError,
    ProjectConfigError,
    RollbackTargetError,
    ServiceManagerError,
)

router = APIRouter(prefix="/projects", tags=["projects"])


def _not_found(exc: ProjectNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _conflict(exc: BuildInProgressError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


def _service_failure(exc: ServiceManagerError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.get("", response_model=ProjectListResponse)
async def list_projects(
    service: DeployServiceDep,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> ProjectListResponse:
    projects = await service.list_projects(limit=limit, offset=offset)
    return ProjectListResponse(projects=[ProjectResponse.from_project(p) for p in projects])


@router.post("", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def create_project(
    payload: ProjectCreateRequest,
    service: DeployServiceDep,
) -> ProjectResponse:
    project = await service.create_project(payload)
    return ProjectResponse.from_project(project)


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(project_id: int, service: DeployServiceDep) -> ProjectResponse:
    try:
        project = await service.get_project(project_id)
    except ProjectNotFoundError as exc:
        raise _not_found(exc) from exc
    return ProjectResponse.from_project(project)


@router.put("/{project_id}", response_model=ProjectResponse)
async def update_project(
    project_id: int,
    payload: ProjectUpdateRequest,
    service: DeployServiceDep,
) -> ProjectResponse:
    changes = payload.model_dump(exclude_unset=True)
    if "env_vars" in changes:
        # Keep EnvVar models; the repository encodes them itself.
        changes["env_vars"] = payload.env_vars or []
    try:
        project = await service.update_project(project_id, changes)
    except ProjectNotFoundError as exc:
        raise _not_found(exc) from exc
    return ProjectResponse.from_project(project)


@router.delete("/{project_id}", response_model=OkResponse)
async def delete_project(project_id: int, service: DeployServiceDep) -> OkResponse:
    try:
        await service.delete_project(project_id)
    except ProjectNotFoundError as exc:
        raise _not_found(exc) from exc
    except BuildInProgressError as exc:
        raise _conflict(exc) from exc
    return OkResponse()


@router.post(
    "/{project_id}/build",
    response_model=BuildStartedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def build_project(project_id: int, service: DeployServiceDep) -> BuildStartedResponse:
    try:
        deployment = await service.build(project_id)
    except ProjectNotFoundError as exc:
        raise _not_found(exc) from exc
    except BuildInProgressError as exc:
        raise _conflict(exc) from exc
    return BuildStartedResponse(project_id=project_id, build_num=deployment.build_num)


@router.post("/{project_id}/start", response_model=ProjectResponse)
async def start_project(project_id: int, service: DeployServiceDep) -> ProjectResponse:
    try:
        project = await service.start_project(project_id)
    except ProjectNotFoundError as exc:
        raise _not_found(exc) from exc
    except ProjectConfigError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ServiceManagerError as exc:
        raise _service_failure(exc) from exc
    return ProjectResponse.from_project(project)


@router.post("/{project_id}/stop", response_model=ProjectResponse)
async def stop_project(project_id: int, service: DeployServiceDep) -> ProjectResponse:
    try:
        project = await service.stop_project(project_id)
    except ProjectNotFoundError as exc:
        raise _not_found(exc) from exc
    except ServiceManagerError as exc:
        raise _service_failure(exc) from exc
    return ProjectResponse.from_project(project)


@router.post("/{project_id}/rollback", response_model=ProjectResponse)
async def rollback_project(
    project_id: int,
    payload: RollbackRequest,
    service: DeployServiceDep,
) -> ProjectResponse:
    try:
        project = await service.rollback(project_id, payload.build_num)
    except ProjectNotFoundError as exc:
        raise _not_found(exc) from exc
    except BuildInProgressError as exc:
        raise _conflict(exc) from exc
    except RollbackTargetError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ServiceManagerError as exc:
        raise _service_failure(exc) from exc
    return ProjectResponse.from_project(project)


@router.get("/{project_id}/deployments", response_model=list[Deployment])
async def list_deployments(project_id: int, service: DeployServiceDep) -> list[Deployment]:
    try:
        return await service.list_deployments(project_id)
    except ProjectNotFoundError as exc:
        raise _not_found(exc) from exc


@router.get("/{project_id}/logs", response_model=ProjectLogResponse)
async def get_project_logs(
    project_id: int,
    service: DeployServiceDep,
    log_type: Literal["build", "runtime"] = Query(default="build", alias="type"),
    build: int = Query(default=0, ge=0),
    lines: int | None = Query(default=None, ge=1, le=10000),
) -> ProjectLogResponse:
    try:
        if log_type == "runtime":
            log = await service.get_runtime_log(project_id, lines or settings.runtime_log_lines)
            return ProjectLogResponse(project_id=project_id, type="runtime", log=log)

        build_num, log = await service.get_build_log(project_id, build)
    except ProjectNotFoundError as exc:
        raise _not_found(exc) from exc
    except FileNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="log not found") from exc

    return ProjectLogResponse(project_id=project_id, type="build", log=log, build_num=build_num)
