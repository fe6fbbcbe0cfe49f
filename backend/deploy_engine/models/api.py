from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from .project import EnvVar, Project, ProjectStatus


class ProjectCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    domain: str = Field(default="", max_length=255)
    git_url: str = Field(..., min_length=1, max_length=512)
    git_branch: str = Field(default="", max_length=128)
    deploy_key: str = ""
    framework: str = Field(default="", max_length=64)
    install_command: str = Field(default="", max_length=512)
    build_command: str = Field(default="", max_length=512)
    start_command: str = Field(default="", max_length=512)
    port: int = Field(default=0, ge=0, le=65535)
    auto_deploy: bool = False
    env_vars: list[EnvVar] = Field(default_factory=list)


class ProjectUpdateRequest(BaseModel):
    """Partial update; only fields present in the request body are applied."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    domain: str | None = Field(default=None, max_length=255)
    git_url: str | None = Field(default=None, min_length=1, max_length=512)
    git_branch: str | None = Field(default=None, max_length=128)
    deploy_key: str | None = None
    framework: str | None = Field(default=None, max_length=64)
    install_command: str | None = Field(default=None, max_length=512)
    build_command: str | None = Field(default=None, max_length=512)
    start_command: str | None = Field(default=None, max_length=512)
    port: int | None = Field(default=None, ge=0, le=65535)
    auto_deploy: bool | None = None
    env_vars: list[EnvVar] | None = None


class ProjectResponse(BaseModel):
    """Public view of a project; secrets and env values are never included."""

    id: int
    name: str
    domain: str
    git_url: str
    git_branch: str
    framework: str
    install_command: str
    build_command: str
    start_command: str
    port: int
    status: ProjectStatus
    current_build: int
    auto_deploy: bool
    webhook_token: str
    host_id: int
    error_msg: str
    has_deploy_key: bool
    env_var_keys: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_project(cls, project: Project) -> ProjectResponse:
        return cls(
            id=project.id,
            name=project.name,
            domain=project.domain,
            git_url=project.git_url,
            git_branch=project.git_branch,
            framework=project.framework,
            install_command=project.install_command,
            build_command=project.build_command,
            start_command=project.start_command,
            port=project.port,
            status=project.status,
            current_build=project.current_build,
            auto_deploy=project.auto_deploy,
            webhook_token=project.webhook_token,
            host_id=project.host_id,
            error_msg=project.error_msg,
            has_deploy_key=bool(project.deploy_key),
            env_var_keys=[env.key for env in project.env_vars],
            created_at=project.created_at,
            updated_at=project.updated_at,
        )


class ProjectListResponse(BaseModel):
    projects: list[ProjectResponse] = Field(default_factory=list)


class BuildStartedResponse(BaseModel):
    project_id: int
    build_num: int
    message: str = "build started"


class RollbackRequest(BaseModel):
    build_num: int = Field(..., ge=1)


class ProjectLogResponse(BaseModel):
    project_id: int
    type: Literal["build", "runtime"]
    log: str
    build_num: int | None = None


class OkResponse(BaseModel):
    ok: bool = True
    message: str | None = None
