from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ProjectStatus(str, Enum):
    """Lifecycle states for a deployable project."""

    PENDING = "pending"
    BUILDING = "building"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class DeploymentStatus(str, Enum):
    """Outcome of one recorded build attempt."""

    BUILDING = "building"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class EnvVar(BaseModel):
    key: str = Field(..., min_length=1)
    value: str = ""


class Project(BaseModel):
    """Domain representation of a deployable project.

    ``deploy_key`` and ``env_vars`` are carried here for the build pipeline
    only; API responses are built from ``ProjectResponse`` which omits them.
    """

    id: int
    name: str
    domain: str = ""
    git_url: str = ""
    git_branch: str = "main"
    deploy_key: str = ""
    framework: str = ""
    install_command: str = ""
    build_command: str = ""
    start_command: str = ""
    port: int = 0
    status: ProjectStatus = ProjectStatus.PENDING
    current_build: int = 0
    auto_deploy: bool = False
    webhook_token: str = ""
    host_id: int = 0
    env_vars: list[EnvVar] = Field(default_factory=list)
    error_msg: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_static(self) -> bool:
        """Projects without a start command are served as built files, no process."""
        return not self.start_command.strip()


class Deployment(BaseModel):
    id: int
    project_id: int
    build_num: int
    git_commit: str = ""
    status: DeploymentStatus = DeploymentStatus.BUILDING
    log_file: str = ""
    duration: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
