from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from deploy_engine.models.project import (
    Deployment,
    DeploymentStatus,
    EnvVar,
    Project,
    ProjectStatus,
)
from deploy_engine.models.project_db import DeploymentDB, ProjectDB

UPDATABLE_PROJECT_FIELDS = frozenset(
    {
        "name",
        "domain",
        "git_url",
        "git_branch",
        "deploy_key",
        "framework",
        "install_command",
        "build_command",
        "start_command",
        "port",
        "status",
        "current_build",
        "auto_deploy",
        "host_id",
        "env_vars",
        "error_msg",
    }
)


class ProjectNotFoundError(Exception):
    """Raised when a project identifier cannot be resolved."""

    def __init__(self, project_id: int):
        super().__init__(f"Project '{project_id}' was not found")
        self.project_id = project_id


def encode_env_vars(env_vars: list[EnvVar]) -> str:
    if not env_vars:
        return ""
    return json.dumps([env.model_dump() for env in env_vars])


def decode_env_vars(raw: str | None) -> list[EnvVar]:
    if not raw:
        return []
    try:
        items = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(items, list):
        return []
    return [EnvVar.model_validate(item) for item in items if isinstance(item, dict)]


class ProjectRepository:
    """Repository for Project and Deployment database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _project_db_to_model(self, project_db: ProjectDB) -> Project:
        """Convert database model to domain model."""
        return Project(
            id=project_db.id,
            name=project_db.name,
            domain=project_db.domain or "",
            git_url=project_db.git_url or "",
            git_branch=project_db.git_branch or "main",
            deploy_key=project_db.deploy_key or "",
            framework=project_db.framework or "",
            install_command=project_db.install_command or "",
            build_command=project_db.build_command or "",
            start_command=project_db.start_command or "",
            port=project_db.port or 0,
            status=ProjectStatus(project_db.status),
            current_build=project_db.current_build or 0,
            auto_deploy=bool(project_db.auto_deploy),
            webhook_token=project_db.webhook_token,
            host_id=project_db.host_id or 0,
            env_vars=decode_env_vars(project_db.env_vars),
            error_msg=project_db.error_msg or "",
            created_at=project_db.created_at,
            updated_at=project_db.updated_at,
        )

    def _deployment_db_to_model(self, deployment_db: DeploymentDB) -> Deployment:
        return Deployment(
            id=deployment_db.id,
            project_id=deployment_db.project_id,
            build_num=deployment_db.build_num,
            git_commit=deployment_db.git_commit or "",
            status=DeploymentStatus(deployment_db.status),
            log_file=deployment_db.log_file or "",
            duration=deployment_db.duration or 0,
            created_at=deployment_db.created_at,
        )

    async def _load_project(self, project_id: int) -> ProjectDB:
        result = await self.session.execute(select(ProjectDB).where(ProjectDB.id == project_id))
        project_db = result.scalar_one_or_none()
        if not project_db:
            raise ProjectNotFoundError(project_id)
        return project_db

    async def create_project(
        self,
        *,
        name: str,
        git_url: str,
        webhook_token: str,
        git_branch: str = "main",
        domain: str = "",
        deploy_key: str = "",
        framework: str = "",
        install_command: str = "",
        build_command: str = "",
        start_command: str = "",
        port: int = 0,
        auto_deploy: bool = False,
        env_vars: list[EnvVar] | None = None,
    ) -> Project:
        project_db = ProjectDB(
            name=name,
            domain=domain,
            git_url=git_url,
            git_branch=git_branch,
            deploy_key=deploy_key,
            framework=framework,
            install_command=install_command,
            build_command=build_command,
            start_command=start_command,
            port=port,
            status=ProjectStatus.PENDING.value,
            current_build=0,
            auto_deploy=auto_deploy,
            webhook_token=webhook_token,
            host_id=0,
            env_vars=encode_env_vars(env_vars or []),
            error_msg="",
        )
        self.session.add(project_db)
        await self.session.commit()
        await self.session.refresh(project_db)
        return self._project_db_to_model(project_db)

    async def get_project(self, project_id: int) -> Project:
        project_db = await self._load_project(project_id)
        return self._project_db_to_model(project_db)

    async def list_projects(self, limit: int = 100, offset: int = 0) -> list[Project]:
        result = await self.session.execute(
            select(ProjectDB)
            .order_by(ProjectDB.created_at.desc(), ProjectDB.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return [self._project_db_to_model(p) for p in result.scalars().all()]

    async def find_auto_deploy_project(self, webhook_token: str) -> Project | None:
        result = await self.session.execute(
            select(ProjectDB).where(
                ProjectDB.webhook_token == webhook_token,
                ProjectDB.auto_deploy.is_(True),
            )
        )
        project_db = result.scalar_one_or_none()
        if project_db is None:
            return None
        return self._project_db_to_model(project_db)

    async def update_project(self, project_id: int, **changes: Any) -> Project:
        unknown = set(changes) - UPDATABLE_PROJECT_FIELDS
        if unknown:
            raise ValueError(f"Unsupported project fields: {', '.join(sorted(unknown))}")

        project_db = await self._load_project(project_id)
        for field, value in changes.items():
            if field == "env_vars":
                value = encode_env_vars(value or [])
            elif isinstance(value, ProjectStatus):
                value = value.value
            setattr(project_db, field, value)
        project_db.updated_at = datetime.now(UTC)
        await self.session.commit()
        await self.session.refresh(project_db)
        return self._project_db_to_model(project_db)

    async def update_project_status(
        self,
        project_id: int,
        status: ProjectStatus,
        error_msg: str | None = None,
    ) -> Project:
        changes: dict[str, Any] = {"status": status}
        if error_msg is not None:
            changes["error_msg"] = error_msg
        return await self.update_project(project_id, **changes)

    async def delete_project(self, project_id: int) -> None:
        await self._load_project(project_id)
        await self.session.execute(
            delete(DeploymentDB).where(DeploymentDB.project_id == project_id)
        )
        await self.session.execute(delete(ProjectDB).where(ProjectDB.id == project_id))
        await self.session.commit()

    async def max_build_num(self, project_id: int) -> int:
        result = await self.session.execute(
            select(func.max(DeploymentDB.build_num)).where(DeploymentDB.project_id == project_id)
        )
        current = result.scalar()
        return current or 0

    async def create_deployment(
        self,
        project_id: int,
        build_num: int,
        log_file: str = "",
    ) -> Deployment:
        deployment_db = DeploymentDB(
            project_id=project_id,
            build_num=build_num,
            git_commit="",
            status=DeploymentStatus.BUILDING.value,
            log_file=log_file,
            duration=0,
        )
        self.session.add(deployment_db)
        await self.session.commit()
        await self.session.refresh(deployment_db)
        return self._deployment_db_to_model(deployment_db)

    async def get_deployment(
        self,
        project_id: int,
        build_num: int,
        status: DeploymentStatus | None = None,
    ) -> Deployment | None:
        query = select(DeploymentDB).where(
            DeploymentDB.project_id == project_id,
            DeploymentDB.build_num == build_num,
        )
        if status is not None:
            query = query.where(DeploymentDB.status == status.value)
        result = await self.session.execute(query.order_by(DeploymentDB.id.desc()).limit(1))
        deployment_db = result.scalar_one_or_none()
        if deployment_db is None:
            return None
        return self._deployment_db_to_model(deployment_db)

    async def finish_deployment(
        self,
        deployment_id: int,
        status: DeploymentStatus,
        *,
        git_commit: str,
        duration: int,
    ) -> Deployment | None:
        result = await self.session.execute(
            select(DeploymentDB).where(DeploymentDB.id == deployment_id)
        )
        deployment_db = result.scalar_one_or_none()
        if deployment_db is None:
            return None
        deployment_db.status = status.value
        deployment_db.git_commit = git_commit
        deployment_db.duration = duration
        await self.session.commit()
        await self.session.refresh(deployment_db)
        return self._deployment_db_to_model(deployment_db)

    async def mark_rolled_back(self, project_id: int, after_build_num: int) -> int:
        """Mark every deployment newer than *after_build_num* as rolled back."""
        result = await self.session.execute(
            update(DeploymentDB)
            .where(
                DeploymentDB.project_id == project_id,
                DeploymentDB.build_num > after_build_num,
            )
            .values(status=DeploymentStatus.ROLLED_BACK.value)
        )
        await self.session.commit()
        return result.rowcount or 0

    async def list_deployments(self, project_id: int) -> list[Deployment]:
        result = await self.session.execute(
            select(DeploymentDB)
            .where(DeploymentDB.project_id == project_id)
            .order_by(DeploymentDB.build_num.desc(), DeploymentDB.id.desc())
        )
        return [self._deployment_db_to_model(d) for d in result.scalars().all()]
