from __future__ import annotations

import asyncio
import secrets
import shutil
import time
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deploy_engine.logging_config import get_logger
from deploy_engine.models.api import ProjectCreateRequest
from deploy_engine.models.project import (
    Deployment,
    DeploymentStatus,
    Project,
    ProjectStatus,
)
from deploy_engine.repositories.project_repository import (
    ProjectNotFoundError,
    ProjectRepository,
)
from deploy_engine.services.build_registry import BuildRegistry
from deploy_engine.services.build_service import BuildResult, BuildService, write_env_file
from deploy_engine.services.exceptions import (
    BuildInProgressError,
    ProjectConfigError,
    ProxyClientError,
    RollbackTargetError,
    ServiceManagerError,
    WebhookNotFoundError,
)
from deploy_engine.services.git_service import DEFAULT_BRANCH, GitService
from deploy_engine.services.log_sink import LogSink
from deploy_engine.services.port_allocator import PortAllocator
from deploy_engine.services.process_service import ProcessService
from deploy_engine.services.proxy_client import CreateHostRequest, ProxyHostClient
from deploy_engine.services.task_service import TaskService

logger = get_logger(__name__)

DEFAULT_BUILD_TIMEOUT = 30 * 60.0
DEFAULT_START_GRACE = 2.0

USER_UPDATABLE_FIELDS = frozenset(
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
        "auto_deploy",
        "env_vars",
    }
)


class DeployService:
    """Coordinator for project deployments.

    Owns the Project/Deployment rows and drives both state machines: a build
    is accepted only while the project's build lock is free, runs on a
    background task with its own database session, and always releases the
    lock when that task ends.
    """

    def __init__(
        self,
        repository: ProjectRepository,
        session_factory: async_sessionmaker[AsyncSession],
        registry: BuildRegistry,
        task_service: TaskService,
        git_service: GitService,
        build_service: BuildService,
        process_service: ProcessService,
        port_allocator: PortAllocator,
        proxy_client: ProxyHostClient | None = None,
        *,
        build_timeout: float = DEFAULT_BUILD_TIMEOUT,
        start_grace: float = DEFAULT_START_GRACE,
    ):
        self.repository = repository
        self.session_factory = session_factory
        self.registry = registry
        self.task_service = task_service
        self.git_service = git_service
        self.build_service = build_service
        self.process_service = process_service
        self.port_allocator = port_allocator
        self.proxy_client = proxy_client
        self.build_timeout = build_timeout
        self.start_grace = start_grace

    # Queries

    async def _reconcile(self, project: Project) -> Project:
        # Read-time only: the stored status is left untouched.
        if project.status != ProjectStatus.RUNNING or project.is_static:
            return project
        if await self.process_service.is_running(project.id):
            return project
        return project.model_copy(update={"status": ProjectStatus.STOPPED})

    async def get_project(self, project_id: int) -> Project:
        project = await self.repository.get_project(project_id)
        return await self._reconcile(project)

    async def list_projects(self, limit: int = 100, offset: int = 0) -> list[Project]:
        projects = await self.repository.list_projects(limit, offset)
        return [await self._reconcile(project) for project in projects]

    async def list_deployments(self, project_id: int) -> list[Deployment]:
        await self.repository.get_project(project_id)
        return await self.repository.list_deployments(project_id)

    async def get_build_log(self, project_id: int, build_num: int = 0) -> tuple[int, str]:
        """Return ``(build_num, log)``; ``build_num`` 0 selects the current build."""
        project = await self.repository.get_project(project_id)
        if build_num <= 0:
            build_num = project.current_build
        log = await self.build_service.read_log(project_id, build_num)
        return build_num, log

    async def get_runtime_log(self, project_id: int, lines: int = 200) -> str:
        await self.repository.get_project(project_id)
        return await self.process_service.read_runtime_log(project_id, lines)

    def active_log_sink(self, project_id: int) -> LogSink | None:
        return self.registry.active_sink(project_id)

    # Project lifecycle

    async def create_project(self, request: ProjectCreateRequest) -> Project:
        project = await self.repository.create_project(
            name=request.name,
            domain=request.domain,
            git_url=request.git_url,
            git_branch=request.git_branch or DEFAULT_BRANCH,
            deploy_key=request.deploy_key,
            framework=request.framework,
            install_command=request.install_command,
            build_command=request.build_command,
            start_command=request.start_command,
            port=request.port,
            auto_deploy=request.auto_deploy,
            env_vars=request.env_vars,
            webhook_token=secrets.token_hex(16),
        )
        # The port depends on the id, so it can only be assigned after the insert.
        if project.port == 0 and not project.is_static:
            project = await self.repository.update_project(
                project.id, port=self.port_allocator.allocate_port(project.id)
            )
        logger.info("project_created", project_id=project.id, name=project.name, port=project.port)
        return project

    async def update_project(self, project_id: int, changes: dict[str, Any]) -> Project:
        filtered = {key: value for key, value in changes.items() if key in USER_UPDATABLE_FIELDS}
        if "git_branch" in filtered and not filtered["git_branch"]:
            filtered["git_branch"] = DEFAULT_BRANCH
        project = await self.repository.update_project(project_id, **filtered)
        if project.port == 0 and not project.is_static:
            project = await self.repository.update_project(
                project_id, port=self.port_allocator.allocate_port(project_id)
            )
        return project

    async def delete_project(self, project_id: int) -> None:
        with self.registry.hold(project_id):
            project = await self.repository.get_project(project_id)

            await self.process_service.uninstall(project_id)

            if project.host_id > 0 and self.proxy_client is not None:
                try:
                    await self.proxy_client.delete_host(project.host_id)
                    await self.proxy_client.reload_caddy()
                except ProxyClientError as exc:
                    logger.warning(
                        "reverse_proxy_delete_failed",
                        project_id=project_id,
                        host_id=project.host_id,
                        error=str(exc),
                    )

            for directory in (
                self.git_service.project_dir(project_id),
                self.build_service.log_dir(project_id),
            ):
                await asyncio.to_thread(shutil.rmtree, directory, ignore_errors=True)

            await self.repository.delete_project(project_id)
        logger.info("project_deleted", project_id=project_id, name=project.name)

    async def start_project(self, project_id: int) -> Project:
        project = await self.repository.get_project(project_id)
        if project.is_static:
            raise ProjectConfigError("project has no start command")
        await self.process_service.start(project_id)
        return await self.repository.update_project_status(
            project_id, ProjectStatus.RUNNING, error_msg=""
        )

    async def stop_project(self, project_id: int) -> Project:
        await self.repository.get_project(project_id)
        await self.process_service.stop(project_id)
        return await self.repository.update_project_status(project_id, ProjectStatus.STOPPED)

    async def rollback(self, project_id: int, build_num: int) -> Project:
        """Point the project back at a successful build and restart its unit.

        The working tree is not checked out again: the unit restarts whatever
        the most recent build left on disk.
        """
        with self.registry.hold(project_id):
            project = await self.repository.get_project(project_id)
            target = await self.repository.get_deployment(
                project_id, build_num, status=DeploymentStatus.SUCCESS
            )
            if target is None:
                raise RollbackTargetError(project_id, build_num)

            rolled_back = await self.repository.mark_rolled_back(project_id, build_num)
            project = await self.repository.update_project(project_id, current_build=build_num)
            if not project.is_static:
                try:
                    await self.process_service.restart(project_id)
                except ServiceManagerError as exc:
                    message = f"service restart failed: {exc}"
                    await self.repository.update_project_status(
                        project_id, ProjectStatus.ERROR, error_msg=message
                    )
                    logger.error("rollback_restart_failed", project_id=project_id, error=message)
                    raise
                project = await self.repository.update_project_status(
                    project_id, ProjectStatus.RUNNING, error_msg=""
                )
        logger.info(
            "project_rolled_back",
            project_id=project_id,
            build_num=build_num,
            rolled_back=rolled_back,
        )
        return project

    async def handle_webhook(self, token: str) -> Deployment:
        project = await self.repository.find_auto_deploy_project(token)
        if project is None:
            raise WebhookNotFoundError()
        logger.info("webhook_build_triggered", project_id=project.id)
        try:
            return await self.build(project.id)
        except ProjectNotFoundError as exc:
            # Deleted after the token lookup; answer as for an unknown token.
            raise WebhookNotFoundError() from exc

    # Builds

    async def build(self, project_id: int) -> Deployment:
        """Record a new deployment and start its pipeline in the background."""
        if not self.registry.try_acquire(project_id):
            raise BuildInProgressError(project_id)

        try:
            project = await self.repository.get_project(project_id)
            recorded = await self.repository.max_build_num(project_id)
            build_num = max(project.current_build, recorded) + 1
            log_path = self.build_service.log_path(project_id, build_num)
            # No row is written until the log file is open.
            sink = await asyncio.to_thread(LogSink, log_path)
        except BaseException:
            self.registry.release(project_id)
            raise

        try:
            deployment = await self.repository.create_deployment(
                project_id, build_num, log_file=str(log_path)
            )
            project = await self.repository.update_project(
                project_id,
                status=ProjectStatus.BUILDING,
                current_build=build_num,
                error_msg="",
            )
        except BaseException:
            sink.close()
            self.registry.release(project_id)
            raise

        self.registry.attach_sink(project_id, sink)
        task: asyncio.Task[None] = asyncio.create_task(
            self._run_build(project, deployment, sink),
            name=f"project-build:{project_id}",
        )
        await self.task_service.track_task(task)
        logger.info("build_started", project_id=project_id, build_num=build_num)
        return deployment

    async def _run_build(self, project: Project, deployment: Deployment, sink: LogSink) -> None:
        started = time.monotonic()
        try:
            async with self.session_factory() as session:
                repo = ProjectRepository(session)
                try:
                    async with asyncio.timeout(self.build_timeout):
                        await self._execute_build(repo, project, deployment, sink)
                except TimeoutError:
                    message = f"build timed out after {int(self.build_timeout)} seconds"
                    await session.rollback()
                    await self._record_abort(repo, project, deployment, sink, message, started)
                except Exception as exc:
                    logger.exception("build_crashed", project_id=project.id)
                    await session.rollback()
                    await self._record_abort(
                        repo, project, deployment, sink, f"build crashed: {exc}", started
                    )
        finally:
            sink.close()
            self.registry.detach_sink(project.id, sink)
            self.registry.release(project.id)

    async def _record_abort(
        self,
        repo: ProjectRepository,
        project: Project,
        deployment: Deployment,
        sink: LogSink,
        message: str,
        started: float,
    ) -> None:
        sink.write_line(f"ERROR: {message}")
        current = await repo.get_deployment(project.id, deployment.build_num)
        # A timeout after the build itself succeeded only affects the project.
        if current is not None and current.status == DeploymentStatus.BUILDING:
            await repo.finish_deployment(
                deployment.id,
                DeploymentStatus.FAILED,
                git_commit=current.git_commit,
                duration=int(time.monotonic() - started),
            )
        await repo.update_project_status(project.id, ProjectStatus.ERROR, error_msg=message)
        logger.error("build_failed", project_id=project.id, build=deployment.build_num, error=message)

    async def _execute_build(
        self,
        repo: ProjectRepository,
        project: Project,
        deployment: Deployment,
        sink: LogSink,
    ) -> None:
        project_dir = self.git_service.project_dir(project.id)
        await asyncio.to_thread(write_env_file, project_dir, project.env_vars)

        result: BuildResult = await self.build_service.run_pipeline(project, sink)

        if not result.success:
            sink.write_line(f"ERROR: {result.error_msg}")
            await repo.finish_deployment(
                deployment.id,
                DeploymentStatus.FAILED,
                git_commit=result.commit,
                duration=int(result.duration),
            )
            await repo.update_project_status(
                project.id, ProjectStatus.ERROR, error_msg=result.error_msg
            )
            logger.error(
                "build_failed",
                project_id=project.id,
                build=deployment.build_num,
                error=result.error_msg,
            )
            return

        await repo.finish_deployment(
            deployment.id,
            DeploymentStatus.SUCCESS,
            git_commit=result.commit,
            duration=int(result.duration),
        )

        if project.is_static:
            await repo.update_project_status(project.id, ProjectStatus.RUNNING)
            sink.write_line("Static build complete.")
        else:
            await self._start_process(repo, project, sink)

        logger.info(
            "build_completed",
            project_id=project.id,
            build=deployment.build_num,
            duration=round(result.duration, 3),
        )

    async def _start_process(self, repo: ProjectRepository, project: Project, sink: LogSink) -> None:
        sink.write_line()
        sink.write_line("=== Starting process ===")
        project_dir = self.git_service.project_dir(project.id)

        for label, step in (
            ("service install failed", lambda: self.process_service.install(project, project_dir)),
            ("service start failed", lambda: self.process_service.restart(project.id)),
        ):
            try:
                await step()
            except ServiceManagerError as exc:
                message = f"{label}: {exc}"
                sink.write_line(f"ERROR: {message}")
                await repo.update_project_status(project.id, ProjectStatus.ERROR, error_msg=message)
                logger.error("service_start_failed", project_id=project.id, error=message)
                return

        await asyncio.sleep(self.start_grace)
        if not await self.process_service.is_running(project.id):
            message = "process exited shortly after start"
            sink.write_line("ERROR: Process exited shortly after start.")
            await repo.update_project_status(project.id, ProjectStatus.ERROR, error_msg=message)
            logger.error("service_start_failed", project_id=project.id, error=message)
            return

        await repo.update_project_status(project.id, ProjectStatus.RUNNING)
        sink.write_line("Process started successfully.")

        current = await repo.get_project(project.id)
        if current.domain and current.host_id == 0:
            await self._setup_reverse_proxy(repo, current, sink)

    async def _setup_reverse_proxy(
        self,
        repo: ProjectRepository,
        project: Project,
        sink: LogSink,
    ) -> None:
        if self.proxy_client is None:
            logger.info("reverse_proxy_skipped", project_id=project.id, reason="not configured")
            return
        try:
            host_id = await self.proxy_client.create_host(
                CreateHostRequest(
                    domain=project.domain,
                    upstream_addr=f"localhost:{project.port}",
                    tls_enabled=True,
                    http_redirect=True,
                    websocket=True,
                )
            )
        except ProxyClientError as exc:
            sink.write_line(f"WARNING: reverse proxy setup failed: {exc}")
            logger.error("reverse_proxy_create_failed", project_id=project.id, error=str(exc))
            return

        await repo.update_project(project.id, host_id=host_id)
        try:
            await self.proxy_client.reload_caddy()
        except ProxyClientError as exc:
            logger.error("reverse_proxy_reload_failed", project_id=project.id, error=str(exc))
        sink.write_line(f"Reverse proxy created for {project.domain}.")
        logger.info("reverse_proxy_created", project_id=project.id, domain=project.domain)
