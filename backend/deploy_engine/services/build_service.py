from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from deploy_engine.models.project import EnvVar, Project
from deploy_engine.services.git_service import DEFAULT_BRANCH, GitService
from deploy_engine.services.log_sink import LogSink
from deploy_engine.tools.command_adapter import CommandAdapter
from deploy_engine.tools.exceptions import CommandFailedError, ToolError

PRODUCTION_ENV = {"NODE_ENV": "production"}


@dataclass(slots=True)
class BuildResult:
    success: bool
    commit: str = ""
    duration: float = 0.0
    error_msg: str = ""


def compose_build_env(project_dir: Path, env_vars: Sequence[EnvVar]) -> dict[str, str]:
    """Overlay applied on top of the parent environment; later keys win."""
    env: dict[str, str] = {"HOME": str(project_dir), **PRODUCTION_ENV}
    for env_var in env_vars:
        env[env_var.key] = env_var.value
    return env


def write_env_file(project_dir: Path, env_vars: Sequence[EnvVar]) -> Path | None:
    """Write ``.env`` into an existing working tree; no-op without variables."""
    if not env_vars or not project_dir.is_dir():
        return None
    env_path = project_dir / ".env"
    lines = [f"{env_var.key}={env_var.value}" for env_var in env_vars]
    env_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    env_path.chmod(0o600)
    return env_path


class BuildService:
    """Runs the fetch, install and build steps for a project into a log sink.

    The caller owns the time budget: cancelling the awaiting task (for
    example from an ``asyncio.timeout`` scope) kills the running command.
    """

    def __init__(
        self,
        git_service: GitService,
        logs_dir: Path,
        shell: str = "bash",
        adapter: CommandAdapter | None = None,
    ):
        self.git_service = git_service
        self.logs_dir = logs_dir
        self.shell = shell
        self.adapter = adapter or CommandAdapter()

    def log_dir(self, project_id: int) -> Path:
        return self.logs_dir / f"project_{project_id}"

    def log_path(self, project_id: int, build_num: int) -> Path:
        return self.log_dir(project_id) / f"build_{build_num}.log"

    async def read_log(self, project_id: int, build_num: int) -> str:
        path = self.log_path(project_id, build_num)
        return await asyncio.to_thread(path.read_text, encoding="utf-8", errors="replace")

    async def run(
        self,
        project_dir: Path,
        command: str,
        env_vars: Sequence[EnvVar],
        sink: LogSink,
    ) -> None:
        sink.write(f"$ {command}\n".encode())
        env = compose_build_env(project_dir, env_vars)
        exit_code = await self.adapter.stream(
            self.shell,
            sink,
            args=["-c", command],
            cwd=project_dir,
            env=env,
        )
        if exit_code != 0:
            raise CommandFailedError(command, exit_code)

    async def run_pipeline(self, project: Project, sink: LogSink) -> BuildResult:
        start = time.monotonic()
        project_dir = self.git_service.project_dir(project.id)

        def elapsed() -> float:
            return time.monotonic() - start

        sink.write_line("=== Step 1/3: Fetching source code ===")
        try:
            has_tree = await asyncio.to_thread(self.git_service.has_working_tree, project.id)
            if has_tree:
                await self.git_service.pull(project.deploy_key, project.id, sink)
            else:
                await self.git_service.clone(
                    project.git_url,
                    project.git_branch or DEFAULT_BRANCH,
                    project.deploy_key,
                    project.id,
                    sink,
                )
        except (OSError, ToolError) as exc:
            return BuildResult(success=False, error_msg=f"fetch failed: {exc}", duration=elapsed())

        commit = await self.git_service.get_commit_hash(project.id)
        sink.write_line(f"Commit: {commit}")
        sink.write_line()

        steps = (
            ("Step 2/3", "Installing dependencies", "install", project.install_command),
            ("Step 3/3", "Building project", "build", project.build_command),
        )
        for step, title, label, command in steps:
            if not command.strip():
                sink.write_line(f"=== {step}: No {label} command, skipping ===")
                sink.write_line()
                continue
            sink.write_line(f"=== {step}: {title} ===")
            try:
                await self.run(project_dir, command, project.env_vars, sink)
            except (OSError, ToolError) as exc:
                return BuildResult(
                    success=False,
                    commit=commit,
                    error_msg=f"{label} failed: {exc}",
                    duration=elapsed(),
                )
            sink.write_line()

        duration = elapsed()
        sink.write_line(f"=== Build completed in {duration:.1f}s ===")
        return BuildResult(success=True, commit=commit, duration=duration)
