from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from deploy_engine.logging_config import get_logger
from deploy_engine.models.project import Project
from deploy_engine.services.exceptions import ServiceManagerError
from deploy_engine.tools.command_adapter import CommandAdapter
from deploy_engine.tools.exceptions import ToolError

logger = get_logger(__name__)

RESTART_SEC = 5


@dataclass(slots=True)
class UnitSpec:
    description: str
    work_dir: Path
    exec_start: str
    log_file: Path
    environment: list[str] = field(default_factory=list)
    restart_sec: int = RESTART_SEC


def resolve_start_command(command: str, work_dir: Path) -> str:
    """Rewrite a leading ``./binary`` to an absolute path under *work_dir*."""
    command = command.strip()
    if command.startswith("./"):
        return f"{work_dir}/{command[2:]}"
    return command


def _quote_environment(assignment: str) -> str:
    escaped = assignment.replace("\\", "\\\\").replace('"', '\\"').replace("%", "%%")
    return f'"{escaped}"'


def render_service_unit(spec: UnitSpec) -> str:
    """Render a systemd unit for a long-running project process."""
    lines = [
        "[Unit]",
        f"Description=Deployed project: {spec.description}",
        "After=network.target",
        "",
        "[Service]",
        "Type=simple",
        f"WorkingDirectory={spec.work_dir}",
        f"ExecStart={spec.exec_start}",
        "Restart=on-failure",
        f"RestartSec={spec.restart_sec}",
    ]
    lines.extend(f"Environment={_quote_environment(item)}" for item in spec.environment)
    lines.extend(
        [
            "",
            "# Logging",
            f"StandardOutput=append:{spec.log_file}",
            f"StandardError=append:{spec.log_file}",
            "",
            "[Install]",
            "WantedBy=multi-user.target",
            "",
        ]
    )
    return "\n".join(lines)


class ServiceManager(Protocol):
    """Capability surface of the OS service manager used for project units."""

    async def daemon_reload(self) -> None: ...

    async def enable(self, name: str) -> None: ...

    async def disable(self, name: str) -> None: ...

    async def start(self, name: str) -> None: ...

    async def stop(self, name: str) -> None: ...

    async def restart(self, name: str) -> None: ...

    async def is_active(self, name: str) -> bool: ...


class SystemdManager:
    """ServiceManager backed by ``systemctl``."""

    def __init__(self, adapter: CommandAdapter | None = None, timeout: float = 60.0):
        self.adapter = adapter or CommandAdapter()
        self.timeout = timeout

    async def _systemctl(self, *args: str) -> None:
        try:
            result = await self.adapter.run("systemctl", args=args, timeout=self.timeout)
        except (OSError, ToolError) as exc:
            raise ServiceManagerError(f"systemctl {' '.join(args)}: {exc}") from exc
        if result.exit_code != 0:
            output = (result.stderr or result.stdout).strip()
            raise ServiceManagerError(
                f"systemctl {' '.join(args)}: {output} (exit status {result.exit_code})"
            )

    async def daemon_reload(self) -> None:
        await self._systemctl("daemon-reload")

    async def enable(self, name: str) -> None:
        await self._systemctl("enable", name)

    async def disable(self, name: str) -> None:
        await self._systemctl("disable", name)

    async def start(self, name: str) -> None:
        await self._systemctl("start", name)

    async def stop(self, name: str) -> None:
        await self._systemctl("stop", name)

    async def restart(self, name: str) -> None:
        await self._systemctl("restart", name)

    async def is_active(self, name: str) -> bool:
        try:
            result = await self.adapter.run(
                "systemctl",
                args=["is-active", "--quiet", name],
                timeout=self.timeout,
            )
        except (OSError, ToolError):
            return False
        return result.exit_code == 0


class ProcessService:
    """Turns a project's start command into a supervised, boot-persistent unit."""

    def __init__(
        self,
        unit_dir: Path,
        logs_dir: Path,
        manager: ServiceManager,
        unit_prefix: str = "deploy-project",
    ):
        self.unit_dir = unit_dir
        self.logs_dir = logs_dir
        self.manager = manager
        self.unit_prefix = unit_prefix

    def service_name(self, project_id: int) -> str:
        return f"{self.unit_prefix}-{project_id}"

    def unit_path(self, project_id: int) -> Path:
        return self.unit_dir / f"{self.service_name(project_id)}.service"

    def runtime_log_path(self, project_id: int) -> Path:
        return self.logs_dir / f"project_{project_id}" / "runtime.log"

    def build_unit_spec(self, project: Project, work_dir: Path) -> UnitSpec:
        environment = [f"{env_var.key}={env_var.value}" for env_var in project.env_vars]
        if project.port > 0:
            environment.append(f"PORT={project.port}")
        return UnitSpec(
            description=project.name,
            work_dir=work_dir,
            exec_start=resolve_start_command(project.start_command, work_dir),
            log_file=self.runtime_log_path(project.id),
            environment=environment,
        )

    async def install(self, project: Project, work_dir: Path) -> Path:
        spec = self.build_unit_spec(project, work_dir)
        unit_path = self.unit_path(project.id)
        content = render_service_unit(spec)

        def _write() -> None:
            spec.log_file.parent.mkdir(parents=True, exist_ok=True)
            unit_path.parent.mkdir(parents=True, exist_ok=True)
            unit_path.write_text(content, encoding="utf-8")

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise ServiceManagerError(f"create service file: {exc}") from exc

        await self.manager.daemon_reload()
        await self.manager.enable(self.service_name(project.id))
        return unit_path

    async def start(self, project_id: int) -> None:
        await self.manager.start(self.service_name(project_id))

    async def stop(self, project_id: int) -> None:
        await self.manager.stop(self.service_name(project_id))

    async def restart(self, project_id: int) -> None:
        await self.manager.restart(self.service_name(project_id))

    async def uninstall(self, project_id: int) -> None:
        """Stop, disable and remove the unit; every step tolerates an absent unit."""
        name = self.service_name(project_id)
        for step in (self.manager.stop, self.manager.disable):
            try:
                await step(name)
            except ServiceManagerError as exc:
                logger.debug("unit_uninstall_step_skipped", unit=name, error=str(exc))

        unit_path = self.unit_path(project_id)
        with contextlib.suppress(FileNotFoundError):
            await asyncio.to_thread(unit_path.unlink)

        try:
            await self.manager.daemon_reload()
        except ServiceManagerError as exc:
            logger.warning("daemon_reload_failed", unit=name, error=str(exc))

    async def is_running(self, project_id: int) -> bool:
        return await self.manager.is_active(self.service_name(project_id))

    async def read_runtime_log(self, project_id: int, lines: int = 200) -> str:
        """Return the last *lines* lines of the runtime log, or "" before the first start."""
        path = self.runtime_log_path(project_id)

        def _tail() -> str:
            if not path.exists():
                return ""
            with path.open("r", encoding="utf-8", errors="replace") as handle:
                return "".join(deque(handle, maxlen=max(lines, 0)))

        return await asyncio.to_thread(_tail)
