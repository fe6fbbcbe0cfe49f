from __future__ import annotations

import asyncio
import contextlib
import os
import shlex
import shutil
import tempfile
from collections.abc import Iterator
from pathlib import Path

from deploy_engine.logging_config import get_logger
from deploy_engine.tools.command_adapter import CommandAdapter, OutputSink
from deploy_engine.tools.exceptions import CommandFailedError, ToolError

logger = get_logger(__name__)

DEFAULT_BRANCH = "main"


def sanitize_url(url: str) -> str:
    """Redact ``user:pass@`` credentials from a repository URL for logging."""
    scheme, sep, rest = url.partition("://")
    if not sep:
        return url
    authority, slash, path = rest.partition("/")
    if "@" not in authority:
        return url
    host = authority.rsplit("@", 1)[1]
    return f"{scheme}://***@{host}{slash}{path}"


@contextlib.contextmanager
def deploy_key_env(deploy_key: str) -> Iterator[dict[str, str]]:
    """Yield git environment overrides that authenticate with *deploy_key*.

    The key lives in an owner-only temp file for the duration of the block
    and is removed afterwards whatever the outcome.
    """
    env = {"GIT_TERMINAL_PROMPT": "0"}
    if not deploy_key.strip():
        yield env
        return

    fd, key_path = tempfile.mkstemp(prefix="deploy_key_")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(deploy_key if deploy_key.endswith("\n") else f"{deploy_key}\n")
        os.chmod(key_path, 0o600)
        env["GIT_SSH_COMMAND"] = (
            f"ssh -i {shlex.quote(key_path)} -o IdentitiesOnly=yes "
            "-o StrictHostKeyChecking=accept-new"
        )
        yield env
    finally:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(key_path)


class GitService:
    """Fetches project sources with git into ``<sources_dir>/project_<id>``."""

    def __init__(self, sources_dir: Path, adapter: CommandAdapter | None = None):
        self.sources_dir = sources_dir
        self.adapter = adapter or CommandAdapter()

    def project_dir(self, project_id: int) -> Path:
        return self.sources_dir / f"project_{project_id}"

    def has_working_tree(self, project_id: int) -> bool:
        return (self.project_dir(project_id) / ".git").exists()

    async def clone(
        self,
        url: str,
        branch: str,
        deploy_key: str,
        project_id: int,
        sink: OutputSink,
    ) -> None:
        target = self.project_dir(project_id)
        branch = branch or DEFAULT_BRANCH

        def _prepare() -> None:
            if target.exists():
                shutil.rmtree(target)
            target.parent.mkdir(parents=True, exist_ok=True)

        try:
            await asyncio.to_thread(_prepare)
        except OSError as exc:
            raise ToolError(f"cleanup existing dir: {exc}") from exc

        args = ["clone", "--depth", "1", "--branch", branch, url, str(target)]
        sink.write(f"$ git clone --depth 1 --branch {branch} {sanitize_url(url)}\n".encode())
        with deploy_key_env(deploy_key) as env:
            exit_code = await self.adapter.stream("git", sink, args=args, env=env)
        if exit_code != 0:
            raise CommandFailedError("git clone", exit_code)

    async def pull(self, deploy_key: str, project_id: int, sink: OutputSink) -> None:
        sink.write(b"$ git pull --ff-only\n")
        with deploy_key_env(deploy_key) as env:
            exit_code = await self.adapter.stream(
                "git",
                sink,
                args=["pull", "--ff-only"],
                cwd=self.project_dir(project_id),
                env=env,
            )
        if exit_code != 0:
            raise CommandFailedError("git pull", exit_code)

    async def get_commit_hash(self, project_id: int) -> str:
        """Short hash of HEAD, or an empty string when it cannot be resolved."""
        try:
            result = await self.adapter.run(
                "git",
                args=["rev-parse", "--short", "HEAD"],
                cwd=self.project_dir(project_id),
                timeout=30.0,
            )
        except (OSError, ToolError) as exc:
            logger.warning("commit_hash_unavailable", project_id=project_id, error=str(exc))
            return ""
        if result.exit_code != 0:
            return ""
        return result.stdout.strip()
