import stat
from types import SimpleNamespace

import pytest

import deploy_engine.services.build_service as build_service_module
from deploy_engine.models.project import EnvVar, Project
from deploy_engine.services.build_service import (
    BuildService,
    compose_build_env,
    write_env_file,
)
from deploy_engine.services.git_service import GitService
from deploy_engine.services.log_sink import LogSink


class StubAdapter:
    """Stands in for both git and the build shell; exit codes keyed by command line."""

    def __init__(self, exit_codes=None):
        self.exit_codes = exit_codes or {}
        self.streams = []

    async def stream(self, command, sink, *, args=None, cwd=None, env=None):
        args = tuple(args or ())
        self.streams.append((command, args, cwd, dict(env or {})))
        key = args[-1] if command == "bash" else f"git {args[0]}"
        sink.write(f"output of {key}\n".encode())
        return self.exit_codes.get(key, 0)

    async def run(self, command, *, args=None, cwd=None, env=None, timeout=None):
        return SimpleNamespace(exit_code=0, stdout="abc1234\n", stderr="")


def make_project(**overrides) -> Project:
    fields = {
        "id": 1,
        "name": "shop",
        "git_url": "https://example.com/acme/shop.git",
        "install_command": "npm ci",
        "build_command": "npm run build",
        "start_command": "npm start",
        "env_vars": [EnvVar(key="API_URL", value="https://api.example.com")],
    }
    fields.update(overrides)
    return Project(**fields)


@pytest.fixture
def adapter():
    return StubAdapter()


@pytest.fixture
def service(tmp_path, adapter):
    git_service = GitService(tmp_path / "sources", adapter=adapter)
    return BuildService(git_service, tmp_path / "logs", adapter=adapter)


def test_build_env_sets_production_defaults_and_user_values_win(tmp_path):
    env = compose_build_env(
        tmp_path,
        [EnvVar(key="NODE_ENV", value="staging"), EnvVar(key="TOKEN", value="x=y")],
    )

    assert env == {"HOME": str(tmp_path), "NODE_ENV": "staging", "TOKEN": "x=y"}


def test_write_env_file_is_owner_only(tmp_path):
    path = write_env_file(
        tmp_path,
        [EnvVar(key="A", value="1"), EnvVar(key="B", value="two words")],
    )

    assert path == tmp_path / ".env"
    assert path.read_text() == "A=1\nB=two words\n"
    assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_write_env_file_skips_empty_or_missing_tree(tmp_path):
    assert write_env_file(tmp_path, []) is None
    assert write_env_file(tmp_path / "missing", [EnvVar(key="A", value="1")]) is None
    assert not (tmp_path / ".env").exists()


def test_log_paths_are_per_project_and_build(service, tmp_path):
    assert service.log_path(3, 12) == tmp_path / "logs" / "project_3" / "build_12.log"


@pytest.mark.asyncio
async def test_pipeline_clones_installs_and_builds(service, adapter, tmp_path):
    sink = LogSink(tmp_path / "build.log")

    result = await service.run_pipeline(make_project(), sink)
    sink.close()

    assert result.success
    assert result.commit == "abc1234"
    assert [(command, args[0]) for command, args, _, _ in adapter.streams] == [
        ("git", "clone"),
        ("bash", "-c"),
        ("bash", "-c"),
    ]
    _, install_args, install_cwd, install_env = adapter.streams[1]
    assert install_args == ("-c", "npm ci")
    assert install_cwd == tmp_path / "sources" / "project_1"
    assert install_env["NODE_ENV"] == "production"
    assert install_env["API_URL"] == "https://api.example.com"

    log = (tmp_path / "build.log").read_text()
    assert "=== Step 1/3: Fetching source code ===" in log
    assert "Commit: abc1234" in log
    assert "$ npm run build" in log
    assert "=== Build completed in" in log


@pytest.mark.asyncio
async def test_pipeline_pulls_when_tree_exists_and_skips_empty_steps(service, adapter, tmp_path):
    (tmp_path / "sources" / "project_1" / ".git").mkdir(parents=True)
    sink = LogSink(tmp_path / "build.log")

    result = await service.run_pipeline(make_project(install_command="", build_command=" "), sink)
    sink.close()

    assert result.success
    assert [(command, args[0]) for command, args, _, _ in adapter.streams] == [("git", "pull")]
    log = (tmp_path / "build.log").read_text()
    assert "=== Step 2/3: No install command, skipping ===" in log
    assert "=== Step 3/3: No build command, skipping ===" in log


@pytest.mark.asyncio
async def test_pipeline_stops_at_first_failing_step(service, adapter, tmp_path):
    adapter.exit_codes["npm ci"] = 1
    sink = LogSink(tmp_path / "build.log")

    result = await service.run_pipeline(make_project(), sink)
    sink.close()

    assert not result.success
    assert result.commit == "abc1234"
    assert result.error_msg == "install failed: 'npm ci' exited with status 1"
    assert len(adapter.streams) == 2


@pytest.mark.asyncio
async def test_pipeline_reports_fetch_failure(service, adapter, tmp_path):
    adapter.exit_codes["git clone"] = 128
    sink = LogSink()

    result = await service.run_pipeline(make_project(), sink)

    assert not result.success
    assert result.error_msg == "fetch failed: 'git clone' exited with status 128"
    assert len(adapter.streams) == 1


@pytest.mark.asyncio
async def test_default_adapter_is_created_when_none_given(monkeypatch, tmp_path):
    created = []

    class RecordingAdapter(StubAdapter):
        def __init__(self):
            super().__init__()
            created.append(self)

    monkeypatch.setattr(build_service_module, "CommandAdapter", RecordingAdapter)
    service = BuildService(GitService(tmp_path), tmp_path / "logs", shell="sh")

    await service.run(tmp_path, "make", [], LogSink())

    [adapter] = created
    assert adapter.streams[0][:2] == ("sh", ("-c", "make"))
