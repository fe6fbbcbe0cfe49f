import pytest

from deploy_engine.models.project import DeploymentStatus, EnvVar, ProjectStatus
from deploy_engine.repositories.project_repository import (
    ProjectNotFoundError,
    ProjectRepository,
    decode_env_vars,
    encode_env_vars,
)


async def make_project(repo: ProjectRepository, token: str = "t1", **overrides):
    fields = {"name": "shop", "git_url": "https://example.com/shop.git", "webhook_token": token}
    fields.update(overrides)
    return await repo.create_project(**fields)


def test_env_vars_round_trip_and_bad_payloads():
    env_vars = [EnvVar(key="A", value="1"), EnvVar(key="B", value="")]

    assert decode_env_vars(encode_env_vars(env_vars)) == env_vars
    assert encode_env_vars([]) == ""
    assert decode_env_vars("") == []
    assert decode_env_vars("not json") == []
    assert decode_env_vars('{"key": "A"}') == []


@pytest.mark.asyncio
async def test_ids_are_not_reused_after_delete(db_session):
    repo = ProjectRepository(db_session)
    first = await make_project(repo, "t1")
    await repo.delete_project(first.id)

    second = await make_project(repo, "t2")

    assert second.id > first.id


@pytest.mark.asyncio
async def test_update_rejects_unknown_fields(db_session):
    repo = ProjectRepository(db_session)
    project = await make_project(repo)

    with pytest.raises(ValueError, match="webhook_token"):
        await repo.update_project(project.id, webhook_token="x")
    with pytest.raises(ProjectNotFoundError):
        await repo.update_project(project.id + 1, name="x")

    updated = await repo.update_project_status(project.id, ProjectStatus.ERROR, error_msg="boom")
    assert (updated.status, updated.error_msg) == (ProjectStatus.ERROR, "boom")


@pytest.mark.asyncio
async def test_auto_deploy_lookup_needs_flag(db_session):
    repo = ProjectRepository(db_session)
    await make_project(repo, "manual")
    auto = await make_project(repo, "auto", auto_deploy=True)

    assert await repo.find_auto_deploy_project("manual") is None
    assert (await repo.find_auto_deploy_project("auto")).id == auto.id


@pytest.mark.asyncio
async def test_deployment_history(db_session):
    repo = ProjectRepository(db_session)
    project = await make_project(repo)
    for build_num in (1, 2, 3):
        deployment = await repo.create_deployment(project.id, build_num, log_file=f"build_{build_num}.log")
        status = DeploymentStatus.FAILED if build_num == 2 else DeploymentStatus.SUCCESS
        await repo.finish_deployment(deployment.id, status, git_commit=f"c{build_num}", duration=build_num)

    assert await repo.max_build_num(project.id) == 3
    assert await repo.get_deployment(project.id, 2, status=DeploymentStatus.SUCCESS) is None
    assert (await repo.get_deployment(project.id, 1, status=DeploymentStatus.SUCCESS)).git_commit == "c1"

    assert await repo.mark_rolled_back(project.id, 1) == 2
    history = await repo.list_deployments(project.id)
    assert [(d.build_num, d.status) for d in history] == [
        (3, DeploymentStatus.ROLLED_BACK),
        (2, DeploymentStatus.ROLLED_BACK),
        (1, DeploymentStatus.SUCCESS),
    ]
