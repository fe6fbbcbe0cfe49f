from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from deploy_engine.dependencies import DeployServiceDep
from deploy_engine.models.api import BuildStartedResponse
from deploy_engine.services.exceptions import BuildInProgressError, WebhookNotFoundError

router = APIRouter(prefix="/webhook", tags=["webhook"])


@router.post(
    "/{token}",
    response_model=BuildStartedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_build(token: str, service: DeployServiceDep) -> BuildStartedResponse:
    """Public endpoint for git hosts; the token is the only credential."""
    try:
        deployment = await service.handle_webhook(token)
    except WebhookNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BuildInProgressError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return BuildStartedResponse(
        project_id=deployment.project_id,
        build_num=deployment.build_num,
        message="build triggered",
    )
