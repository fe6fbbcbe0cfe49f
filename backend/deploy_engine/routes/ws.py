from __future__ import annotations

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from deploy_engine.dependencies import DeployServiceDep
from deploy_engine.repositories.project_repository import ProjectNotFoundError

router = APIRouter()


@router.websocket("/ws/projects/{project_id}/build-log")
async def build_log(
    websocket: WebSocket,
    project_id: int,
    service: DeployServiceDep,
) -> None:
    try:
        await service.get_project(project_id)
    except ProjectNotFoundError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    sink = service.active_log_sink(project_id)
    if sink is None:
        # Nothing is building; finished logs are served by the logs endpoint.
        await websocket.close(code=status.WS_1000_NORMAL_CLOSURE)
        return

    await websocket.accept()
    subscription = sink.subscribe()
    try:
        async for chunk in subscription:
            await websocket.send_text(chunk.decode("utf-8", errors="replace"))
        await websocket.close()
    except WebSocketDisconnect:
        return
    finally:
        sink.unsubscribe(subscription)
