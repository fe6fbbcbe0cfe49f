from __future__ import annotations

from fastapi import APIRouter

from . import frameworks, health, projects, webhook, ws

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(frameworks.router)
api_router.include_router(projects.router)
api_router.include_router(webhook.router)

ws_router = ws.router

__all__ = ["api_router", "ws_router"]
