from __future__ import annotations

from fastapi import APIRouter

from deploy_engine.models.framework import FRAMEWORK_PRESETS, FrameworkPreset

router = APIRouter(prefix="/frameworks", tags=["frameworks"])


@router.get("", response_model=list[FrameworkPreset])
async def list_frameworks() -> list[FrameworkPreset]:
    return list(FRAMEWORK_PRESETS.values())
