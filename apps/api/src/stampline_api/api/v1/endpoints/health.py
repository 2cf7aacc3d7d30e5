from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from stampline_api.core.settings import settings
from stampline_api.db.session import get_session


router = APIRouter(prefix="/health")


class ComponentStatus(BaseModel):
    status: Literal["ready", "disabled", "error"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", include_in_schema=False)
async def service_health_alias() -> dict[str, str]:
    """Liveness alias under /health."""

    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(session: AsyncSession = Depends(get_session)) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    overall: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.exception("Readiness database ping failed")
        components["database"] = ComponentStatus(status="error", detail=exc.__class__.__name__)
        overall = "error"
    else:
        components["database"] = ComponentStatus(status="ready")

    if settings.pass_sync_enabled:
        components["pass_sync"] = ComponentStatus(status="ready")
    else:
        components["pass_sync"] = ComponentStatus(status="disabled", detail="pass_sync_enabled is false")
        if overall == "ready":
            overall = "degraded"

    return ReadinessPayload(status=overall, components=components)
