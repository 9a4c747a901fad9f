from typing import Any

from fastapi import APIRouter, Depends

from tracker.dependencies.auth import Role, role_required
from tracker.metrics import metrics_registry

router = APIRouter(tags=["health"])


@router.get("/ping", summary="Public health probe")
async def ping() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/metrics",
    summary="Snapshot of in-process metrics",
    dependencies=[Depends(role_required(Role.ADMIN))],
)
async def metrics_snapshot() -> dict[str, Any]:
    return metrics_registry.snapshot()
