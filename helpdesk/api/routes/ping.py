from fastapi import APIRouter, Depends

from helpdesk.dependencies.auth import CurrentUser, Role, role_required
from helpdesk.metrics import metrics_registry

router = APIRouter(prefix="/ping", tags=["health"])


@router.get("", summary="Public health probe")
async def ping() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/metrics",
    summary="Snapshot of in-process workflow metrics",
    dependencies=[Depends(role_required(Role.ADMIN))],
)
async def metrics_snapshot(user: CurrentUser) -> dict[str, object]:
    snapshot = {
        name: {",".join(labels) or "_": values for labels, values in series.items()}
        for name, series in metrics_registry.snapshot().items()
    }
    return {"user": user.username, "metrics": snapshot}
