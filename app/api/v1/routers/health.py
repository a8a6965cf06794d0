from fastapi import APIRouter, Request

from app.core.health import live_payload, ready_payload
from app.core.limiter import limiter
from app.core.settings import settings

router = APIRouter(tags=["health"])


def _worker_running(request: Request) -> bool | None:
    if not settings.signing_worker_enabled:
        return None
    services = getattr(request.app.state, "services", None)
    worker = getattr(services, "worker", None)
    return bool(worker and worker.running)


@router.get("/health/live", summary="Service liveness check")
@limiter.exempt
async def health_live(request: Request) -> dict:
    return await live_payload()


@router.get("/health/ready", summary="Service readiness check")
@limiter.exempt
async def health_ready(request: Request) -> dict:
    return await ready_payload(_worker_running(request))


@router.get("/health", summary="Backward-compatible readiness check")
@limiter.exempt
async def read_health(request: Request) -> dict:
    return await ready_payload(_worker_running(request))
