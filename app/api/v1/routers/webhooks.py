from fastapi import APIRouter, Depends, Query, Request

from app.api import deps
from app.core.limiter import limiter
from app.core.settings import settings
from app.schemas.webhooks import ReconcileResult, WebhookAck
from app.services.container import PipelineServices

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/signing-callback",
    response_model=WebhookAck,
    summary="Signing provider callback",
)
@limiter.exempt
async def signing_callback(
    request: Request,
    services: PipelineServices = Depends(deps.get_services),
) -> WebhookAck:
    body = await request.body()
    signature = request.headers.get(settings.webhook_signature_header)
    return await services.ingestion.receive(body, signature)


@router.post(
    "/signing-callback/reconcile",
    response_model=ReconcileResult,
    summary="Retry stored callbacks that were not processed",
)
async def reconcile_signing_callbacks(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    services: PipelineServices = Depends(deps.get_services),
) -> ReconcileResult:
    return await services.ingestion.reconcile(limit=limit)
