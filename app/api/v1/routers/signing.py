from uuid import UUID

from fastapi import APIRouter, Depends, status

from app.api import deps
from app.schemas.signing import SigningJobCreated, SigningJobOut
from app.services.container import PipelineServices

router = APIRouter(tags=["signing"])


@router.post(
    "/applications/{application_id}/signing",
    response_model=SigningJobCreated,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start e-signature for an application",
)
async def start_signing(
    application_id: UUID,
    actor_id: UUID | None = Depends(deps.get_actor_id),
    services: PipelineServices = Depends(deps.get_services),
) -> SigningJobCreated:
    job = await services.orchestrator.start(application_id, actor_id=actor_id)
    return SigningJobCreated(job_id=job.id, application_id=job.application_id, status=job.status)


@router.get(
    "/signing/jobs/{job_id}",
    response_model=SigningJobOut,
    summary="Signing job status",
)
async def get_signing_job(
    job_id: UUID,
    services: PipelineServices = Depends(deps.get_services),
) -> SigningJobOut:
    job = await services.orchestrator.status(job_id)
    return SigningJobOut.model_validate(job)


@router.post(
    "/signing/jobs/{job_id}/cancel",
    response_model=SigningJobOut,
    summary="Cancel a signing job that has not reached the provider yet",
)
async def cancel_signing_job(
    job_id: UUID,
    actor_id: UUID | None = Depends(deps.get_actor_id),
    services: PipelineServices = Depends(deps.get_services),
) -> SigningJobOut:
    job = await services.orchestrator.cancel(job_id, actor_id=actor_id)
    return SigningJobOut.model_validate(job)
