from uuid import UUID

from fastapi import APIRouter, Depends

from app.api import deps
from app.core.exceptions import NotFoundError
from app.schemas.pipeline import (
    LenderResponseRequest,
    PipelineStatusResponse,
    SmartFieldsResponse,
    StageApplyResponse,
    StageOverrideRequest,
)
from app.services import smart_fields
from app.services.container import PipelineServices
from app.services.pipeline_stage import StageApplyResult, StageEvaluation

router = APIRouter(prefix="/applications", tags=["pipeline"])


def _status_payload(evaluation: StageEvaluation) -> PipelineStatusResponse:
    return PipelineStatusResponse(
        application_id=evaluation.application_id,
        current_stage=evaluation.current_stage,
        suggested_stage=evaluation.suggested_stage,
        needs_update=evaluation.needs_update,
        reason=evaluation.reason,
        degraded=evaluation.degraded,
        document_stats=evaluation.document_stats,
    )


def _apply_payload(result: StageApplyResult) -> StageApplyResponse:
    return StageApplyResponse(
        application_id=result.application_id,
        previous_stage=result.previous_stage,
        current_stage=result.current_stage,
        changed=result.changed,
        reason=result.reason,
        degraded=result.degraded,
    )


@router.get(
    "/{application_id}/pipeline-status",
    response_model=PipelineStatusResponse,
    summary="Current and suggested pipeline stage",
)
async def get_pipeline_status(
    application_id: UUID,
    services: PipelineServices = Depends(deps.get_services),
) -> PipelineStatusResponse:
    evaluation = await services.engine.evaluate(application_id)
    return _status_payload(evaluation)


@router.post(
    "/{application_id}/pipeline/apply",
    response_model=StageApplyResponse,
    summary="Re-evaluate and apply the pipeline stage",
)
async def apply_pipeline_stage(
    application_id: UUID,
    actor_id: UUID | None = Depends(deps.get_actor_id),
    services: PipelineServices = Depends(deps.get_services),
) -> StageApplyResponse:
    result = await services.engine.apply(application_id, trigger="manual", actor_id=actor_id)
    return _apply_payload(result)


@router.post(
    "/{application_id}/pipeline/bypass-upload",
    response_model=StageApplyResponse,
    summary="Skip the document upload step",
)
async def bypass_upload(
    application_id: UUID,
    actor_id: UUID | None = Depends(deps.get_actor_id),
    services: PipelineServices = Depends(deps.get_services),
) -> StageApplyResponse:
    result = await services.engine.bypass_upload(application_id, actor_id=actor_id)
    return _apply_payload(result)


@router.post(
    "/{application_id}/pipeline/send-to-lender",
    response_model=StageApplyResponse,
    summary="Send an application in review to its lender",
)
async def send_to_lender(
    application_id: UUID,
    actor_id: UUID | None = Depends(deps.get_actor_id),
    services: PipelineServices = Depends(deps.get_services),
) -> StageApplyResponse:
    result = await services.engine.send_to_lender(application_id, actor_id=actor_id)
    return _apply_payload(result)


@router.post(
    "/{application_id}/pipeline/lender-response",
    response_model=StageApplyResponse,
    summary="Record the lender's decision",
)
async def record_lender_response(
    application_id: UUID,
    payload: LenderResponseRequest,
    actor_id: UUID | None = Depends(deps.get_actor_id),
    services: PipelineServices = Depends(deps.get_services),
) -> StageApplyResponse:
    result = await services.engine.record_lender_response(
        application_id,
        payload.decision,
        actor_id=actor_id,
    )
    return _apply_payload(result)


@router.post(
    "/{application_id}/pipeline/override",
    response_model=StageApplyResponse,
    summary="Staff override of the pipeline stage",
)
async def override_stage(
    application_id: UUID,
    payload: StageOverrideRequest,
    actor_id: UUID | None = Depends(deps.get_actor_id),
    services: PipelineServices = Depends(deps.get_services),
) -> StageApplyResponse:
    result = await services.engine.override_stage(
        application_id,
        payload.stage,
        reason=payload.reason,
        actor_id=actor_id,
    )
    return _apply_payload(result)


@router.get(
    "/{application_id}/smart-fields",
    response_model=SmartFieldsResponse,
    summary="Preview the signing field map",
)
async def preview_smart_fields(
    application_id: UUID,
    services: PipelineServices = Depends(deps.get_services),
) -> SmartFieldsResponse:
    application = await services.store.get(application_id)
    if application is None:
        raise NotFoundError("Application not found", details={"application_id": str(application_id)})
    snapshot = smart_fields.ApplicationSnapshot.from_application(application)
    fields = smart_fields.generate(snapshot)
    validation = smart_fields.validate(snapshot, fields)
    return SmartFieldsResponse(
        application_id=application_id,
        fields=fields,
        field_count=len(fields),
        expected_field_count=smart_fields.expected_field_count(smart_fields.includes_partner(snapshot)),
        digest=smart_fields.field_map_digest(fields),
        is_valid=validation.is_valid,
        missing_fields=validation.missing_fields,
        warnings=validation.warnings,
    )
