"""Provider callback ingestion.

Order of operations for every delivery: verify the signature, persist the
event (insert-if-absent on its id), dispatch to the orchestrator, then mark
the event processed or errored. Dispatch failures never fail the
acknowledgement; ``reconcile`` picks errored and stale pending events up
again.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping
from uuid import UUID

from app.core.exceptions import NotFoundError, PipelineError, UnauthorizedError, ValidationError
from app.schemas.webhooks import ReconcileResult, WebhookAck
from app.services.pipeline_stage import utcnow
from app.services.signing.jobs import SigningJobStore
from app.services.signing.orchestrator import SigningJobOrchestrator
from app.services.webhooks.events import ERROR, PENDING, PROCESSED, WebhookEventStore
from app.services.webhooks.verification import verify_signature

logger = logging.getLogger(__name__)

COMPLETED_EVENT_TYPES = frozenset({"document.completed", "document.complete"})
FAILED_EVENT_TYPES = frozenset({"document.declined", "document.expired", "invite.declined"})
IGNORED = "ignored"


@dataclass(frozen=True, slots=True)
class ProviderEvent:
    event_id: str
    event_type: str
    document_id: str | None = None
    job_id: UUID | None = None
    signed_document_ref: str | None = None
    reason: str | None = None


def _first(mapping: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value not in (None, ""):
            return value
    return None


def parse_event(payload: Mapping[str, Any]) -> ProviderEvent:
    """Normalise the provider's envelope variants into one shape."""
    if not isinstance(payload, Mapping):
        raise ValidationError("Webhook payload must be a JSON object")
    meta = payload.get("meta") if isinstance(payload.get("meta"), Mapping) else {}
    content = payload.get("content") if isinstance(payload.get("content"), Mapping) else {}
    data = payload.get("data") if isinstance(payload.get("data"), Mapping) else content

    event_id = _first(payload, "id", "event_id") or _first(meta, "event_id", "id")
    event_type = _first(payload, "event", "event_type", "type") or _first(meta, "event")
    if not event_id or not event_type:
        raise ValidationError("Webhook payload is missing the event id or type")

    raw_job_id = _first(data, "job_id") or _first(payload, "job_id")
    job_id = None
    if raw_job_id:
        try:
            job_id = UUID(str(raw_job_id))
        except ValueError:
            logger.warning("Ignoring malformed job id %r on event %s", raw_job_id, event_id)

    document_id = _first(data, "document_id", "id")
    return ProviderEvent(
        event_id=str(event_id),
        event_type=str(event_type).strip().lower(),
        document_id=str(document_id) if document_id else None,
        job_id=job_id,
        signed_document_ref=_first(data, "signed_document_ref", "download_url", "document_url"),
        reason=_first(data, "reason", "decline_reason", "message"),
    )


class WebhookIngestion:
    def __init__(
        self,
        *,
        events: WebhookEventStore,
        jobs: SigningJobStore,
        orchestrator: SigningJobOrchestrator,
        secret: str,
        reconcile_grace_seconds: float = 120,
        max_attempts: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.events = events
        self.jobs = jobs
        self.orchestrator = orchestrator
        self.secret = secret
        self.reconcile_grace_seconds = reconcile_grace_seconds
        self.max_attempts = max_attempts
        self.clock = clock

    async def receive(self, raw_payload: bytes, signature: str | None) -> WebhookAck:
        if not verify_signature(raw_payload, signature, self.secret):
            logger.warning("Rejected webhook with invalid signature")
            raise UnauthorizedError("Invalid webhook signature")

        try:
            payload = json.loads(raw_payload)
        except ValueError:
            logger.warning("Ignoring signed webhook that is not valid JSON (%d bytes)", len(raw_payload))
            return WebhookAck(status=IGNORED)
        try:
            event = parse_event(payload)
        except ValidationError as exc:
            logger.warning("Ignoring unprocessable signed webhook: %s", exc.message)
            return WebhookAck(status=IGNORED)

        stored, created = await self.events.record_pending(event.event_id, event.event_type, payload)
        if not created:
            if stored.status == PROCESSED:
                logger.info("Duplicate webhook %s already processed", event.event_id)
                return WebhookAck(event_id=event.event_id, status=PROCESSED, duplicate=True)
            if stored.status == PENDING:
                logger.info("Duplicate webhook %s is already being processed", event.event_id)
                return WebhookAck(event_id=event.event_id, status=PENDING, duplicate=True)
            claimed = await self.events.claim_for_retry(event.event_id, max_attempts=self.max_attempts)
            if claimed is None:
                return WebhookAck(event_id=event.event_id, status=ERROR, duplicate=True)

        status = await self._process(event)
        return WebhookAck(event_id=event.event_id, status=status, duplicate=not created)

    async def _process(self, event: ProviderEvent) -> str:
        try:
            await self.dispatch(event)
        except Exception as exc:
            if isinstance(exc, PipelineError):
                logger.warning("Webhook %s (%s) not applied: %s", event.event_id, event.event_type, exc)
            else:
                logger.exception("Webhook %s (%s) dispatch failed", event.event_id, event.event_type)
            await self.events.mark_error(event.event_id, f"{exc.__class__.__name__}: {exc}")
            return ERROR
        await self.events.mark_processed(event.event_id, processed_at=self.clock())
        return PROCESSED

    async def _resolve_job_id(self, event: ProviderEvent) -> UUID:
        if event.job_id is not None:
            return event.job_id
        if event.document_id:
            job = await self.jobs.get_by_provider_document(event.document_id)
            if job is not None:
                return job.id
        raise NotFoundError(
            "No signing job matches this callback",
            details={"document_id": event.document_id},
        )

    async def dispatch(self, event: ProviderEvent) -> None:
        if event.event_type in COMPLETED_EVENT_TYPES:
            job_id = await self._resolve_job_id(event)
            await self.orchestrator.complete(job_id, event.signed_document_ref or event.document_id)
        elif event.event_type in FAILED_EVENT_TYPES:
            job_id = await self._resolve_job_id(event)
            reason = event.reason or event.event_type.replace(".", " ")
            await self.orchestrator.fail(job_id, f"Provider reported {event.event_type}: {reason}")
        else:
            logger.info("Ignoring webhook %s of type %s", event.event_id, event.event_type)

    async def reconcile(self, limit: int = 50) -> ReconcileResult:
        pending_before = self.clock() - timedelta(seconds=self.reconcile_grace_seconds)
        candidates = await self.events.list_for_reconcile(
            pending_before=pending_before,
            max_attempts=self.max_attempts,
            limit=limit,
        )
        result = ReconcileResult(scanned=len(candidates))
        for stored in candidates:
            if stored.status == ERROR:
                claimed = await self.events.claim_for_retry(stored.event_id, max_attempts=self.max_attempts)
                if claimed is None:
                    continue
            try:
                event = parse_event(stored.payload or {})
            except ValidationError as exc:
                await self.events.mark_error(stored.event_id, exc.message)
                result.failed += 1
                continue
            if await self._process(event) == PROCESSED:
                result.processed += 1
            else:
                result.failed += 1
        if candidates:
            logger.info(
                "Webhook reconcile: scanned=%s processed=%s failed=%s",
                result.scanned,
                result.processed,
                result.failed,
            )
        return result
