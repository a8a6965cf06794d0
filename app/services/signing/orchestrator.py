"""Signing job lifecycle.

    queued -> submitted -> awaiting_callback -> completed | failed
    submitted -> queued                 (transient error, attempts left)
    submitted -> failed                 (permanent error or attempts exhausted)
    queued | submitted -> cancelled

``start`` and ``cancel`` are request-path calls. ``process`` and
``recover_stalled`` run on the background worker. ``complete`` and
``fail`` are driven by provider webhooks. Each status change is a
compare-and-set on the job row, so terminal states never move.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timedelta
from typing import Callable, Iterable
from uuid import UUID

from app.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermanentProviderError,
    TransientProviderError,
    ValidationError,
)
from app.core.logging import application_log_context
from app.models.signing_job import SigningJob
from app.schemas.signing import CANCELLABLE_STATUSES, SigningJobStatus
from app.services import smart_fields
from app.services.applications import ApplicationStore
from app.services.audit import AuditRecorder
from app.services.document_ledger import SIGNED_APPLICATION
from app.services.events import EventPublisher, JobCompleted, JobFailed
from app.services.locks import ApplicationLocks
from app.services.notifications import STAFF, NotificationSender, notify_quietly
from app.services.pipeline_stage import PipelineStageEngine, utcnow
from app.services.signing.backoff import compute_backoff
from app.services.signing.jobs import SigningJobStore
from app.services.signing.provider import SigningProvider

logger = logging.getLogger(__name__)

QUEUED = SigningJobStatus.QUEUED.value
SUBMITTED = SigningJobStatus.SUBMITTED.value
AWAITING_CALLBACK = SigningJobStatus.AWAITING_CALLBACK.value
COMPLETED = SigningJobStatus.COMPLETED.value
FAILED = SigningJobStatus.FAILED.value
CANCELLED = SigningJobStatus.CANCELLED.value

MAX_ATTEMPTS = 5


class SigningJobOrchestrator:
    def __init__(
        self,
        *,
        jobs: SigningJobStore,
        store: ApplicationStore,
        engine: PipelineStageEngine,
        provider: SigningProvider,
        locks: ApplicationLocks,
        publisher: EventPublisher,
        notifier: NotificationSender,
        audit: AuditRecorder,
        template_ref: str,
        eligible_stages: Iterable[str],
        max_attempts: int = MAX_ATTEMPTS,
        backoff_base_seconds: float = 5.0,
        backoff_max_seconds: float = 300.0,
        submit_timeout_seconds: float = 30.0,
        submit_lease_seconds: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.jobs = jobs
        self.store = store
        self.engine = engine
        self.provider = provider
        self.locks = locks
        self.publisher = publisher
        self.notifier = notifier
        self.audit = audit
        self.template_ref = template_ref
        self.eligible_stages = frozenset(eligible_stages)
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.submit_timeout_seconds = submit_timeout_seconds
        self.submit_lease_seconds = submit_lease_seconds
        self.clock = clock
        self.jitter = jitter
        self.wakeup: Callable[[], None] | None = None

    # Request path

    async def start(self, application_id: UUID, *, actor_id: UUID | None = None) -> SigningJob:
        with application_log_context(application_id):
            async with self.locks.hold(application_id):
                existing = await self.jobs.get_active_for_application(application_id)
                if existing is not None:
                    raise ConflictError("Application already has an active signing job", job=existing)

                application = await self.store.get(application_id)
                if application is None:
                    raise NotFoundError("Application not found", details={"application_id": str(application_id)})

                evaluation = await self.engine.evaluate(application_id, ignore_types={SIGNED_APPLICATION})
                if evaluation.degraded:
                    raise ConflictError("Document state is unavailable, retry shortly")
                if evaluation.suggested_stage.value not in self.eligible_stages:
                    raise ValidationError(
                        "Application is not ready for signing",
                        details={
                            "current_stage": evaluation.current_stage.value,
                            "suggested_stage": evaluation.suggested_stage.value,
                            "reason": evaluation.reason,
                            "missing_types": evaluation.document_stats.missing_types,
                            "rejected_types": evaluation.document_stats.rejected_types,
                        },
                    )

                snapshot = smart_fields.ApplicationSnapshot.from_application(application)
                fields = smart_fields.generate(snapshot)
                validation = smart_fields.validate(snapshot, fields)
                if not validation.is_valid:
                    raise ValidationError(
                        "Application data is incomplete for signing",
                        details={
                            "missing_fields": validation.missing_fields,
                            "warnings": validation.warnings,
                        },
                    )

                job = await self.jobs.create(
                    application_id,
                    template_ref=self.template_ref,
                    max_attempts=self.max_attempts,
                    not_before=self.clock(),
                    requested_by=actor_id,
                    field_map_digest=smart_fields.field_map_digest(fields),
                )
                await self.store.update_fields(application_id, signing_job_id=job.id)
                await self._audit(job, "signing_job.created", None, actor_id=actor_id)
                logger.info("Signing job %s queued", job.id)

        if self.wakeup is not None:
            self.wakeup()
        return job

    async def status(self, job_id: UUID) -> SigningJob:
        job = await self.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Signing job not found", details={"job_id": str(job_id)})
        return job

    async def cancel(self, job_id: UUID, *, actor_id: UUID | None = None) -> SigningJob:
        job = await self.status(job_id)
        with application_log_context(job.application_id):
            if job.status == CANCELLED:
                return job
            if job.status == AWAITING_CALLBACK:
                raise ConflictError(
                    "Signing is in progress with the provider; wait for the callback instead",
                    job=job,
                )
            if job.status not in CANCELLABLE_STATUSES:
                raise ConflictError("Signing job has already finished", job=job)

            cancelled = await self.jobs.transition(
                job.id,
                CANCELLABLE_STATUSES,
                CANCELLED,
                cancelled_at=self.clock(),
            )
            if cancelled is None:
                current = await self.status(job_id)
                if current.status == CANCELLED:
                    return current
                raise ConflictError("Signing job changed state before it could be cancelled", job=current)
            await self._audit(cancelled, "signing_job.cancelled", job.status, actor_id=actor_id)
            logger.info("Signing job %s cancelled from %s", job.id, job.status)
            return cancelled

    # Worker path

    async def process(self, job: SigningJob) -> SigningJob | None:
        now = self.clock()
        claimed = await self.jobs.claim(job.id, now=now)
        if claimed is None:
            return None

        with application_log_context(claimed.application_id):
            application = await self.store.get(claimed.application_id)
            if application is None:
                return await self._fail_job(claimed, "Application no longer exists", from_statuses=(SUBMITTED,))

            try:
                snapshot = smart_fields.ApplicationSnapshot.from_application(application)
                fields = smart_fields.generate(snapshot)
            except Exception as exc:
                logger.exception("Field map generation failed for job %s", claimed.id)
                return await self._fail_job(
                    claimed,
                    f"Field map generation failed: {exc.__class__.__name__}",
                    from_statuses=(SUBMITTED,),
                )
            digest = smart_fields.field_map_digest(fields)
            if claimed.field_map_digest and digest != claimed.field_map_digest:
                logger.warning(
                    "Field map for job %s changed since it was queued (attempt %s)",
                    claimed.id,
                    claimed.attempts,
                )

            try:
                submission = await asyncio.wait_for(
                    self.provider.submit(claimed.template_ref, fields),
                    timeout=self.submit_timeout_seconds,
                )
            except asyncio.TimeoutError:
                return await self._retry_or_fail(claimed, TransientProviderError("Provider submit timed out"))
            except TransientProviderError as exc:
                return await self._retry_or_fail(claimed, exc)
            except PermanentProviderError as exc:
                logger.warning("Provider rejected job %s: %s", claimed.id, exc.message)
                return await self._fail_job(claimed, exc.message, from_statuses=(SUBMITTED,))
            except Exception as exc:
                logger.exception("Unexpected error submitting job %s", claimed.id)
                return await self._retry_or_fail(
                    claimed,
                    TransientProviderError(f"Unexpected submit error: {exc.__class__.__name__}"),
                )

            accepted = await self.jobs.transition(
                claimed.id,
                (SUBMITTED,),
                AWAITING_CALLBACK,
                provider_document_id=submission.provider_document_id,
                field_map_digest=digest,
                last_error=None,
            )
            if accepted is None:
                logger.warning(
                    "Job %s left submitted while the provider created document %s",
                    claimed.id,
                    submission.provider_document_id,
                )
                return await self.jobs.get(claimed.id)

            await self.store.update_fields(
                claimed.application_id,
                signing_job_id=claimed.id,
                signing_document_id=submission.provider_document_id,
            )
            await self._audit(accepted, "signing_job.submitted", SUBMITTED)
            logger.info(
                "Job %s awaiting callback for provider document %s after %s attempt(s)",
                accepted.id,
                submission.provider_document_id,
                accepted.attempts,
            )
            return accepted

    async def _retry_or_fail(self, job: SigningJob, error: TransientProviderError) -> SigningJob | None:
        if job.attempts < job.max_attempts:
            delay = compute_backoff(
                job.attempts,
                base_seconds=self.backoff_base_seconds,
                max_seconds=self.backoff_max_seconds,
                jitter=self.jitter,
            )
            requeued = await self.jobs.transition(
                job.id,
                (SUBMITTED,),
                QUEUED,
                not_before=self.clock() + timedelta(seconds=delay),
                last_error=error.message,
            )
            logger.warning(
                "Job %s attempt %s/%s failed (%s); retrying in %.1fs",
                job.id,
                job.attempts,
                job.max_attempts,
                error.message,
                delay,
            )
            return requeued
        return await self._fail_job(
            job,
            f"{error.message} (gave up after {job.attempts} attempts)",
            from_statuses=(SUBMITTED,),
        )

    async def recover_stalled(self, older_than: timedelta | None = None, *, limit: int = 100) -> int:
        """Requeue jobs whose worker died mid-submit."""
        lease = older_than if older_than is not None else timedelta(seconds=self.submit_lease_seconds)
        now = self.clock()
        stalled = await self.jobs.list_stalled(now - lease, limit=limit)
        recovered = 0
        for job in stalled:
            with application_log_context(job.application_id):
                if job.attempts < job.max_attempts:
                    moved = await self.jobs.transition(
                        job.id,
                        (SUBMITTED,),
                        QUEUED,
                        not_before=now,
                        last_error="Submission lease expired",
                    )
                else:
                    moved = await self._fail_job(
                        job,
                        "Submission lease expired with no attempts left",
                        from_statuses=(SUBMITTED,),
                    )
                if moved is not None:
                    recovered += 1
                    logger.warning("Recovered stalled job %s -> %s", job.id, moved.status)
        if recovered and self.wakeup is not None:
            self.wakeup()
        return recovered

    # Webhook path

    async def complete(self, job_id: UUID, provider_document_ref: str | None) -> SigningJob:
        job = await self.status(job_id)
        with application_log_context(job.application_id):
            completed = await self.jobs.transition(
                job.id,
                (AWAITING_CALLBACK,),
                COMPLETED,
                signed_document_ref=provider_document_ref or job.provider_document_id,
                completed_at=self.clock(),
                last_error=None,
            )
            if completed is None:
                current = await self.status(job_id)
                if current.status != COMPLETED:
                    if current.status in (QUEUED, SUBMITTED):
                        raise ConflictError("Signing job is not awaiting a callback yet", job=current)
                    logger.warning("Ignoring completion for job %s in %s", current.id, current.status)
                    return current
                application = await self.store.get(current.application_id)
                if application is None or application.signed_at is not None:
                    return current
                # Completed earlier but the signed output was never recorded.
                completed = current
            else:
                await self._audit(completed, "signing_job.completed", AWAITING_CALLBACK)

            await self.store.record_signed_document(
                completed.application_id,
                job_id=completed.id,
                provider_document_id=completed.provider_document_id,
                signed_document_ref=completed.signed_document_ref,
                signed_at=completed.completed_at or self.clock(),
            )
            await self.publisher.publish(
                JobCompleted(
                    job_id=completed.id,
                    application_id=completed.application_id,
                    provider_document_id=completed.provider_document_id,
                    signed_document_ref=completed.signed_document_ref,
                    occurred_at=self.clock(),
                )
            )
            logger.info("Signing job %s completed", completed.id)
            await self.engine.apply(completed.application_id, trigger="signing_completed")
            return completed

    async def fail(self, job_id: UUID, reason: str) -> SigningJob:
        job = await self.status(job_id)
        with application_log_context(job.application_id):
            failed = await self._fail_job(job, reason, from_statuses=(SUBMITTED, AWAITING_CALLBACK))
            if failed is None:
                current = await self.status(job_id)
                if current.status == QUEUED:
                    raise ConflictError("Signing job has not been submitted yet", job=current)
                logger.info("Ignoring failure for job %s already %s", current.id, current.status)
                return current
            return failed

    async def _fail_job(
        self,
        job: SigningJob,
        reason: str,
        *,
        from_statuses: Iterable[str],
    ) -> SigningJob | None:
        failed = await self.jobs.transition(
            job.id,
            tuple(from_statuses),
            FAILED,
            last_error=reason,
            failed_at=self.clock(),
        )
        if failed is None:
            return None
        await self._audit(failed, "signing_job.failed", job.status)
        await self.publisher.publish(
            JobFailed(
                job_id=failed.id,
                application_id=failed.application_id,
                reason=reason,
                attempts=failed.attempts,
                occurred_at=self.clock(),
            )
        )
        await notify_quietly(self.notifier, failed.application_id, STAFF, "signing_failed")
        logger.error("Signing job %s failed: %s", failed.id, reason)
        return failed

    async def _audit(self, job: SigningJob, action: str, old_status: str | None, *, actor_id=None) -> None:
        await self.audit.record(
            actor_id=actor_id,
            action=action,
            resource_type="signing_job",
            resource_id=str(job.id),
            old_value={"status": old_status} if old_status else None,
            new_value={
                "status": job.status,
                "application_id": str(job.application_id),
                "attempts": job.attempts,
                "last_error": job.last_error,
            },
        )
