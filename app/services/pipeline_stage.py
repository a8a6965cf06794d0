"""Pipeline stage computation and transitions.

The stage of an application is derived from four inputs: its current
document ledger, the upload-bypass flag, whether it has been sent to a
lender, and the lender's decision. ``compute_stage`` is the pure function
over those inputs; ``PipelineStageEngine`` loads them, applies the result
with a compare-and-set write and fans out audit entries, events and
notifications.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable
from uuid import UUID

from app.core.exceptions import ConflictError, NotFoundError
from app.core.logging import application_log_context
from app.models.application import Application
from app.schemas.pipeline import DocumentStats, DocumentStatus, LenderDecision, PipelineStage
from app.services.applications import ApplicationStore
from app.services.audit import AuditRecorder, model_snapshot
from app.services.document_ledger import DocumentLedger, LedgerEntry
from app.services.events import EventPublisher, StageChanged
from app.services.locks import ApplicationLocks
from app.services.notifications import CLIENT, STAFF, NotificationSender, notify_quietly
from app.services.requirements import DocumentRequirementResolver

logger = logging.getLogger(__name__)

# Lower rank wins when one type has several current documents.
_STATUS_RANK = {
    DocumentStatus.REJECTED.value: 0,
    DocumentStatus.PENDING.value: 1,
    DocumentStatus.ACCEPTED.value: 2,
}

_CAS_RETRIES = 2


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_status(status: str | None) -> str:
    value = (status or "").strip().lower()
    # Anything the ledger reports that we do not recognise is not yet accepted.
    return value if value in _STATUS_RANK else DocumentStatus.PENDING.value


def worst_status_by_type(entries: Iterable[LedgerEntry]) -> dict[str, str]:
    worst: dict[str, str] = {}
    for entry in entries:
        status = _normalize_status(entry.status)
        current = worst.get(entry.document_type)
        if current is None or _STATUS_RANK[status] < _STATUS_RANK[current]:
            worst[entry.document_type] = status
    return worst


def summarize_documents(entries: list[LedgerEntry], required: Iterable[str]) -> DocumentStats:
    required_set = set(required)
    counts = {status: 0 for status in _STATUS_RANK}
    for entry in entries:
        counts[_normalize_status(entry.status)] += 1
    worst = worst_status_by_type(entries)
    return DocumentStats(
        total=len(entries),
        accepted=counts[DocumentStatus.ACCEPTED.value],
        pending=counts[DocumentStatus.PENDING.value],
        rejected=counts[DocumentStatus.REJECTED.value],
        missing_types=sorted(required_set - worst.keys()),
        rejected_types=sorted(t for t in required_set if worst.get(t) == DocumentStatus.REJECTED.value),
        pending_types=sorted(t for t in required_set if worst.get(t) == DocumentStatus.PENDING.value),
        required_types=sorted(required_set),
    )


def compute_stage(
    entries: list[LedgerEntry],
    required: Iterable[str],
    *,
    upload_bypassed: bool = False,
    sent_to_lender: bool = False,
    lender_decision: str | None = None,
) -> tuple[PipelineStage, str, DocumentStats]:
    stats = summarize_documents(entries, required)

    if lender_decision == LenderDecision.ACCEPTED.value:
        return PipelineStage.ACCEPTED, "Lender accepted the application", stats
    if lender_decision == LenderDecision.DENIED.value:
        return PipelineStage.DENIED, "Lender denied the application", stats
    if sent_to_lender:
        return PipelineStage.OFF_TO_LENDER, "Awaiting lender decision", stats

    if not entries and not upload_bypassed:
        return PipelineStage.NEW, "No documents uploaded yet", stats

    problems: list[str] = []
    if stats.missing_types:
        problems.append(f"missing: {', '.join(stats.missing_types)}")
    if stats.rejected_types:
        problems.append(f"rejected: {', '.join(stats.rejected_types)}")
    if stats.pending_types:
        problems.append(f"pending review: {', '.join(stats.pending_types)}")
    if problems:
        prefix = "Upload bypassed; " if upload_bypassed and not entries else ""
        return PipelineStage.REQUIRES_DOCS, f"{prefix}Documents outstanding ({'; '.join(problems)})", stats

    return PipelineStage.IN_REVIEW, "All required documents accepted", stats


@dataclass(frozen=True, slots=True)
class StageEvaluation:
    application_id: UUID
    current_stage: PipelineStage
    suggested_stage: PipelineStage
    reason: str
    document_stats: DocumentStats
    degraded: bool = False

    @property
    def needs_update(self) -> bool:
        return self.suggested_stage != self.current_stage


@dataclass(frozen=True, slots=True)
class StageApplyResult:
    application_id: UUID
    previous_stage: PipelineStage
    current_stage: PipelineStage
    changed: bool
    reason: str
    degraded: bool = False


def _coerce_stage(value: str | None) -> PipelineStage:
    try:
        return PipelineStage(value)
    except ValueError:
        logger.warning("Unknown stored stage %r, treating as New", value)
        return PipelineStage.NEW


def _degraded_stage(current: PipelineStage) -> PipelineStage:
    if current in (PipelineStage.NEW, PipelineStage.REQUIRES_DOCS):
        return current
    return PipelineStage.REQUIRES_DOCS


OVERRIDE_AUDIT_FIELDS = ("stage", "upload_bypassed", "sent_to_lender_at", "lender_decision", "lender_decided_at")


def _lender_flag_values(stage: PipelineStage, now: datetime) -> dict:
    """Flags that keep a hand-set stage consistent with the stage inputs."""
    if stage == PipelineStage.OFF_TO_LENDER:
        return {"sent_to_lender_at": now, "lender_decision": None, "lender_decided_at": None}
    if stage in (PipelineStage.ACCEPTED, PipelineStage.DENIED):
        decision = LenderDecision.ACCEPTED if stage == PipelineStage.ACCEPTED else LenderDecision.DENIED
        return {"lender_decision": decision.value, "lender_decided_at": now}
    return {"sent_to_lender_at": None, "lender_decision": None, "lender_decided_at": None}


class PipelineStageEngine:
    def __init__(
        self,
        *,
        store: ApplicationStore,
        ledger: DocumentLedger,
        resolver: DocumentRequirementResolver,
        locks: ApplicationLocks,
        publisher: EventPublisher,
        notifier: NotificationSender,
        audit: AuditRecorder,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.resolver = resolver
        self.locks = locks
        self.publisher = publisher
        self.notifier = notifier
        self.audit = audit
        self.clock = clock

    async def _load(self, application_id: UUID) -> Application:
        application = await self.store.get(application_id)
        if application is None:
            raise NotFoundError("Application not found", details={"application_id": str(application_id)})
        return application

    async def evaluate(
        self,
        application_id: UUID,
        *,
        ignore_types: Iterable[str] = (),
    ) -> StageEvaluation:
        application = await self._load(application_id)
        return await self._evaluate_record(application, ignore_types=ignore_types)

    async def _evaluate_record(
        self,
        application: Application,
        *,
        ignore_types: Iterable[str] = (),
    ) -> StageEvaluation:
        current = _coerce_stage(application.stage)
        try:
            required = await self.resolver.required_types(application.id)
            entries = await self.ledger.list_by_application(application.id)
        except Exception as exc:
            logger.exception("Stage evaluation degraded for %s", application.id)
            suggested = _degraded_stage(current)
            if application.lender_decision or application.sent_to_lender_at:
                suggested, _, _ = compute_stage(
                    [],
                    (),
                    sent_to_lender=application.sent_to_lender_at is not None,
                    lender_decision=application.lender_decision,
                )
            return StageEvaluation(
                application_id=application.id,
                current_stage=current,
                suggested_stage=suggested,
                reason=f"Document state unavailable: {exc.__class__.__name__}",
                document_stats=DocumentStats(),
                degraded=True,
            )

        ignored = set(ignore_types)
        if ignored:
            required = frozenset(required) - ignored or self.resolver.default_types
        suggested, reason, stats = compute_stage(
            entries,
            required,
            upload_bypassed=bool(application.upload_bypassed),
            sent_to_lender=application.sent_to_lender_at is not None,
            lender_decision=application.lender_decision,
        )
        return StageEvaluation(
            application_id=application.id,
            current_stage=current,
            suggested_stage=suggested,
            reason=reason,
            document_stats=stats,
        )

    async def apply(self, application_id: UUID, *, trigger: str = "manual", actor_id=None) -> StageApplyResult:
        with application_log_context(application_id):
            async with self.locks.hold(application_id):
                return await self._apply_locked(application_id, trigger=trigger, actor_id=actor_id)

    async def _apply_locked(self, application_id: UUID, *, trigger: str, actor_id) -> StageApplyResult:
        for _ in range(_CAS_RETRIES):
            evaluation = await self.evaluate(application_id)
            if evaluation.degraded or not evaluation.needs_update:
                return StageApplyResult(
                    application_id=application_id,
                    previous_stage=evaluation.current_stage,
                    current_stage=evaluation.current_stage,
                    changed=False,
                    reason=evaluation.reason,
                    degraded=evaluation.degraded,
                )
            written = await self.store.compare_and_set_stage(
                application_id,
                evaluation.current_stage.value,
                evaluation.suggested_stage.value,
            )
            if written:
                await self._after_transition(evaluation, trigger=trigger, actor_id=actor_id)
                return StageApplyResult(
                    application_id=application_id,
                    previous_stage=evaluation.current_stage,
                    current_stage=evaluation.suggested_stage,
                    changed=True,
                    reason=evaluation.reason,
                )
            logger.info("Stage for %s changed underneath apply, re-evaluating", application_id)

        raise ConflictError(
            "Application stage is changing concurrently, retry shortly",
            details={"application_id": str(application_id)},
        )

    async def _after_transition(self, evaluation: StageEvaluation, *, trigger: str, actor_id) -> None:
        await self._record_transition(
            evaluation.application_id,
            evaluation.current_stage,
            evaluation.suggested_stage,
            trigger=trigger,
            reason=evaluation.reason,
            actor_id=actor_id,
        )
        if (
            evaluation.suggested_stage == PipelineStage.REQUIRES_DOCS
            and evaluation.document_stats.rejected_types
        ):
            await notify_quietly(self.notifier, evaluation.application_id, CLIENT, "documents_rejected")
        await notify_quietly(self.notifier, evaluation.application_id, STAFF, "stage_changed")

    async def _record_transition(
        self,
        application_id: UUID,
        from_stage: PipelineStage,
        to_stage: PipelineStage,
        *,
        trigger: str,
        reason: str,
        actor_id,
        action: str = "application.stage_changed",
        before: dict | None = None,
        changed_values: dict | None = None,
    ) -> None:
        logger.info(
            "Stage %s -> %s (%s)",
            from_stage.value,
            to_stage.value,
            trigger,
            extra={"application_id": str(application_id)},
        )
        await self.audit.record(
            actor_id=actor_id,
            action=action,
            resource_type="application",
            resource_id=str(application_id),
            old_value=before or {"stage": from_stage.value},
            new_value={**(changed_values or {}), "stage": to_stage.value, "trigger": trigger, "reason": reason},
        )
        await self.publisher.publish(
            StageChanged(
                application_id=application_id,
                from_stage=from_stage.value,
                to_stage=to_stage.value,
                trigger=trigger,
                reason=reason,
                occurred_at=self.clock(),
            )
        )

    async def bypass_upload(self, application_id: UUID, *, actor_id=None) -> StageApplyResult:
        with application_log_context(application_id):
            async with self.locks.hold(application_id):
                application = await self._load(application_id)
                if application.sent_to_lender_at is not None or application.lender_decision:
                    raise ConflictError(
                        "Application has already been sent to a lender",
                        details={"stage": application.stage},
                    )
                if not application.upload_bypassed:
                    await self.store.update_fields(application_id, upload_bypassed=True)
                    await self.audit.record(
                        actor_id=actor_id,
                        action="application.upload_bypassed",
                        resource_type="application",
                        resource_id=str(application_id),
                        old_value={"upload_bypassed": False},
                        new_value={"upload_bypassed": True},
                    )
                    await notify_quietly(self.notifier, application_id, CLIENT, "upload_bypassed")
                return await self._apply_locked(application_id, trigger="bypass_upload", actor_id=actor_id)

    async def send_to_lender(self, application_id: UUID, *, actor_id=None) -> StageApplyResult:
        with application_log_context(application_id):
            async with self.locks.hold(application_id):
                application = await self._load(application_id)
                evaluation = await self._evaluate_record(application)
                if evaluation.degraded:
                    raise ConflictError("Document state is unavailable, retry shortly")
                if application.sent_to_lender_at is not None or evaluation.suggested_stage != PipelineStage.IN_REVIEW:
                    raise ConflictError(
                        "Only applications in review can be sent to a lender",
                        details={
                            "current_stage": evaluation.current_stage.value,
                            "suggested_stage": evaluation.suggested_stage.value,
                            "reason": evaluation.reason,
                        },
                    )
                return await self._write_explicit(
                    evaluation.current_stage,
                    PipelineStage.OFF_TO_LENDER,
                    application_id,
                    trigger="send_to_lender",
                    reason="Sent to lender",
                    actor_id=actor_id,
                    values={"sent_to_lender_at": self.clock()},
                )

    async def record_lender_response(self, application_id: UUID, decision: str, *, actor_id=None) -> StageApplyResult:
        decision = LenderDecision(decision)
        target = PipelineStage.ACCEPTED if decision == LenderDecision.ACCEPTED else PipelineStage.DENIED
        with application_log_context(application_id):
            async with self.locks.hold(application_id):
                application = await self._load(application_id)
                current = _coerce_stage(application.stage)
                if application.lender_decision == decision.value and current == target:
                    return StageApplyResult(
                        application_id=application_id,
                        previous_stage=current,
                        current_stage=current,
                        changed=False,
                        reason="Lender decision already recorded",
                    )
                if application.sent_to_lender_at is None or application.lender_decision:
                    raise ConflictError(
                        "Lender decisions can only be recorded for applications off to a lender",
                        details={"current_stage": current.value},
                    )
                return await self._write_explicit(
                    current,
                    target,
                    application_id,
                    trigger="lender_response",
                    reason=f"Lender {decision.value} the application",
                    actor_id=actor_id,
                    values={"lender_decision": decision.value, "lender_decided_at": self.clock()},
                )

    async def override_stage(
        self,
        application_id: UUID,
        stage: str,
        *,
        reason: str,
        actor_id=None,
    ) -> StageApplyResult:
        target = PipelineStage(stage)
        with application_log_context(application_id):
            async with self.locks.hold(application_id):
                application = await self._load(application_id)
                current = _coerce_stage(application.stage)
                if current == target:
                    return StageApplyResult(
                        application_id=application_id,
                        previous_stage=current,
                        current_stage=current,
                        changed=False,
                        reason="Application is already in that stage",
                    )
                logger.warning(
                    "Staff override %s -> %s by %s",
                    current.value,
                    target.value,
                    actor_id,
                    extra={"application_id": str(application_id)},
                )
                return await self._write_explicit(
                    current,
                    target,
                    application_id,
                    trigger="override",
                    reason=reason,
                    actor_id=actor_id,
                    values=_lender_flag_values(target, self.clock()),
                    action="application.stage_overridden",
                    before=model_snapshot(application, include=OVERRIDE_AUDIT_FIELDS),
                )

    async def _write_explicit(
        self,
        current: PipelineStage,
        target: PipelineStage,
        application_id: UUID,
        *,
        trigger: str,
        reason: str,
        actor_id,
        values: dict,
        action: str = "application.stage_changed",
        before: dict | None = None,
    ) -> StageApplyResult:
        written = await self.store.compare_and_set_stage(application_id, current.value, target.value, **values)
        if not written:
            raise ConflictError(
                "Application stage is changing concurrently, retry shortly",
                details={"application_id": str(application_id)},
            )
        await self._record_transition(
            application_id,
            current,
            target,
            trigger=trigger,
            reason=reason,
            actor_id=actor_id,
            action=action,
            before=before,
            changed_values=values if before is not None else None,
        )
        await notify_quietly(self.notifier, application_id, STAFF, "stage_changed")
        return StageApplyResult(
            application_id=application_id,
            previous_stage=current,
            current_stage=target,
            changed=True,
            reason=reason,
        )
