from __future__ import annotations

import logging
from dataclasses import dataclass

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.settings import Settings
from app.services.applications import ApplicationStore, SqlApplicationStore
from app.services.audit import SqlAuditRecorder
from app.services.document_ledger import SqlDocumentLedger
from app.services.events import EventPublisher, LoggingEventPublisher, RedisEventPublisher
from app.services.locks import ApplicationLocks, LocalApplicationLocks, RedisApplicationLocks
from app.services.notifications import HttpNotificationSender, LoggingNotificationSender, NotificationSender
from app.services.pipeline_stage import PipelineStageEngine
from app.services.requirements import DocumentRequirementResolver, SqlProductCatalog
from app.services.signing.jobs import SigningJobStore, SqlSigningJobStore
from app.services.signing.orchestrator import SigningJobOrchestrator
from app.services.signing.provider import SandboxSigningProvider, SigningProvider, SignNowProvider
from app.services.signing.worker import SigningWorker
from app.services.webhooks.events import SqlWebhookEventStore
from app.services.webhooks.ingestion import WebhookIngestion

logger = logging.getLogger(__name__)


@dataclass
class PipelineServices:
    store: ApplicationStore
    jobs: SigningJobStore
    engine: PipelineStageEngine
    orchestrator: SigningJobOrchestrator
    ingestion: WebhookIngestion
    provider: SigningProvider
    worker: SigningWorker | None = None

    async def aclose(self) -> None:
        if self.worker is not None:
            await self.worker.stop()
        await self.provider.aclose()


def build_locks(settings: Settings, redis: Redis | None) -> ApplicationLocks:
    if settings.application_lock_backend == "redis":
        if redis is None:
            raise ValueError("APPLICATION_LOCK_BACKEND=redis requires a redis client")
        return RedisApplicationLocks(redis, timeout_seconds=settings.application_lock_timeout_seconds)
    return LocalApplicationLocks()


def build_publisher(settings: Settings, redis: Redis | None) -> EventPublisher:
    if settings.event_publisher == "redis":
        if redis is None:
            raise ValueError("EVENT_PUBLISHER=redis requires a redis client")
        return RedisEventPublisher(redis)
    return LoggingEventPublisher()


def build_notifier(settings: Settings) -> NotificationSender:
    if settings.notification_webhook_url:
        return HttpNotificationSender(settings.notification_webhook_url)
    return LoggingNotificationSender()


def build_provider(settings: Settings) -> SigningProvider:
    if not settings.signing_provider_api_key:
        logger.warning("SIGNING_PROVIDER_API_KEY is not set; using the sandbox signing provider")
        return SandboxSigningProvider()
    return SignNowProvider(
        base_url=settings.signing_provider_base_url,
        api_key=settings.signing_provider_api_key,
        timeout=settings.signing_provider_timeout_seconds,
    )


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    redis: Redis | None = None,
    provider: SigningProvider | None = None,
) -> PipelineServices:
    locks = build_locks(settings, redis)
    publisher = build_publisher(settings, redis)
    notifier = build_notifier(settings)
    audit = SqlAuditRecorder(session_factory)
    store = SqlApplicationStore(session_factory)
    jobs = SqlSigningJobStore(session_factory)
    provider = provider or build_provider(settings)

    engine = PipelineStageEngine(
        store=store,
        ledger=SqlDocumentLedger(session_factory),
        resolver=DocumentRequirementResolver(
            SqlProductCatalog(session_factory),
            settings.default_required_documents,
        ),
        locks=locks,
        publisher=publisher,
        notifier=notifier,
        audit=audit,
    )
    orchestrator = SigningJobOrchestrator(
        jobs=jobs,
        store=store,
        engine=engine,
        provider=provider,
        locks=locks,
        publisher=publisher,
        notifier=notifier,
        audit=audit,
        template_ref=settings.signing_template_ref,
        eligible_stages=settings.signing_eligible_stages,
        max_attempts=settings.signing_max_attempts,
        backoff_base_seconds=settings.signing_backoff_base_seconds,
        backoff_max_seconds=settings.signing_backoff_max_seconds,
        submit_timeout_seconds=settings.signing_provider_timeout_seconds,
        submit_lease_seconds=settings.signing_submit_lease_seconds,
    )
    ingestion = WebhookIngestion(
        events=SqlWebhookEventStore(session_factory),
        jobs=jobs,
        orchestrator=orchestrator,
        secret=settings.webhook_secret,
        reconcile_grace_seconds=settings.webhook_reconcile_grace_seconds,
        max_attempts=settings.webhook_max_attempts,
    )
    worker = SigningWorker(
        orchestrator,
        concurrency=settings.signing_worker_concurrency,
        poll_seconds=settings.signing_worker_poll_seconds,
        maintenance_seconds=settings.signing_worker_maintenance_seconds,
        maintenance=(ingestion.reconcile,),
    )
    return PipelineServices(
        store=store,
        jobs=jobs,
        engine=engine,
        orchestrator=orchestrator,
        ingestion=ingestion,
        provider=provider,
        worker=worker,
    )


def build_default_services() -> PipelineServices:
    from app.core.settings import settings
    from app.db.session import AsyncSessionLocal
    from app.utils.redis_client import get_redis_client

    redis = None
    if "redis" in (settings.application_lock_backend, settings.event_publisher):
        redis = get_redis_client()
    return build_services(settings, AsyncSessionLocal, redis=redis)
