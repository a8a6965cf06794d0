from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, ClassVar, Union
from uuid import UUID

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.core.logging import get_audit_logger
from app.services.audit import serialize_for_audit
from app.utils.redis_client import redis_key

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "pipeline-events"


@dataclass(frozen=True, slots=True)
class StageChanged:
    name: ClassVar[str] = "stage_changed"

    application_id: UUID
    from_stage: str
    to_stage: str
    trigger: str
    reason: str
    occurred_at: datetime


@dataclass(frozen=True, slots=True)
class JobCompleted:
    name: ClassVar[str] = "signing_job_completed"

    job_id: UUID
    application_id: UUID
    provider_document_id: str | None
    signed_document_ref: str | None
    occurred_at: datetime


@dataclass(frozen=True, slots=True)
class JobFailed:
    name: ClassVar[str] = "signing_job_failed"

    job_id: UUID
    application_id: UUID
    reason: str
    attempts: int
    occurred_at: datetime


DomainEvent = Union[StageChanged, JobCompleted, JobFailed]


def event_payload(event: DomainEvent) -> dict[str, Any]:
    return {"type": event.name, **serialize_for_audit(asdict(event))}


class EventPublisher(ABC):
    @abstractmethod
    async def publish(self, event: DomainEvent) -> None:
        raise NotImplementedError


class LoggingEventPublisher(EventPublisher):
    """Writes events to the audit log stream."""

    async def publish(self, event: DomainEvent) -> None:
        get_audit_logger().info(
            "Published %s",
            event.name,
            extra={"event": event_payload(event), "application_id": str(event.application_id)},
        )


def channel_for_application(application_id) -> str:
    return redis_key(CHANNEL_PREFIX, application_id)


class RedisEventPublisher(EventPublisher):
    """Fans events out on a global channel and a per-application channel."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def publish(self, event: DomainEvent) -> None:
        message = json.dumps(event_payload(event))
        try:
            await self._redis.publish(redis_key(CHANNEL_PREFIX), message)
            await self._redis.publish(channel_for_application(event.application_id), message)
        except RedisError as exc:
            # Subscribers are advisory; state has already been committed.
            logger.warning("Event publish failed for %s: %s", event.name, exc)
