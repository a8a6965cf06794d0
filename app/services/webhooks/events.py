from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.webhook_event import WebhookEvent

PENDING = "pending"
PROCESSED = "processed"
ERROR = "error"


class WebhookEventStore(ABC):
    """Durable record of every verified provider callback, unique on ``event_id``."""

    @abstractmethod
    async def record_pending(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> tuple[WebhookEvent, bool]:
        """Insert-if-absent. Returns the stored event and whether this call created it."""
        raise NotImplementedError

    @abstractmethod
    async def claim_for_retry(self, event_id: str, *, max_attempts: int) -> WebhookEvent | None:
        """error -> pending with ``attempts + 1`` while below ``max_attempts``."""
        raise NotImplementedError

    @abstractmethod
    async def mark_processed(self, event_id: str, *, processed_at: datetime) -> None:
        raise NotImplementedError

    @abstractmethod
    async def mark_error(self, event_id: str, error: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def list_for_reconcile(
        self,
        *,
        pending_before: datetime,
        max_attempts: int,
        limit: int,
    ) -> list[WebhookEvent]:
        raise NotImplementedError


class SqlWebhookEventStore(WebhookEventStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record_pending(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> tuple[WebhookEvent, bool]:
        stmt = (
            insert(WebhookEvent)
            .values(event_id=event_id, event_type=event_type, payload=payload, status=PENDING, attempts=1)
            .on_conflict_do_nothing(index_elements=[WebhookEvent.event_id])
            .returning(WebhookEvent.id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            created = result.scalar_one_or_none() is not None
            await session.commit()
            stored = await session.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
            return stored.scalar_one(), created

    async def claim_for_retry(self, event_id: str, *, max_attempts: int) -> WebhookEvent | None:
        stmt = (
            update(WebhookEvent)
            .where(
                WebhookEvent.event_id == event_id,
                WebhookEvent.status == ERROR,
                WebhookEvent.attempts < max_attempts,
            )
            .values(status=PENDING, attempts=WebhookEvent.attempts + 1)
            .returning(WebhookEvent)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            event = result.scalars().first()
            await session.commit()
        return event

    async def mark_processed(self, event_id: str, *, processed_at: datetime) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.event_id == event_id)
                .values(status=PROCESSED, processed_at=processed_at, error=None)
            )
            await session.commit()

    async def mark_error(self, event_id: str, error: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.event_id == event_id, WebhookEvent.status != PROCESSED)
                .values(status=ERROR, error=error[:2000])
            )
            await session.commit()

    async def list_for_reconcile(
        self,
        *,
        pending_before: datetime,
        max_attempts: int,
        limit: int,
    ) -> list[WebhookEvent]:
        stmt = (
            select(WebhookEvent)
            .where(
                or_(
                    (WebhookEvent.status == PENDING) & (WebhookEvent.received_at < pending_before),
                    (WebhookEvent.status == ERROR) & (WebhookEvent.attempts < max_attempts),
                )
            )
            .order_by(WebhookEvent.received_at)
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())
