from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import ConflictError
from app.models.signing_job import SigningJob
from app.schemas.signing import ACTIVE_STATUSES, SigningJobStatus


class SigningJobStore(ABC):
    """Durable signing jobs. Every status change is a compare-and-set."""

    @abstractmethod
    async def create(
        self,
        application_id: UUID,
        *,
        template_ref: str,
        max_attempts: int,
        not_before: datetime,
        requested_by: UUID | None = None,
        field_map_digest: str | None = None,
    ) -> SigningJob:
        """Insert a queued job; ``ConflictError`` carrying the active job if one exists."""
        raise NotImplementedError

    @abstractmethod
    async def get(self, job_id: UUID) -> SigningJob | None:
        raise NotImplementedError

    @abstractmethod
    async def get_active_for_application(self, application_id: UUID) -> SigningJob | None:
        raise NotImplementedError

    @abstractmethod
    async def get_by_provider_document(self, provider_document_id: str) -> SigningJob | None:
        raise NotImplementedError

    @abstractmethod
    async def transition(
        self,
        job_id: UUID,
        from_statuses: Iterable[str],
        to_status: str,
        **values: Any,
    ) -> SigningJob | None:
        """Move the job only if its status is one of ``from_statuses``."""
        raise NotImplementedError

    @abstractmethod
    async def claim(self, job_id: UUID, *, now: datetime) -> SigningJob | None:
        """queued -> submitted with ``attempts + 1``; ``None`` if someone else won."""
        raise NotImplementedError

    @abstractmethod
    async def list_due(self, now: datetime, *, limit: int) -> list[SigningJob]:
        raise NotImplementedError

    @abstractmethod
    async def list_stalled(self, submitted_before: datetime, *, limit: int) -> list[SigningJob]:
        raise NotImplementedError


class SqlSigningJobStore(SigningJobStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(
        self,
        application_id: UUID,
        *,
        template_ref: str,
        max_attempts: int,
        not_before: datetime,
        requested_by: UUID | None = None,
        field_map_digest: str | None = None,
    ) -> SigningJob:
        job = SigningJob(
            application_id=application_id,
            status=SigningJobStatus.QUEUED.value,
            attempts=0,
            max_attempts=max_attempts,
            not_before=not_before,
            template_ref=template_ref,
            requested_by=requested_by,
            field_map_digest=field_map_digest,
        )
        async with self._session_factory() as session:
            session.add(job)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                existing = await self.get_active_for_application(application_id)
                raise ConflictError(
                    "Application already has an active signing job",
                    job=existing,
                ) from exc
            await session.refresh(job)
        return job

    async def get(self, job_id: UUID) -> SigningJob | None:
        async with self._session_factory() as session:
            return await session.get(SigningJob, job_id)

    async def get_active_for_application(self, application_id: UUID) -> SigningJob | None:
        stmt = select(SigningJob).where(
            SigningJob.application_id == application_id,
            SigningJob.status.in_(ACTIVE_STATUSES),
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalars().first()

    async def get_by_provider_document(self, provider_document_id: str) -> SigningJob | None:
        stmt = (
            select(SigningJob)
            .where(SigningJob.provider_document_id == provider_document_id)
            .order_by(SigningJob.created_at.desc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalars().first()

    async def _update_returning(self, stmt) -> SigningJob | None:
        async with self._session_factory() as session:
            result = await session.execute(stmt.returning(SigningJob).execution_options(synchronize_session=False))
            job = result.scalars().first()
            await session.commit()
        return job

    async def transition(
        self,
        job_id: UUID,
        from_statuses: Iterable[str],
        to_status: str,
        **values: Any,
    ) -> SigningJob | None:
        stmt = (
            update(SigningJob)
            .where(SigningJob.id == job_id, SigningJob.status.in_(list(from_statuses)))
            .values(status=to_status, **values)
        )
        return await self._update_returning(stmt)

    async def claim(self, job_id: UUID, *, now: datetime) -> SigningJob | None:
        stmt = (
            update(SigningJob)
            .where(
                SigningJob.id == job_id,
                SigningJob.status == SigningJobStatus.QUEUED.value,
                SigningJob.not_before <= now,
            )
            .values(
                status=SigningJobStatus.SUBMITTED.value,
                attempts=SigningJob.attempts + 1,
                submitted_at=now,
            )
        )
        return await self._update_returning(stmt)

    async def list_due(self, now: datetime, *, limit: int) -> list[SigningJob]:
        stmt = (
            select(SigningJob)
            .where(
                SigningJob.status == SigningJobStatus.QUEUED.value,
                SigningJob.not_before <= now,
            )
            .order_by(SigningJob.not_before, SigningJob.created_at)
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_stalled(self, submitted_before: datetime, *, limit: int) -> list[SigningJob]:
        stmt = (
            select(SigningJob)
            .where(
                SigningJob.status == SigningJobStatus.SUBMITTED.value,
                SigningJob.submitted_at < submitted_before,
            )
            .order_by(SigningJob.submitted_at)
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())
