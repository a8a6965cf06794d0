from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.application import Application
from app.models.application_document import ApplicationDocument
from app.services.document_ledger import SIGNED_APPLICATION

# Columns the pipeline is allowed to write. Everything else belongs to the
# application CRUD layer.
PIPELINE_WRITABLE_FIELDS = frozenset(
    {
        "upload_bypassed",
        "sent_to_lender_at",
        "lender_decision",
        "lender_decided_at",
        "signing_job_id",
        "signing_document_id",
        "signed_document_ref",
        "signed_at",
    }
)


def _check_fields(values: dict[str, Any]) -> None:
    unknown = set(values) - PIPELINE_WRITABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields not writable by the pipeline: {', '.join(sorted(unknown))}")


class ApplicationStore(ABC):
    @abstractmethod
    async def get(self, application_id: UUID) -> Application | None:
        raise NotImplementedError

    @abstractmethod
    async def compare_and_set_stage(
        self,
        application_id: UUID,
        expected_stage: str,
        new_stage: str,
        **values: Any,
    ) -> bool:
        """Write ``new_stage`` only if the stored stage is still ``expected_stage``."""
        raise NotImplementedError

    @abstractmethod
    async def update_fields(self, application_id: UUID, **values: Any) -> None:
        raise NotImplementedError

    @abstractmethod
    async def record_signed_document(
        self,
        application_id: UUID,
        *,
        job_id: UUID,
        provider_document_id: str | None,
        signed_document_ref: str | None,
        signed_at: datetime,
    ) -> None:
        """Store the signed output on the application and in its document ledger."""
        raise NotImplementedError


class SqlApplicationStore(ApplicationStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, application_id: UUID) -> Application | None:
        async with self._session_factory() as session:
            return await session.get(Application, application_id)

    async def compare_and_set_stage(
        self,
        application_id: UUID,
        expected_stage: str,
        new_stage: str,
        **values: Any,
    ) -> bool:
        _check_fields(values)
        stmt = (
            update(Application)
            .where(Application.id == application_id, Application.stage == expected_stage)
            .values(stage=new_stage, **values)
            .returning(Application.id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            changed = result.scalar_one_or_none() is not None
            await session.commit()
        return changed

    async def update_fields(self, application_id: UUID, **values: Any) -> None:
        _check_fields(values)
        if not values:
            return
        async with self._session_factory() as session:
            await session.execute(
                update(Application).where(Application.id == application_id).values(**values)
            )
            await session.commit()

    async def record_signed_document(
        self,
        application_id: UUID,
        *,
        job_id: UUID,
        provider_document_id: str | None,
        signed_document_ref: str | None,
        signed_at: datetime,
    ) -> None:
        async with self._session_factory() as session:
            previous = await session.execute(
                select(ApplicationDocument).where(
                    ApplicationDocument.application_id == application_id,
                    ApplicationDocument.document_type == SIGNED_APPLICATION,
                    ApplicationDocument.superseded_at.is_(None),
                )
            )
            document = ApplicationDocument(
                application_id=application_id,
                document_type=SIGNED_APPLICATION,
                status="accepted",
                file_name=f"signed-application-{job_id}.pdf",
                storage_key=signed_document_ref,
            )
            session.add(document)
            await session.flush()
            for row in previous.scalars().all():
                row.superseded_at = signed_at
                row.superseded_by_id = document.id
            await session.execute(
                update(Application)
                .where(Application.id == application_id)
                .values(
                    signing_job_id=job_id,
                    signing_document_id=provider_document_id,
                    signed_document_ref=signed_document_ref,
                    signed_at=signed_at,
                )
            )
            await session.commit()
