from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.application_document import DOCUMENT_TYPES, ApplicationDocument

KNOWN_DOCUMENT_TYPES = frozenset(DOCUMENT_TYPES)
SIGNED_APPLICATION = "signed_application"


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    document_type: str
    status: str


class DocumentLedger(ABC):
    """Read-only view over an application's current documents."""

    @abstractmethod
    async def list_by_application(self, application_id: UUID) -> list[LedgerEntry]:
        raise NotImplementedError


class SqlDocumentLedger(DocumentLedger):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def list_by_application(self, application_id: UUID) -> list[LedgerEntry]:
        stmt = (
            select(ApplicationDocument.document_type, ApplicationDocument.status)
            .where(
                ApplicationDocument.application_id == application_id,
                ApplicationDocument.superseded_at.is_(None),
            )
            .order_by(ApplicationDocument.created_at, ApplicationDocument.id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.all()
        return [LedgerEntry(document_type=row.document_type, status=row.status) for row in rows]
