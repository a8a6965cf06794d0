from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import ConfigurationError
from app.models.application import Application
from app.models.lender_product import LenderProduct
from app.services.document_ledger import KNOWN_DOCUMENT_TYPES

logger = logging.getLogger(__name__)


# Minimum document sets for applications that picked a category but no
# specific lender product.
CATEGORY_DOCUMENT_REQUIREMENTS: dict[str, tuple[str, ...]] = {
    "working_capital": ("bank_statements", "tax_returns"),
    "term_loan": ("bank_statements", "tax_returns", "financial_statements"),
    "line_of_credit": ("bank_statements", "financial_statements"),
    "equipment_financing": ("bank_statements", "equipment_quote"),
    "invoice_factoring": ("bank_statements", "accounts_receivable", "invoice_samples"),
    "purchase_order_financing": ("bank_statements", "supplier_agreement"),
    "asset_based_lending": ("bank_statements", "balance_sheet", "accounts_receivable"),
    "sba_loan": (
        "bank_statements",
        "tax_returns",
        "financial_statements",
        "personal_financial_statement",
        "business_license",
    ),
}


_CATEGORY_ALIASES = {"business_line_of_credit": "line_of_credit"}


def normalize_category(value: str) -> str:
    """Fold display names like "Asset-Based Lending" onto catalog keys."""
    key = value.strip().lower().replace("-", "_").replace(" ", "_")
    return _CATEGORY_ALIASES.get(key, key)


class ProductCatalog(ABC):
    @abstractmethod
    async def required_documents(self, application_id: UUID) -> set[str] | None:
        """Configured document types, or ``None`` when nothing is selected."""
        raise NotImplementedError


class SqlProductCatalog(ProductCatalog):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def required_documents(self, application_id: UUID) -> set[str] | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Application.lender_product_id, Application.product_category).where(
                    Application.id == application_id
                )
            )
            row = result.first()
            if row is None:
                return None
            if row.lender_product_id is not None:
                product = await session.get(LenderProduct, row.lender_product_id)
                if product is not None:
                    return set(product.required_documents or [])
        if row.product_category:
            configured = CATEGORY_DOCUMENT_REQUIREMENTS.get(normalize_category(row.product_category))
            if configured is not None:
                return set(configured)
        return None


class DocumentRequirementResolver:
    def __init__(self, catalog: ProductCatalog, default_types: Iterable[str]) -> None:
        defaults = frozenset(t for t in default_types if t in KNOWN_DOCUMENT_TYPES)
        if not defaults:
            raise ConfigurationError("Default required document set is empty")
        self._catalog = catalog
        self.default_types = defaults

    async def required_types(self, application_id: UUID) -> frozenset[str]:
        configured = await self._catalog.required_documents(application_id)
        if configured is None:
            return self.default_types

        unknown = sorted(t for t in configured if t not in KNOWN_DOCUMENT_TYPES)
        if unknown:
            logger.warning(
                "Dropping unknown document types for application %s: %s",
                application_id,
                ", ".join(unknown),
            )
        known = frozenset(t for t in configured if t in KNOWN_DOCUMENT_TYPES)
        if not known:
            error = ConfigurationError(
                "Lender product has no required documents configured",
                details={"application_id": str(application_id)},
            )
            logger.error("%s; falling back to %s", error.message, sorted(self.default_types))
            return self.default_types
        return known
