"""Signing provider adapters.

``SignNowProvider`` copies a template into a new document and prefills it
with the smart field map. ``SandboxSigningProvider`` stands in when no API
key is configured so local environments can run the full job lifecycle.
"""

from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Mapping

import httpx

from app.core.exceptions import PermanentProviderError, TransientProviderError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


@dataclass(frozen=True, slots=True)
class ProviderSubmission:
    provider_document_id: str
    signing_url: str | None = None


class SigningProvider(ABC):
    name: str = "provider"

    @abstractmethod
    async def submit(self, template_ref: str, field_map: Mapping[str, str]) -> ProviderSubmission:
        """Create a document from ``template_ref`` prefilled with ``field_map``.

        Raises ``TransientProviderError`` for anything worth retrying and
        ``PermanentProviderError`` when the provider refused the request.
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict):
        for key in ("error", "message", "errors"):
            if payload.get(key):
                return str(payload[key])[:200]
    return str(payload)[:200]


def raise_for_provider_status(response: httpx.Response, action: str) -> None:
    if response.is_success:
        return
    detail = _error_detail(response)
    message = f"{action} failed with HTTP {response.status_code}: {detail}"
    if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS_CODES:
        raise TransientProviderError(message, details={"status_code": response.status_code})
    raise PermanentProviderError(message, details={"status_code": response.status_code})


class SignNowProvider(SigningProvider):
    name = "signnow"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout: float,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)
        self._api_key = api_key

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "application/json",
        }

    async def _request(self, method: str, url: str, action: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"{action} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(f"{action} could not reach provider: {exc.__class__.__name__}") from exc
        raise_for_provider_status(response, action)
        return response

    async def submit(self, template_ref: str, field_map: Mapping[str, str]) -> ProviderSubmission:
        copied = await self._request(
            "POST",
            f"/template/{template_ref}/copy",
            "Template copy",
            json={"document_name": f"Loan application {field_map.get('application_id', '')}".strip()},
        )
        document_id = str(copied.json().get("id") or "")
        if not document_id:
            raise TransientProviderError("Template copy returned no document id")

        prefill = [
            {"field_name": name, "prefilled_text": value}
            for name, value in field_map.items()
            if value
        ]
        await self._request(
            "PUT",
            f"/v2/documents/{document_id}/prefill-texts",
            "Field prefill",
            json={"fields": prefill},
        )
        logger.info("Provider document %s created from template %s", document_id, template_ref)
        return ProviderSubmission(provider_document_id=document_id)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class SandboxSigningProvider(SigningProvider):
    """Accepts every submission and derives a stable document id from it."""

    name = "sandbox"

    async def submit(self, template_ref: str, field_map: Mapping[str, str]) -> ProviderSubmission:
        seed = f"{template_ref}:{field_map.get('application_id', '')}"
        document_id = f"sandbox-{hashlib.sha256(seed.encode('utf-8')).hexdigest()[:24]}"
        logger.warning("Sandbox signing provider accepted %s; no document was sent", document_id)
        return ProviderSubmission(provider_document_id=document_id, signing_url=None)
