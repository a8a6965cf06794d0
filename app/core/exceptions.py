"""Domain error taxonomy.

Each error carries the HTTP status and envelope code it maps to so the
exception handlers in :mod:`app.core.errors` stay declarative.
"""

from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    status_code: int = 400
    code: str = "bad_request"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(PipelineError):
    """Bad input; never retried."""

    status_code = 422
    code = "validation_error"


class NotFoundError(PipelineError):
    status_code = 404
    code = "not_found"


class ConflictError(PipelineError):
    """State conflict, e.g. an application already has an active signing job.

    ``job`` holds the existing job when the conflict is on the
    one-active-job rule so callers can poll it instead.
    """

    status_code = 409
    code = "conflict"

    def __init__(self, message: str, *, job: Any = None, details: dict[str, Any] | None = None) -> None:
        merged = dict(details or {})
        if job is not None:
            merged.setdefault("job_id", str(job.id))
            merged.setdefault("status", job.status)
        super().__init__(message, details=merged)
        self.job = job


class UnauthorizedError(PipelineError):
    """Webhook signature mismatch. Rendered without any detail."""

    status_code = 401
    code = "unauthorized"


class ConfigurationError(PipelineError):
    """Misconfiguration that is logged and defaulted instead of failing the flow."""

    status_code = 500
    code = "configuration_error"


class ProviderError(PipelineError):
    status_code = 502
    code = "provider_error"


class TransientProviderError(ProviderError):
    """Timeouts, connection failures, 5xx and 429 from the signing provider."""

    code = "provider_unavailable"


class PermanentProviderError(ProviderError):
    """Provider refused the request, or a signer declined / the document expired."""

    code = "provider_rejected"
