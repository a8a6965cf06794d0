from __future__ import annotations

from pydantic import BaseModel


class WebhookAck(BaseModel):
    event_id: str | None = None
    status: str
    duplicate: bool = False


class ReconcileResult(BaseModel):
    scanned: int = 0
    processed: int = 0
    failed: int = 0
