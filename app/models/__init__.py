from app.models.application import Application
from app.models.application_document import ApplicationDocument
from app.models.audit_log import AuditLog
from app.models.lender_product import LenderProduct
from app.models.signing_job import SigningJob
from app.models.webhook_event import WebhookEvent

__all__ = [
    "Application",
    "ApplicationDocument",
    "AuditLog",
    "LenderProduct",
    "SigningJob",
    "WebhookEvent",
]
