from auditbot.schemas.admin import AdminResponse, BotStatusResponse, DebugLogResponse, WebhookStartRequest
from auditbot.schemas.audit_request import (
    AuditRequestCreate,
    AuditRequestResponse,
    BotInfoResponse,
    TelegramLinkResponse,
)
from auditbot.schemas.telegram import TelegramUpdate, WebhookAck

__all__ = [
    "AdminResponse",
    "AuditRequestCreate",
    "AuditRequestResponse",
    "BotInfoResponse",
    "BotStatusResponse",
    "DebugLogResponse",
    "TelegramLinkResponse",
    "TelegramUpdate",
    "WebhookAck",
    "WebhookStartRequest",
]
