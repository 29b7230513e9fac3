from typing import Any, Optional

from pydantic import BaseModel


class WebhookStartRequest(BaseModel):
    url: Optional[str] = None


class AdminResponse(BaseModel):
    success: bool
    result: Optional[Any] = None
    error: Optional[str] = None


class BotStatusResponse(BaseModel):
    success: bool
    bot: Optional[dict] = None
    webhook: Optional[dict] = None
    pending_requests: int = 0
    active_conversations: int = 0


class DebugLogResponse(BaseModel):
    success: bool
    lines: list[str]
