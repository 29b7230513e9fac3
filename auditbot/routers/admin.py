"""Operator endpoints: webhook management, settings reload, debug log tail."""

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from auditbot.dependencies import BotRuntime, get_runtime
from auditbot.logging_config import get_logger
from auditbot.schemas.admin import AdminResponse, BotStatusResponse, DebugLogResponse, WebhookStartRequest
from auditbot.services.telegram_service import TelegramError

logger = get_logger("admin")

router = APIRouter(tags=["admin"])

MAX_LOG_LINES = 1000


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


def require_admin(
    authorization: Optional[str] = Header(default=None),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    runtime: BotRuntime = Depends(get_runtime),
) -> None:
    expected = runtime.config.admin_token if runtime.config else None
    if not expected:
        raise HTTPException(status_code=500, detail="admin_token not configured")
    provided = _bearer(authorization) or x_admin_token
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


@router.get("/api/telegram/status", response_model=BotStatusResponse)
async def telegram_status(runtime: BotRuntime = Depends(get_runtime)):
    try:
        bot = await runtime.telegram.get_me()
    except TelegramError as e:
        raise HTTPException(status_code=502, detail=e.message)

    webhook = None
    try:
        webhook = await runtime.telegram.get_webhook_info()
    except TelegramError as e:
        logger.info(f"getWebhookInfo failed: {e.message}")

    return BotStatusResponse(
        success=True,
        bot=bot,
        webhook=webhook,
        pending_requests=len(runtime.pending_store),
        active_conversations=len(runtime.conversation_store),
    )


@router.post("/api/telegram/start", response_model=AdminResponse, dependencies=[Depends(require_admin)])
async def start_webhook(body: Optional[WebhookStartRequest] = None, runtime: BotRuntime = Depends(get_runtime)):
    url = (body.url if body else None) or runtime.config.webhook_url
    if not url and runtime.settings.public_base_url:
        url = f"{runtime.settings.public_base_url.rstrip('/')}/telegram-webhook"
    if not url:
        raise HTTPException(status_code=400, detail="No webhook URL provided")
    try:
        result = await runtime.telegram.set_webhook(url, secret_token=runtime.config.webhook_secret)
    except TelegramError as e:
        logger.error(f"Failed to start telegram webhook: {e.message}")
        raise HTTPException(status_code=502, detail=e.message)
    logger.info(f"Telegram webhook set to {url}")
    return AdminResponse(success=True, result=result)


@router.post("/api/telegram/stop", response_model=AdminResponse, dependencies=[Depends(require_admin)])
async def stop_webhook(runtime: BotRuntime = Depends(get_runtime)):
    try:
        result = await runtime.telegram.delete_webhook()
    except TelegramError as e:
        logger.error(f"Failed to stop telegram webhook: {e.message}")
        raise HTTPException(status_code=502, detail=e.message)
    return AdminResponse(success=True, result=result)


@router.post("/api/telegram/reload", response_model=AdminResponse, dependencies=[Depends(require_admin)])
async def reload_settings(runtime: BotRuntime = Depends(get_runtime)):
    config = runtime.reload()
    return AdminResponse(
        success=True,
        result={
            "bot_token": config.has_bot_token,
            "admin": bool(config.admin_chat_id),
            "allow_ai_replies": config.allow_ai_replies,
            "allow_bot_create_group": config.allow_bot_create_group,
        },
    )


@router.get("/api/debug/telegram-logs", response_model=DebugLogResponse, dependencies=[Depends(require_admin)])
async def telegram_logs(
    lines: int = Query(default=200, ge=1),
    runtime: BotRuntime = Depends(get_runtime),
):
    try:
        tail = await asyncio.to_thread(runtime.debug_log.tail, min(MAX_LOG_LINES, lines))
    except OSError as e:
        logger.error(f"Error reading telegram debug logs: {e}")
        raise HTTPException(status_code=500, detail="Failed to read logs")
    return DebugLogResponse(success=True, lines=tail)
