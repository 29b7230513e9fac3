"""Web portal endpoints: submit a request, build a bot deep link, bot info."""

import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from auditbot.dependencies import BotRuntime, get_runtime
from auditbot.logging_config import get_logger
from auditbot.schemas.audit_request import (
    AuditRequestCreate,
    AuditRequestResponse,
    BotInfoResponse,
    TelegramLinkResponse,
)
from auditbot.services.approval_service import SubmissionError
from auditbot.services.conversation_service import create_start_link
from auditbot.services.telegram_service import TelegramError

logger = get_logger("audit_request")

router = APIRouter(prefix="/api/audit-request", tags=["audit-request"])


@router.post("", response_model=AuditRequestResponse)
async def submit_audit_request(body: AuditRequestCreate, runtime: BotRuntime = Depends(get_runtime)):
    """
    Submit an audit request from the portal.

    The admin gets the usual accept/decline buttons; the requester is only
    messaged when a Telegram user id was supplied.
    """
    logger.info(
        "Processing portal audit request",
        extra={"context": {"project": body.project_name, "blockchain": body.blockchain}},
    )
    try:
        request = await runtime.orchestrator.submit(
            body.user_telegram_id, body.to_info(), body.user_telegram_username
        )
    except SubmissionError as e:
        logger.error(f"Portal audit request failed: {e.message}")
        raise HTTPException(status_code=500, detail=f"Failed to submit audit request: {e.message}")

    return AuditRequestResponse(
        success=True,
        message="Audit request submitted successfully",
        data={
            "projectName": request.project_name,
            "requestId": request.id,
            "submittedAt": request.created_at.isoformat(),
        },
    )


@router.get("/telegram-link", response_model=TelegramLinkResponse)
async def telegram_link(
    project_name: Optional[str] = Query(default=None, alias="projectName", max_length=100),
    symbol: Optional[str] = Query(default=None, max_length=300),
    blockchain: Optional[str] = Query(default=None, max_length=300),
    runtime: BotRuntime = Depends(get_runtime),
):
    payload = {
        "action": "audit_request",
        "projectName": project_name,
        "symbol": symbol,
        "blockchain": blockchain,
        "timestamp": int(time.time() * 1000),
    }
    start_fields = {"projectName": project_name, "symbol": symbol, "blockchain": blockchain}
    link = create_start_link(runtime.config.bot_username, start_fields)
    return TelegramLinkResponse(success=True, telegramLink=link, payload=payload)


@router.get("/bot-info", response_model=BotInfoResponse)
async def bot_info(runtime: BotRuntime = Depends(get_runtime)):
    try:
        bot = await runtime.telegram.get_me()
    except TelegramError as e:
        logger.error(f"Bot info error: {e.message}")
        raise HTTPException(status_code=502, detail=f"Failed to get bot info: {e.message}")
    return BotInfoResponse(success=True, bot=bot)
