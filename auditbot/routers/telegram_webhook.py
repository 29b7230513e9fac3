import hmac
import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from auditbot.dependencies import BotRuntime, get_runtime
from auditbot.logging_config import get_logger
from auditbot.schemas.telegram import TelegramUpdate, WebhookAck

logger = get_logger("telegram_webhook")

router = APIRouter()


async def parse_telegram_update(request: Request) -> Optional[dict]:
    """
    Parse Telegram update with tolerant decoding to avoid utf-8 crashes.
    Returns dict or None.
    """
    try:
        return await request.json()
    except Exception as e:
        logger.warning(f"Standard request.json() failed: {e}, fallback decoding")

    raw = await request.body()
    for enc in ("utf-8", "latin-1"):
        try:
            decoded = raw.decode(enc, errors="replace")
            return json.loads(decoded)
        except ValueError:
            continue

    logger.error("Failed to decode Telegram webhook payload after fallbacks")
    return None


def verify_webhook_secret(
    request: Request,
    secret_header: Optional[str] = Header(default=None, alias="X-Telegram-Bot-Api-Secret-Token"),
) -> None:
    """Reject updates whose secret token does not match TELEGRAM_WEBHOOK_SECRET."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        return
    config = runtime.config
    if not config.require_webhook_secret or not config.webhook_secret:
        return
    if not secret_header or not hmac.compare_digest(secret_header, config.webhook_secret):
        logger.warning("Rejected Telegram webhook with invalid secret token")
        raise HTTPException(status_code=403, detail="Forbidden: invalid webhook token")


@router.post("/telegram-webhook", response_model=WebhookAck, dependencies=[Depends(verify_webhook_secret)])
async def handle_telegram_webhook(request: Request, runtime: BotRuntime = Depends(get_runtime)):
    """
    Handle Telegram webhook updates:
    - Messages -> conversation flow (/start, /request, /contact, free text)
    - Callback queries (accept/decline buttons) -> approval flow

    Always acknowledges so Telegram does not redeliver; errors go to logs.
    """
    try:
        body = await parse_telegram_update(request)
        if not isinstance(body, dict):
            logger.warning("Ignoring non-object Telegram payload")
            return WebhookAck()

        update = TelegramUpdate(**body)
        result = await runtime.dispatcher.dispatch(update)
        logger.debug(f"Update {update.update_id} dispatched: {result}")
    except Exception as e:
        logger.error(f"Telegram webhook error: {e}", exc_info=True)

    return WebhookAck()


# Path used by the audit portal deployment
@router.post(
    "/api/audit-request/webhook", response_model=WebhookAck, dependencies=[Depends(verify_webhook_secret)]
)
async def handle_audit_request_webhook(request: Request, runtime: BotRuntime = Depends(get_runtime)):
    return await handle_telegram_webhook(request, runtime)
