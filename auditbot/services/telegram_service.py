import html
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence

import httpx

from auditbot.logging_config import get_logger
from auditbot.services.result import Result

logger = get_logger("telegram_service")

ALLOWED_UPDATES = ["message", "callback_query"]

MAX_MESSAGE_CHARS = 4096
MAX_FIELD_CHARS = 300
MAX_NAME_CHARS = 100

# Telegram answers unknown Bot API methods with 404 "Not Found".
UNSUPPORTED_MARKERS = ("not found", "method not found", "unknown method")


class TelegramError(Exception):
    def __init__(self, message: str, error_code: Optional[int] = None, description: Optional[str] = None):
        self.message = message
        self.error_code = error_code
        self.description = description
        super().__init__(message)


@dataclass(frozen=True)
class InlineButton:
    label: str
    callback_data: str


@dataclass(frozen=True)
class Group:
    chat_id: int
    invite_link: Optional[str] = None


class TelegramService:
    """Async client for the Telegram Bot API methods the audit bot uses."""

    BASE_URL = "https://api.telegram.org/bot{token}"

    def __init__(
        self,
        bot_token: Optional[str],
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.bot_token = bot_token
        self.base_url = self.BASE_URL.format(token=bot_token) if bot_token else None
        self.timeout = timeout
        self._transport = transport

    async def _make_request(self, method: str, data: Optional[dict] = None) -> Any:
        """Call a Bot API method and return its ``result``. Raises TelegramError."""
        if not self.base_url:
            raise TelegramError("Telegram bot token not configured")

        url = f"{self.base_url}/{method}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=data or {})
        except httpx.HTTPError as e:
            logger.error(f"Telegram API error: {method}: {e}")
            raise TelegramError(f"Telegram {method} request failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {"ok": False, "error_code": response.status_code, "description": response.text[:200]}

        if not body.get("ok"):
            description = body.get("description") or ""
            error_code = body.get("error_code") or response.status_code
            logger.warning(
                f"Telegram {method} rejected",
                extra={"context": {"error_code": error_code, "description": description}},
            )
            raise TelegramError(f"Telegram {method} failed: {description}", error_code, description)

        return body.get("result")

    async def send_message(
        self,
        chat_id: int | str,
        text: str,
        parse_mode: Optional[str] = "HTML",
        disable_preview: bool = False,
        buttons: Optional[Sequence[InlineButton]] = None,
    ) -> dict:
        """Send message to Telegram chat."""
        data: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": disable_preview,
        }
        if parse_mode:
            data["parse_mode"] = parse_mode
        if buttons:
            data["reply_markup"] = build_inline_keyboard(buttons)

        return await self._make_request("sendMessage", data)

    async def answer_callback(self, callback_id: str, text: Optional[str] = None) -> bool:
        """Dismiss the loading state on the pressed button."""
        data: dict[str, Any] = {"callback_query_id": callback_id}
        if text:
            data["text"] = text
        return bool(await self._make_request("answerCallbackQuery", data))

    async def get_me(self) -> dict:
        return await self._make_request("getMe")

    async def set_webhook(self, url: str, secret_token: Optional[str] = None) -> bool:
        """Register the webhook; Telegram echoes ``secret_token`` in X-Telegram-Bot-Api-Secret-Token."""
        data: dict[str, Any] = {"url": url, "allowed_updates": ALLOWED_UPDATES}
        if secret_token:
            data["secret_token"] = secret_token
        return bool(await self._make_request("setWebhook", data))

    async def delete_webhook(self) -> bool:
        return bool(await self._make_request("deleteWebhook"))

    async def get_webhook_info(self) -> dict:
        return await self._make_request("getWebhookInfo")

    async def create_group(self, title: str, participant_ids: Sequence[int | str]) -> Result[Group]:
        """Best-effort group creation. Most bots cannot do this; never raises."""
        try:
            result = await self._make_request("createGroup", {"title": title, "user_ids": list(participant_ids)})
        except TelegramError as e:
            reason = (e.description or e.message).lower()
            if e.error_code == 404 or any(marker in reason for marker in UNSUPPORTED_MARKERS):
                logger.info(f"Group creation unsupported for this bot: {e.message}")
                return Result.unsupported(e.message)
            return Result.failure(e.message, "telegram_error")

        if not isinstance(result, dict) or "id" not in result:
            return Result.failure(f"Unexpected createGroup result: {result!r}", "bad_response")

        invite_link = result.get("invite_link")
        if not invite_link:
            try:
                invite_link = await self._make_request("exportChatInviteLink", {"chat_id": result["id"]})
            except TelegramError as e:
                logger.warning(f"Could not export invite link for group {result['id']}: {e.message}")

        return Result.success(Group(chat_id=result["id"], invite_link=invite_link))


def build_inline_keyboard(buttons: Sequence[InlineButton]) -> dict:
    """Render buttons as a single inline keyboard row, in order."""
    return {"inline_keyboard": [[{"text": b.label, "callback_data": b.callback_data} for b in buttons]]}


def build_decision_buttons(request_id: str) -> list[InlineButton]:
    """Accept / decline buttons for a pending audit request."""
    return [
        InlineButton("✅ Accept", f"accept_{request_id}"),
        InlineButton("❌ Decline", f"decline_{request_id}"),
    ]


def escape_within(value: str, limit: int) -> str:
    """HTML-escape ``value``, cutting it so the escaped text is at most ``limit`` chars."""
    escaped = html.escape(value)
    if len(escaped) <= limit:
        return escaped
    if limit <= 1:
        return ""
    parts = []
    size = 0
    for char in value:
        piece = html.escape(char)
        if size + len(piece) > limit - 1:
            break
        parts.append(piece)
        size += len(piece)
    return "".join(parts) + "…"


def format_request_message(
    project_name: str,
    contract_address: Optional[str],
    website: Optional[str],
    socials: Optional[str],
    description: Optional[str],
    requester_chat_id: Optional[int | str],
    requester_username: Optional[str],
    created_at: datetime,
    symbol: Optional[str] = None,
    blockchain: Optional[str] = None,
    email: Optional[str] = None,
) -> str:
    """Format the admin notification for a new audit request.

    Every field is clipped and the description gets whatever room is left, so
    the result always fits in one Telegram message.
    """

    def field(value: str) -> str:
        return escape_within(value, MAX_FIELD_CHARS)

    if requester_username:
        requester = f"@{field(requester_username)}"
    elif requester_chat_id is not None:
        requester = f"chat {requester_chat_id}"
    else:
        requester = "Anonymous"

    lines = [
        "🔒 <b>New Audit Request</b>",
        "",
        "📋 <b>Project Details:</b>",
        f"• Name: {escape_within(project_name, MAX_NAME_CHARS)}",
    ]
    if symbol:
        lines.append(f"• Symbol: {field(symbol)}")
    if blockchain:
        lines.append(f"• Blockchain: {field(blockchain)}")
    if contract_address:
        lines.append(f"• Contract: <code>{field(contract_address)}</code>")
    if website or socials or email:
        lines += ["", "🌐 <b>Links:</b>"]
        if website:
            lines.append(f"• Website: {field(website)}")
        if socials:
            lines.append(f"• Socials: {field(socials)}")
        if email:
            lines.append(f"• Email: {field(email)}")
    footer = [
        "",
        f"👤 <b>Requester:</b> {requester}",
        f"⏰ <b>Time:</b> {created_at.strftime('%Y-%m-%d %H:%M UTC')}",
    ]
    lines += ["", "📝 <b>Description:</b>"]

    if description:
        used = len("\n".join(lines + footer)) + 1
        lines.append(escape_within(description, MAX_MESSAGE_CHARS - used))
    else:
        lines.append("No description provided")
    return "\n".join(lines + footer)
