from dataclasses import dataclass
from typing import Optional

from auditbot.logging_config import get_logger
from auditbot.schemas.telegram import TelegramUpdate
from auditbot.services.alert_service import alert_error
from auditbot.services.approval_service import ApprovalOrchestrator
from auditbot.services.conversation_service import ConversationService
from auditbot.services.debug_log import DebugLogSink, NullDebugLog, preview
from auditbot.services.telegram_service import TelegramError, TelegramService

logger = get_logger("dispatcher")

FALLBACK_ERROR_TEXT = "⚠️ Something went wrong while processing your message. Please try again in a moment."


@dataclass(frozen=True)
class DispatchResult:
    kind: str  # message, callback, ignored
    handled: bool
    detail: Optional[str] = None


class UpdateDispatcher:
    """Routes one webhook update to the conversation flow or the approval flow.

    Never raises: failures are logged, alerted and answered with a fallback
    message where a chat is known.
    """

    def __init__(
        self,
        conversations: ConversationService,
        orchestrator: ApprovalOrchestrator,
        telegram: TelegramService,
        debug_log: Optional[DebugLogSink] = None,
    ):
        self.conversations = conversations
        self.orchestrator = orchestrator
        self.telegram = telegram
        self.debug_log = debug_log or NullDebugLog()

    async def dispatch(self, update: TelegramUpdate) -> DispatchResult:
        if update.callback_query:
            return await self._dispatch_callback(update)
        if update.message:
            return await self._dispatch_message(update)
        return DispatchResult("ignored", True, "No actionable content")

    async def _dispatch_message(self, update: TelegramUpdate) -> DispatchResult:
        message = update.message
        chat_id = message.chat.id
        if message.from_user and message.from_user.is_bot:
            return DispatchResult("ignored", True, "Ignoring bot message")

        username = message.from_user.username if message.from_user else None
        await self.debug_log.awrite(
            "update.message",
            {"update_id": update.update_id, "chat_id": chat_id, "text": preview(message.text or "", 100)},
        )
        try:
            action = await self.conversations.handle_message(chat_id, message.text, username)
            return DispatchResult("message", True, action)
        except Exception as e:
            await self._report_failure("message", update.update_id, chat_id, e)
            await self._send_fallback(chat_id)
            return DispatchResult("message", False, str(e))

    async def _dispatch_callback(self, update: TelegramUpdate) -> DispatchResult:
        callback = update.callback_query
        chat_id = callback.message.chat.id if callback.message else None
        await self.debug_log.awrite(
            "update.callback",
            {"update_id": update.update_id, "chat_id": chat_id, "data": callback.data},
        )
        try:
            outcome = await self.orchestrator.handle_callback(
                callback.id, callback.data, from_user_id=callback.from_user.id, chat_id=chat_id
            )
            return DispatchResult("callback", outcome.status in ("accepted", "declined"), outcome.status)
        except Exception as e:
            await self._report_failure("callback", update.update_id, chat_id, e)
            return DispatchResult("callback", False, str(e))

    async def _report_failure(self, kind: str, update_id: int, chat_id, error: Exception) -> None:
        context = {"update_id": update_id, "chat_id": str(chat_id), "error": str(error)}
        logger.error(f"Failed to process {kind} update", extra={"context": context}, exc_info=True)
        await self.debug_log.awrite(f"update.{kind}_failed", context)
        await alert_error(f"Telegram {kind} processing failed", context)

    async def _send_fallback(self, chat_id) -> None:
        try:
            await self.telegram.send_message(chat_id, FALLBACK_ERROR_TEXT, parse_mode=None)
        except TelegramError as e:
            logger.warning(f"Fallback message to chat {chat_id} failed: {e.message}")
