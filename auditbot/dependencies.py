"""Wiring of the bot components.

``BotRuntime.build`` resolves settings once into a ``BotConfig`` snapshot and
hands it to every component. ``reload`` re-resolves settings and rebuilds the
components; conversation and pending-request stores survive the rebuild.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import HTTPException, Request

from auditbot.config import Settings
from auditbot.logging_config import get_logger
from auditbot.services.ai_service import AIAssistAdapter, default_provider_factory
from auditbot.services.approval_service import ApprovalOrchestrator, PendingApprovalStore
from auditbot.services.conversation_service import ConversationService, ConversationStore
from auditbot.services.debug_log import DebugLogSink, NullDebugLog
from auditbot.services.dispatcher import UpdateDispatcher
from auditbot.services.keyed_lock import KeyedLock
from auditbot.services.settings_resolver import BotConfig, SettingsResolver
from auditbot.services.telegram_service import TelegramService

logger = get_logger("dependencies")


@dataclass
class BotRuntime:
    settings: Settings
    resolver: SettingsResolver
    debug_log: DebugLogSink
    conversation_store: ConversationStore
    pending_store: PendingApprovalStore
    locks: KeyedLock
    config: Optional[BotConfig] = None
    telegram: Optional[TelegramService] = None
    ai: Optional[AIAssistAdapter] = None
    orchestrator: Optional[ApprovalOrchestrator] = None
    conversations: Optional[ConversationService] = None
    dispatcher: Optional[UpdateDispatcher] = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        resolver: SettingsResolver,
        debug_log: Optional[DebugLogSink] = None,
    ) -> "BotRuntime":
        if debug_log is None:
            if settings.telegram_debug_log_path:
                debug_log = DebugLogSink(settings.telegram_debug_log_path, settings.debug_log_max_bytes)
            else:
                debug_log = NullDebugLog()

        runtime = cls(
            settings=settings,
            resolver=resolver,
            debug_log=debug_log,
            conversation_store=ConversationStore(ttl=timedelta(minutes=settings.conversation_ttl_minutes)),
            pending_store=PendingApprovalStore(ttl=timedelta(hours=settings.pending_request_ttl_hours)),
            locks=KeyedLock(),
        )
        runtime.wire()
        return runtime

    def wire(self, telegram: Optional[TelegramService] = None, ai: Optional[AIAssistAdapter] = None) -> None:
        self.config = self.resolver.snapshot()
        if not self.config.has_bot_token:
            logger.warning("telegram_bot_token not configured - audit requests disabled")
        if not self.config.admin_chat_id:
            logger.warning("telegram_admin_user_id not configured - cannot send admin notifications")

        self.telegram = telegram or TelegramService(self.config.bot_token)
        self.ai = ai or AIAssistAdapter(
            self.resolver,
            debug_log=self.debug_log,
            provider_factory=default_provider_factory(self.settings.ai_timeout_seconds),
        )
        self.orchestrator = ApprovalOrchestrator(
            self.telegram, self.config, self.pending_store, ai=self.ai, debug_log=self.debug_log
        )
        self.conversations = ConversationService(
            self.telegram, self.config, self.conversation_store, self.orchestrator, ai=self.ai, locks=self.locks
        )
        self.dispatcher = UpdateDispatcher(self.conversations, self.orchestrator, self.telegram, self.debug_log)
        logger.info(
            "Bot runtime configured",
            extra={
                "context": {
                    "bot_token": "configured" if self.config.has_bot_token else "missing",
                    "bot_username": self.config.bot_username,
                    "admin": "configured" if self.config.admin_chat_id else "missing",
                    "allow_ai_replies": self.config.allow_ai_replies,
                    "allow_bot_create_group": self.config.allow_bot_create_group,
                }
            },
        )

    def reload(self) -> BotConfig:
        self.resolver.reload()
        self.wire()
        return self.config

    async def purge_expired(self) -> dict:
        return {
            "conversations": self.conversation_store.purge_expired(),
            "pending_requests": await self.pending_store.purge_expired(),
        }


def get_runtime(request: Request) -> BotRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Bot runtime not initialized")
    return runtime
