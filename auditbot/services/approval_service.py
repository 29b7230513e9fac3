"""Pending audit requests and the admin accept/decline protocol."""

import asyncio
import html
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from auditbot.logging_config import get_logger
from auditbot.services.ai_service import AIAssistAdapter
from auditbot.services.alert_service import alert_error
from auditbot.services.debug_log import DebugLogSink, NullDebugLog
from auditbot.services.settings_resolver import BotConfig
from auditbot.services.telegram_service import (
    MAX_NAME_CHARS,
    Group,
    TelegramError,
    TelegramService,
    build_decision_buttons,
    escape_within,
    format_request_message,
)

logger = get_logger("approval_service")

ACCEPT = "accept"
DECLINE = "decline"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_request_id() -> str:
    return secrets.token_hex(12)


class SubmissionError(Exception):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


@dataclass
class PendingApprovalRequest:
    id: str
    project_name: str
    requester_chat_id: Optional[int | str]
    contract_address: Optional[str] = None
    website: Optional[str] = None
    socials: Optional[str] = None
    description: Optional[str] = None
    requester_username: Optional[str] = None
    symbol: Optional[str] = None
    blockchain: Optional[str] = None
    email: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    group: Optional[Group] = None

    @classmethod
    def from_info(
        cls, chat_id: Optional[int | str], info: dict, username: Optional[str] = None
    ) -> "PendingApprovalRequest":
        return cls(
            id=new_request_id(),
            project_name=info["projectName"],
            requester_chat_id=chat_id,
            contract_address=info.get("contract"),
            website=info.get("website"),
            socials=info.get("socials"),
            description=info.get("description"),
            requester_username=username,
            symbol=info.get("symbol"),
            blockchain=info.get("blockchain"),
            email=info.get("email"),
        )

    @property
    def invite_link(self) -> Optional[str]:
        return self.group.invite_link if self.group else None


@dataclass(frozen=True)
class CallbackOutcome:
    status: str  # accepted, declined, not_found, forbidden, invalid
    request_id: Optional[str] = None


class PendingApprovalStore:
    """In-memory pending set shared by the submission and callback paths.

    ``claim`` hands a request to exactly one resolver; the record stays in the
    set until ``finish`` so it is visible while notifications are in flight.
    """

    def __init__(self, ttl: Optional[timedelta] = None, clock: Callable[[], datetime] = utcnow):
        self.ttl = ttl
        self._clock = clock
        self._items: dict[str, PendingApprovalRequest] = {}
        self._resolving: set[str] = set()
        self._lock = asyncio.Lock()

    def _expired(self, request: PendingApprovalRequest) -> bool:
        return self.ttl is not None and self._clock() - request.created_at > self.ttl

    async def add(self, request: PendingApprovalRequest) -> None:
        async with self._lock:
            if request.id in self._items:
                raise ValueError(f"Duplicate pending request id {request.id}")
            self._items[request.id] = request

    async def claim(self, request_id: str) -> Optional[PendingApprovalRequest]:
        async with self._lock:
            request = self._items.get(request_id)
            if request is None or request_id in self._resolving:
                return None
            if self._expired(request):
                del self._items[request_id]
                logger.info(f"Pending request {request_id} expired before a decision")
                return None
            self._resolving.add(request_id)
            return request

    async def finish(self, request_id: str) -> None:
        async with self._lock:
            self._items.pop(request_id, None)
            self._resolving.discard(request_id)

    async def discard(self, request_id: str) -> None:
        await self.finish(request_id)

    async def for_requester(self, chat_id: int | str) -> list[PendingApprovalRequest]:
        async with self._lock:
            return [
                r
                for r in self._items.values()
                if str(r.requester_chat_id) == str(chat_id) and not self._expired(r)
            ]

    async def purge_expired(self) -> int:
        async with self._lock:
            expired = [
                request_id
                for request_id, request in self._items.items()
                if request_id not in self._resolving and self._expired(request)
            ]
            for request_id in expired:
                del self._items[request_id]
        if expired:
            logger.info(f"Purged {len(expired)} expired pending requests")
        return len(expired)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._items

    def __len__(self) -> int:
        return len(self._items)


def parse_callback_data(data: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Split ``"<action>_<request id>"``; the id itself may contain underscores."""
    if not data or "_" not in data:
        return None, None
    action, _, request_id = data.partition("_")
    return action or None, request_id or None


MAX_INTRO_CHARS = 2000
DEFAULT_INTRO_TEMPLATE = (
    "Hello! This group is for the smart contract audit of {project}. "
    "Please share the contract address, network, project website and a short description "
    "so the CFG Ninja team can review the scope and timeline."
)


class ApprovalOrchestrator:
    def __init__(
        self,
        telegram: TelegramService,
        config: BotConfig,
        store: PendingApprovalStore,
        ai: Optional[AIAssistAdapter] = None,
        debug_log: Optional[DebugLogSink] = None,
    ):
        self.telegram = telegram
        self.config = config
        self.store = store
        self.ai = ai
        self.debug_log = debug_log or NullDebugLog()

    # === SUBMISSION ===

    async def submit(
        self, chat_id: Optional[int | str], info: dict, username: Optional[str] = None
    ) -> PendingApprovalRequest:
        """Register a request and notify the admin. Raises SubmissionError if the admin cannot be reached.

        ``chat_id`` is None for portal submissions without a Telegram requester;
        only the admin is contacted then.
        """
        admin_chat_id = self.config.admin_chat_id
        if not admin_chat_id:
            logger.warning("telegram_admin_user_id not configured - cannot send admin notifications")
            raise SubmissionError("Admin chat is not configured")

        request = PendingApprovalRequest.from_info(chat_id, info, username)
        await self.store.add(request)

        text = format_request_message(
            project_name=request.project_name,
            contract_address=request.contract_address,
            website=request.website,
            socials=request.socials,
            description=request.description,
            requester_chat_id=request.requester_chat_id,
            requester_username=request.requester_username,
            created_at=request.created_at,
            symbol=request.symbol,
            blockchain=request.blockchain,
            email=request.email,
        )
        try:
            await self.telegram.send_message(
                admin_chat_id, text, disable_preview=True, buttons=build_decision_buttons(request.id)
            )
        except TelegramError as e:
            await self.store.discard(request.id)
            await self.debug_log.awrite("approval.admin_notify_failed", {"request_id": request.id, "error": e.message})
            await alert_error("Audit request admin notification failed", {"request_id": request.id, "error": e.message})
            raise SubmissionError(f"Could not notify admin: {e.message}") from e

        logger.info(
            "Audit request submitted",
            extra={"context": {"request_id": request.id, "chat_id": str(chat_id), "project": request.project_name}},
        )
        await self.debug_log.awrite("approval.submitted", {"request_id": request.id, "chat_id": str(chat_id)})

        if chat_id is None:
            return request

        await self._notify(
            chat_id,
            "✅ <b>Audit Request Submitted</b>\n\n"
            f"Thank you for requesting an audit for <b>{escape_within(request.project_name, MAX_NAME_CHARS)}</b>!\n\n"
            "We've received your request and will review it shortly. "
            "You'll be contacted soon via Telegram.",
            request_id=request.id,
            role="requester",
        )

        if self.config.allow_bot_create_group and await self._try_create_group(request):
            return request

        await self._send_manual_group_instructions(request)
        return request

    async def _try_create_group(self, request: PendingApprovalRequest) -> bool:
        result = await self.telegram.create_group(
            f"Audit: {request.project_name[:MAX_NAME_CHARS]}", [self.config.admin_chat_id, request.requester_chat_id]
        )
        await self.debug_log.awrite(
            "approval.create_group",
            {"request_id": request.id, "ok": result.ok, "error_code": result.error_code, "error": result.error},
        )
        if not result.ok:
            if not result.is_unsupported:
                logger.warning(f"Group creation failed for {request.id}: {result.error}")
            return False

        request.group = result.value
        await self._notify(
            request.group.chat_id,
            "🔒 <b>Audit Discussion Group</b>\n\n"
            f"This group has been created for the audit of <b>{escape_within(request.project_name, MAX_NAME_CHARS)}</b>.\n\n"
            "📋 <b>Next Steps:</b>\n1. Share contract details\n2. Discuss scope and timeline\n3. Review audit report\n\n"
            "Feel free to ask any questions!",
            request_id=request.id,
            role="group",
        )
        if request.invite_link:
            invite = f"👥 Audit discussion group for <b>{escape_within(request.project_name, MAX_NAME_CHARS)}</b>: {request.invite_link}"
            await self._notify(request.requester_chat_id, invite, request_id=request.id, role="requester")
            await self._notify(self.config.admin_chat_id, invite, request_id=request.id, role="admin")
        return True

    async def introduction_text(self, request: PendingApprovalRequest) -> str:
        intro = DEFAULT_INTRO_TEMPLATE.format(project=request.project_name)
        if self.ai is None:
            return intro
        polished = await self.ai.generate_text(
            "Rewrite this group introduction for a smart contract audit in a friendly, concise tone. "
            "Reply with the introduction only.\n\n" + intro,
            temperature=0.3,
            max_tokens=200,
        )
        return polished or intro

    async def _send_manual_group_instructions(self, request: PendingApprovalRequest) -> None:
        intro = await self.introduction_text(request)
        admin = self.config.admin_chat_id
        admin_ref = f"@{admin}" if admin and not str(admin).lstrip("-").isdigit() else "our admin"
        await self._notify(
            request.requester_chat_id,
            "👥 <b>Next step</b>\n\n"
            f"Please create a Telegram group, add {html.escape(admin_ref)} and this bot, "
            "then paste this introduction:\n\n"
            f"<i>{escape_within(intro, MAX_INTRO_CHARS)}</i>",
            request_id=request.id,
            role="requester",
        )

    # === DECISIONS ===

    def _is_admin(self, user_id: int | str | None, chat_id: int | str | None) -> bool:
        admin = self.config.admin_chat_id
        if not admin or not str(admin).lstrip("-").isdigit():
            return True
        return admin in {str(user_id), str(chat_id)}

    async def handle_callback(
        self,
        callback_id: str,
        data: Optional[str],
        from_user_id: int | str | None = None,
        chat_id: int | str | None = None,
    ) -> CallbackOutcome:
        """Resolve an accept/decline button press. Safe to call twice for one request."""
        try:
            await self.telegram.answer_callback(callback_id)
        except TelegramError as e:
            logger.warning(f"answerCallbackQuery failed for {callback_id}: {e.message}")

        admin_chat_id = chat_id if chat_id is not None else self.config.admin_chat_id
        action, request_id = parse_callback_data(data)

        if action not in (ACCEPT, DECLINE) or not request_id:
            logger.warning(f"Unknown callback data: {data!r}")
            if admin_chat_id is not None:
                await self._notify(admin_chat_id, f"❓ Unknown action: {html.escape(str(data))}", role="admin")
            return CallbackOutcome("invalid")

        if not self._is_admin(from_user_id, chat_id):
            logger.warning(
                "Callback from non-admin ignored",
                extra={"context": {"from_user_id": str(from_user_id), "request_id": request_id}},
            )
            return CallbackOutcome("forbidden", request_id)

        request = await self.store.claim(request_id)
        if request is None:
            logger.warning(f"Callback for unknown or already handled request {request_id}")
            await self.debug_log.awrite("approval.not_found", {"request_id": request_id, "action": action})
            if admin_chat_id is not None:
                await self._notify(
                    admin_chat_id,
                    f"⚠️ Audit request <code>{html.escape(request_id)}</code> not found or already handled.",
                    request_id=request_id,
                    role="admin",
                )
            return CallbackOutcome("not_found", request_id)

        name = escape_within(request.project_name, MAX_NAME_CHARS)
        try:
            if action == ACCEPT:
                admin_text = f"✅ Audit request for <b>{name}</b> accepted."
                requester_text = (
                    f"🎉 <b>Good news!</b> Your audit request for <b>{name}</b> has been accepted. "
                    "Our team will reach out shortly."
                )
                if request.invite_link:
                    requester_text += f"\n\nJoin the discussion group: {request.invite_link}"
            else:
                admin_text = f"❌ Audit request for <b>{name}</b> declined."
                requester_text = (
                    f"Your audit request for <b>{name}</b> was declined. "
                    "You can send /request to submit updated details."
                )

            if admin_chat_id is not None:
                await self._notify(admin_chat_id, admin_text, request_id=request.id, role="admin")
            if request.requester_chat_id is not None:
                await self._notify(request.requester_chat_id, requester_text, request_id=request.id, role="requester")
        finally:
            await self.store.finish(request.id)

        status = "accepted" if action == ACCEPT else "declined"
        logger.info(f"Audit request {request.id} {status}", extra={"context": {"project": request.project_name}})
        await self.debug_log.awrite(f"approval.{status}", {"request_id": request.id})
        return CallbackOutcome(status, request.id)

    async def _notify(
        self,
        chat_id: int | str,
        text: str,
        request_id: Optional[str] = None,
        role: str = "user",
    ) -> bool:
        """Send and swallow failures; a missed notification never blocks the flow."""
        try:
            await self.telegram.send_message(chat_id, text, disable_preview=True)
            return True
        except TelegramError as e:
            logger.error(
                f"Failed to notify {role}: {e.message}",
                extra={"context": {"chat_id": str(chat_id), "request_id": request_id}},
            )
            await self.debug_log.awrite(
                "approval.notify_failed", {"role": role, "chat_id": str(chat_id), "request_id": request_id, "error": e.message}
            )
            return False
