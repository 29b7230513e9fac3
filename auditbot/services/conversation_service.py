"""Per-chat intake flow: /start, /request, field collection, /contact."""

import base64
import binascii
import html
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from auditbot.logging_config import chat_logger, get_logger
from auditbot.services.ai_service import AIAssistAdapter
from auditbot.services.approval_service import ApprovalOrchestrator, SubmissionError, utcnow
from auditbot.services.keyed_lock import KeyedLock
from auditbot.services.settings_resolver import BotConfig
from auditbot.services.state_machine import (
    ConversationStep,
    mark_ready,
    mark_submitted,
    revert_to_collecting,
    start_collecting,
)
from auditbot.services.telegram_service import (
    MAX_FIELD_CHARS,
    MAX_MESSAGE_CHARS,
    MAX_NAME_CHARS,
    TelegramService,
    escape_within,
)

logger = get_logger("conversation_service")

IDENTITY_SUFFIX = "\n\n🤖 CFG Ninja Assistant"

FIELD_ALIASES = {
    "project": "projectName",
    "project name": "projectName",
    "projectname": "projectName",
    "name": "projectName",
    "contract": "contract",
    "contract address": "contract",
    "address": "contract",
    "ca": "contract",
    "website": "website",
    "site": "website",
    "url": "website",
    "socials": "socials",
    "social": "socials",
    "telegram": "socials",
    "twitter": "socials",
    "x": "socials",
    "description": "description",
    "about": "description",
    "symbol": "symbol",
    "ticker": "symbol",
    "blockchain": "blockchain",
    "chain": "blockchain",
    "network": "blockchain",
    "email": "email",
    "e-mail": "email",
}

FIELD_LABELS = {
    "projectName": "Project",
    "symbol": "Symbol",
    "blockchain": "Blockchain",
    "contract": "Contract",
    "website": "Website",
    "socials": "Socials",
    "email": "Email",
    "description": "Description",
}

LABELED_LINE_RE = re.compile(r"^\s*([A-Za-z][A-Za-z -]{0,30}?)\s*:\s*(.+?)\s*$")
MAX_DESCRIPTION_CHARS = 2000
MAX_COLLECTED_CHARS = 3000
MAX_START_PARAM_CHARS = 64
# Single-letter keys keep deep links under the start parameter limit.
START_PAYLOAD_KEYS = {"projectName": "n", "symbol": "s", "blockchain": "b"}
START_PAYLOAD_FIELDS = {short: key for key, short in START_PAYLOAD_KEYS.items()}

FIELD_MAX_CHARS = {"projectName": MAX_NAME_CHARS, "description": MAX_DESCRIPTION_CHARS}


def _commands_text() -> str:
    return (
        "<b>Commands:</b>\n"
        "• /request - Request a new audit\n"
        "• /contact - Submit your request to our team\n"
        "• /status - Check audit status\n"
        "• /cancel - Cancel the current request\n"
        "• /help - Get help"
    )


GREETING_TEXT = (
    "🔒 <b>Welcome to CFG Ninja Audit Bot!</b>\n\n"
    "I can help you request smart contract audits.\n\n"
    f"{_commands_text()}\n\n"
    "Start by sending /request to begin an audit request."
)

HELP_TEXT = (
    "ℹ️ <b>Help - CFG Ninja Audit Bot</b>\n\n"
    "This bot helps you request smart contract audits and get updates.\n\n"
    f"{_commands_text()}"
)

REQUEST_FORM_TEXT = (
    "📋 <b>Audit Request Form</b>\n\n"
    "Send your project details, one per line:\n"
    "<code>Project: Acme\n"
    "Contract: 0x...\n"
    "Website: https://...\n"
    "Socials: https://t.me/...\n"
    "Description: what the contract does</code>\n\n"
    "Only the project name is required. Send /contact when you are done."
)

MISSING_PROJECT_TEXT = (
    "⚠️ I still need your <b>project name</b> before I can contact our team.\n"
    "Send it like <code>Project: Acme</code>, then /contact again."
)

NO_REQUEST_TEXT = "You have no audit request in progress. Send /request to start one."

DEFAULT_REPLY_TEXT = (
    "Thanks for your message! Our team will get back to you. "
    "Send /request to start an audit request or /help for all commands."
)

SUBMIT_FAILED_TEXT = (
    "❌ Sorry, we could not submit your request right now. Your details are saved, please try /contact again later."
)

CLIPPED_NOTE = "✂️ Some details were too long and have been shortened.\n\n"

AI_PROMPT_TEMPLATE = (
    "You are CFG Ninja's assistant for smart contract security audits. "
    "Answer the user's message in one short, friendly paragraph. "
    "If they want an audit, tell them to send /request.\n\n"
    "User message: {text}"
)


@dataclass
class ConversationState:
    chat_id: int | str
    step: ConversationStep = ConversationStep.NEW
    collected_info: dict[str, str] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def project_name(self) -> Optional[str]:
        return self.collected_info.get("projectName") or None


class ConversationStore:
    """One live state record per chat id."""

    def __init__(self, ttl: Optional[timedelta] = None, clock: Callable[[], datetime] = utcnow):
        self.ttl = ttl
        self._clock = clock
        self._states: dict[str, ConversationState] = {}

    @staticmethod
    def _key(chat_id: int | str) -> str:
        return str(chat_id)

    def _expired(self, state: ConversationState) -> bool:
        return self.ttl is not None and self._clock() - state.updated_at > self.ttl

    def get(self, chat_id: int | str) -> Optional[ConversationState]:
        key = self._key(chat_id)
        state = self._states.get(key)
        if state is not None and self._expired(state):
            del self._states[key]
            logger.info(f"Conversation for chat {chat_id} expired at step {state.step.value}")
            return None
        return state

    def put(self, state: ConversationState) -> ConversationState:
        state.updated_at = self._clock()
        self._states[self._key(state.chat_id)] = state
        return state

    def delete(self, chat_id: int | str) -> Optional[ConversationState]:
        return self._states.pop(self._key(chat_id), None)

    def purge_expired(self) -> int:
        expired = [key for key, state in self._states.items() if self._expired(state)]
        for key in expired:
            del self._states[key]
        if expired:
            logger.info(f"Purged {len(expired)} expired conversations")
        return len(expired)

    def __contains__(self, chat_id: int | str) -> bool:
        return self._key(chat_id) in self._states

    def __len__(self) -> int:
        return len(self._states)


def parse_command(text: str) -> tuple[Optional[str], str]:
    """``"/start@Bot payload"`` -> ``("start", "payload")``; plain text -> ``(None, text)``."""
    stripped = text.strip()
    if not stripped.startswith("/"):
        return None, stripped
    head, _, rest = stripped.partition(" ")
    command = head[1:].split("@", 1)[0].lower()
    return command or None, rest.strip()


def parse_fields(text: str) -> dict[str, str]:
    """Collect ``Label: value`` lines into collectedInfo keys."""
    fields: dict[str, str] = {}
    for line in text.splitlines():
        match = LABELED_LINE_RE.match(line)
        if not match:
            continue
        key = FIELD_ALIASES.get(match.group(1).strip().lower())
        if not key:
            continue
        value = match.group(2)
        if key == "socials" and key in fields:
            fields[key] = f"{fields[key]}, {value}"
        else:
            fields[key] = value
    return fields


def decode_start_payload(payload: str) -> Optional[dict]:
    if not payload:
        return None
    try:
        padded = payload + "=" * (-len(payload) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
    except (ValueError, binascii.Error, UnicodeError):
        return None
    if not isinstance(data, dict):
        return None
    return {START_PAYLOAD_FIELDS.get(key, key): value for key, value in data.items()}


def encode_start_payload(payload: dict) -> str:
    short = {START_PAYLOAD_KEYS.get(key, key): value for key, value in payload.items()}
    raw = json.dumps(short, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def create_start_link(bot_username: str, payload: dict) -> str:
    """Deep link that opens the bot with a pre-filled request.

    Telegram drops start parameters longer than 64 chars, so trailing keys are
    left out until the encoded payload fits.
    """
    items = [(key, value) for key, value in payload.items() if value not in (None, "")]
    encoded = encode_start_payload(dict(items))
    while items and len(encoded) > MAX_START_PARAM_CHARS:
        items.pop()
        encoded = encode_start_payload(dict(items))
    return f"https://t.me/{bot_username}?start={encoded}"


def clip_field(key: str, value: str) -> str:
    return value[: FIELD_MAX_CHARS.get(key, MAX_FIELD_CHARS)]


def format_collected(info: dict[str, str], limit: int = MAX_COLLECTED_CHARS) -> str:
    """Bullet list of collected fields; the description takes the room left under ``limit``."""
    lines = [
        f"• {FIELD_LABELS[key]}: {escape_within(info[key], FIELD_MAX_CHARS.get(key, MAX_FIELD_CHARS))}"
        for key in FIELD_LABELS
        if key != "description" and info.get(key)
    ]
    description = info.get("description")
    if description:
        prefix = f"• {FIELD_LABELS['description']}: "
        used = len("\n".join(lines)) + len(prefix) + (1 if lines else 0)
        lines.append(prefix + escape_within(description, max(limit - used, 0)))
    return "\n".join(lines)


class ConversationService:
    def __init__(
        self,
        telegram: TelegramService,
        config: BotConfig,
        store: ConversationStore,
        orchestrator: ApprovalOrchestrator,
        ai: Optional[AIAssistAdapter] = None,
        locks: Optional[KeyedLock] = None,
    ):
        self.telegram = telegram
        self.config = config
        self.store = store
        self.orchestrator = orchestrator
        self.ai = ai
        self.locks = locks or KeyedLock()

    async def handle_message(self, chat_id: int | str, text: Optional[str], username: Optional[str] = None) -> str:
        """Handle one inbound message. Messages from the same chat run one at a time.

        Returns a short label of what was done. TelegramError propagates.
        """
        async with self.locks.hold(str(chat_id)):
            return await self._handle(chat_id, text or "", username)

    async def _handle(self, chat_id: int | str, text: str, username: Optional[str]) -> str:
        command, rest = parse_command(text)
        log = chat_logger("conversation_service", chat_id)

        if command == "start":
            return await self._start(chat_id, rest)
        if command == "request":
            return await self._request(chat_id)
        if command == "contact":
            return await self._contact(chat_id, username, log)
        if command == "cancel":
            return await self._cancel(chat_id)
        if command == "status":
            return await self._status(chat_id)
        if command is not None:
            await self._send(chat_id, HELP_TEXT)
            return "help"

        state = self.store.get(chat_id)
        if state is not None and state.step == ConversationStep.COLLECTING and rest:
            return await self._collect(state, rest)

        if rest and self.config.allow_ai_replies and self.ai is not None:
            return await self._ai_reply(chat_id, rest, log)

        await self._send(chat_id, HELP_TEXT)
        return "help"

    async def _send(self, chat_id: int | str, text: str) -> dict:
        return await self.telegram.send_message(chat_id, text, disable_preview=True)

    # === COMMANDS ===

    async def _start(self, chat_id: int | str, payload: str) -> str:
        data = decode_start_payload(payload)
        if data is not None:
            state = ConversationState(chat_id=chat_id)
            state.step = start_collecting(state.step)
            for key in ("projectName", "symbol", "blockchain"):
                value = str(data.get(key) or "").strip()
                if value:
                    state.collected_info[key] = clip_field(key, value)
            project_name = state.project_name
            self.store.put(state)
            await self._send(
                chat_id,
                f"📋 <b>Audit Request</b>\n\nProject: {html.escape(project_name or 'New Project')}\n\n"
                "Let's get started! Please provide:\n"
                "1. Contract address\n2. Blockchain network\n3. Project website\n4. Brief description\n\n"
                "Send /contact when you are done.",
            )
            return "start_payload"

        if self.store.get(chat_id) is None:
            self.store.put(ConversationState(chat_id=chat_id))
        await self._send(chat_id, GREETING_TEXT)
        return "greeting"

    async def _request(self, chat_id: int | str) -> str:
        state = ConversationState(chat_id=chat_id)
        state.step = start_collecting(state.step)
        self.store.put(state)
        await self._send(chat_id, REQUEST_FORM_TEXT)
        return "collecting"

    async def _contact(self, chat_id: int | str, username: Optional[str], log) -> str:
        state = self.store.get(chat_id)
        if state is None or state.step != ConversationStep.COLLECTING:
            await self._send(chat_id, NO_REQUEST_TEXT)
            return "no_request"

        if not state.project_name:
            self.store.put(state)
            await self._send(chat_id, MISSING_PROJECT_TEXT)
            return "missing_project"

        state.step = mark_ready(state.step)
        try:
            request = await self.orchestrator.submit(chat_id, dict(state.collected_info), username)
        except SubmissionError as e:
            state.step = revert_to_collecting(state.step)
            self.store.put(state)
            log.warning(f"Submission failed: {e.message}")
            await self._send(chat_id, SUBMIT_FAILED_TEXT)
            return "submit_failed"
        except Exception:
            state.step = revert_to_collecting(state.step)
            self.store.put(state)
            raise

        state.step = mark_submitted(state.step)
        self.store.delete(chat_id)
        log.info("Conversation submitted", extra={"context": {"request_id": request.id}})
        return "submitted"

    async def _cancel(self, chat_id: int | str) -> str:
        removed = self.store.delete(chat_id)
        if removed is not None and removed.step == ConversationStep.COLLECTING:
            await self._send(chat_id, "🗑 Your audit request was cancelled. Send /request to start again.")
            return "cancelled"
        await self._send(chat_id, NO_REQUEST_TEXT)
        return "no_request"

    async def _status(self, chat_id: int | str) -> str:
        pending = await self.orchestrator.store.for_requester(chat_id)
        state = self.store.get(chat_id)
        lines = ["🔎 <b>Audit Status</b>", ""]
        if pending:
            for request in pending:
                lines.append(f"• <b>{html.escape(request.project_name)}</b>: waiting for review")
        if state is not None and state.step == ConversationStep.COLLECTING:
            collected = format_collected(state.collected_info)
            lines.append("📝 Request in progress:")
            lines.append(collected or "No details yet.")
        if len(lines) == 2:
            lines.append("You have no open audit requests. Send /request to start one.")
        await self._send(chat_id, "\n".join(lines))
        return "status"

    # === FREE TEXT ===

    async def _collect(self, state: ConversationState, text: str) -> str:
        fields = parse_fields(text)
        if not fields:
            if not state.project_name:
                fields["projectName"] = text.splitlines()[0].strip()
            else:
                previous = state.collected_info.get("description")
                fields["description"] = f"{previous}\n{text}" if previous else text

        clipped = False
        for key, value in fields.items():
            state.collected_info[key] = clip_field(key, value)
            clipped = clipped or len(state.collected_info[key]) < len(value)
        state.step = start_collecting(state.step)
        self.store.put(state)

        await self._send(
            state.chat_id,
            "✍️ <b>Got it.</b> Collected so far:\n"
            f"{format_collected(state.collected_info)}\n\n"
            f"{CLIPPED_NOTE if clipped else ''}"
            "Add more details or send /contact to submit.",
        )
        return "collected"

    async def _ai_reply(self, chat_id: int | str, text: str, log) -> str:
        reply = await self.ai.generate_text(AI_PROMPT_TEMPLATE.format(text=text))
        if reply:
            reply = reply[: MAX_MESSAGE_CHARS - len(IDENTITY_SUFFIX)]
            await self.telegram.send_message(chat_id, reply + IDENTITY_SUFFIX, parse_mode=None, disable_preview=True)
            return "ai_reply"
        log.info("AI reply unavailable, sending default reply")
        await self._send(chat_id, DEFAULT_REPLY_TEXT)
        return "default_reply"
