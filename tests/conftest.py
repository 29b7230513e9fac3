from dataclasses import dataclass, replace
from typing import Optional

import pytest

from auditbot.services.result import Result
from auditbot.services.settings_resolver import BotConfig
from auditbot.services.telegram_service import InlineButton, TelegramError

ADMIN_CHAT_ID = "5000"


@dataclass
class SentMessage:
    chat_id: str
    text: str
    buttons: Optional[list[InlineButton]] = None
    parse_mode: Optional[str] = "HTML"


class FakeTelegram:
    """Records Bot API calls instead of sending them."""

    def __init__(self):
        self.sent: list[SentMessage] = []
        self.answered: list[str] = []
        self.group_calls: list[tuple[str, list]] = []
        self.group_result = Result.unsupported("Telegram createGroup failed: Not Found")
        self.fail_chats: set[str] = set()
        self.webhooks: list[tuple[str, Optional[str]]] = []

    async def send_message(self, chat_id, text, parse_mode="HTML", disable_preview=False, buttons=None):
        if str(chat_id) in self.fail_chats:
            raise TelegramError("Telegram sendMessage failed: Forbidden: bot was blocked by the user", 403)
        self.sent.append(SentMessage(str(chat_id), text, list(buttons) if buttons else None, parse_mode))
        return {"message_id": len(self.sent)}

    async def answer_callback(self, callback_id, text=None):
        self.answered.append(callback_id)
        return True

    async def create_group(self, title, participant_ids):
        self.group_calls.append((title, list(participant_ids)))
        return self.group_result

    async def get_me(self):
        return {"id": 1, "is_bot": True, "username": "CFGNINJA_Bot"}

    async def get_webhook_info(self):
        return {"url": ""}

    async def set_webhook(self, url, secret_token=None):
        self.webhooks.append((url, secret_token))
        return True

    async def delete_webhook(self):
        return True

    def messages_to(self, chat_id) -> list[SentMessage]:
        return [m for m in self.sent if m.chat_id == str(chat_id)]


class FakeAI:
    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.prompts: list[str] = []

    async def generate_text(self, prompt, temperature=0.2, max_tokens=512):
        self.prompts.append(prompt)
        return self.replies.pop(0) if self.replies else None


@pytest.fixture
def telegram():
    return FakeTelegram()


@pytest.fixture
def fake_ai():
    return FakeAI()


@pytest.fixture
def bot_config():
    return BotConfig(
        bot_token="123456:TEST",
        bot_username="CFGNINJA_Bot",
        admin_chat_id=ADMIN_CHAT_ID,
        webhook_url="https://example.com/telegram-webhook",
        allow_ai_replies=False,
        allow_bot_create_group=False,
        admin_token="admin-secret",
    )


@pytest.fixture
def config_with():
    def _build(base: BotConfig, **changes) -> BotConfig:
        return replace(base, **changes)

    return _build


@pytest.fixture(autouse=True)
def no_alert_chat(monkeypatch):
    """Keep operational alerts offline."""
    monkeypatch.delenv("ALERT_BOT_TOKEN", raising=False)
    monkeypatch.delenv("ALERT_CHAT_ID", raising=False)
