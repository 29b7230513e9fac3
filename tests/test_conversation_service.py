import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from auditbot.services.approval_service import ApprovalOrchestrator, PendingApprovalStore
from auditbot.services.conversation_service import (
    CLIPPED_NOTE,
    DEFAULT_REPLY_TEXT,
    GREETING_TEXT,
    HELP_TEXT,
    IDENTITY_SUFFIX,
    MAX_DESCRIPTION_CHARS,
    MISSING_PROJECT_TEXT,
    NO_REQUEST_TEXT,
    SUBMIT_FAILED_TEXT,
    ConversationService,
    ConversationState,
    ConversationStore,
    clip_field,
    create_start_link,
    decode_start_payload,
    format_collected,
    parse_command,
    parse_fields,
)
from auditbot.services.state_machine import ConversationStep
from auditbot.services.telegram_service import MAX_MESSAGE_CHARS, TelegramError, TelegramService

ADMIN_CHAT_ID = "5000"
CHAT = 1001


def _service(telegram, config, ai=None, store=None, orchestrator=None) -> ConversationService:
    orchestrator = orchestrator or ApprovalOrchestrator(telegram, config, PendingApprovalStore())
    return ConversationService(telegram, config, store if store is not None else ConversationStore(), orchestrator, ai=ai)


def _run(service, *texts, chat_id=CHAT, username="acme_dev") -> list[str]:
    async def main():
        return [await service.handle_message(chat_id, text, username) for text in texts]

    return asyncio.run(main())


class TestParsing:
    def test_parse_command(self):
        assert parse_command("/start") == ("start", "")
        assert parse_command("/start@CFGNINJA_Bot abc") == ("start", "abc")
        assert parse_command("  /Request  ") == ("request", "")
        assert parse_command("hello there") == (None, "hello there")

    def test_parse_fields(self):
        text = "Project: Acme\nContract address: 0xabc\nSite: https://acme.io\nTwitter: @acme\nTelegram: t.me/acme\nrandom line"

        assert parse_fields(text) == {
            "projectName": "Acme",
            "contract": "0xabc",
            "website": "https://acme.io",
            "socials": "@acme, t.me/acme",
        }

    def test_unknown_labels_ignored(self):
        assert parse_fields("Favorite color: blue") == {}

    def test_start_payload_roundtrip(self):
        link = create_start_link("CFGNINJA_Bot", {"projectName": "Acme"})

        assert link.startswith("https://t.me/CFGNINJA_Bot?start=")
        assert decode_start_payload(link.split("start=", 1)[1]) == {"projectName": "Acme"}

    def test_bad_start_payload(self):
        assert decode_start_payload("") is None
        assert decode_start_payload("not-base64!!") is None
        assert decode_start_payload("WzEsMl0") is None  # a JSON list


class TestCommands:
    def test_start_greets_and_creates_record(self, telegram, bot_config):
        service = _service(telegram, bot_config)

        assert _run(service, "/start") == ["greeting"]

        assert telegram.messages_to(CHAT)[0].text == GREETING_TEXT
        assert service.store.get(CHAT).step == ConversationStep.NEW

    def test_start_keeps_existing_record(self, telegram, bot_config):
        service = _service(telegram, bot_config)

        _run(service, "/request", "Project: Acme", "/start")

        state = service.store.get(CHAT)
        assert state.step == ConversationStep.COLLECTING
        assert state.project_name == "Acme"

    def test_start_with_deep_link_payload(self, telegram, bot_config):
        service = _service(telegram, bot_config)
        payload = create_start_link("CFGNINJA_Bot", {"projectName": "Acme"}).split("start=", 1)[1]

        assert _run(service, f"/start {payload}") == ["start_payload"]

        state = service.store.get(CHAT)
        assert state.step == ConversationStep.COLLECTING
        assert state.project_name == "Acme"
        assert "Acme" in telegram.messages_to(CHAT)[0].text

    def test_request_resets_record(self, telegram, bot_config):
        service = _service(telegram, bot_config)

        _run(service, "/request", "Project: Acme", "/request")

        state = service.store.get(CHAT)
        assert state.step == ConversationStep.COLLECTING
        assert state.collected_info == {}

    def test_contact_without_project_name(self, telegram, bot_config):
        service = _service(telegram, bot_config)

        assert _run(service, "/request", "/contact") == ["collecting", "missing_project"]

        assert telegram.messages_to(CHAT)[-1].text == MISSING_PROJECT_TEXT
        assert service.store.get(CHAT).step == ConversationStep.COLLECTING
        assert telegram.messages_to(ADMIN_CHAT_ID) == []

    def test_contact_without_request(self, telegram, bot_config):
        service = _service(telegram, bot_config)

        assert _run(service, "/contact") == ["no_request"]
        assert telegram.messages_to(CHAT)[0].text == NO_REQUEST_TEXT

    def test_full_submission(self, telegram, bot_config):
        service = _service(telegram, bot_config)

        actions = _run(service, "/request", "Acme", "Contract: 0xabc", "/contact")

        assert actions == ["collecting", "collected", "collected", "submitted"]
        assert CHAT not in service.store
        assert len(service.orchestrator.store) == 1
        admin_text = telegram.messages_to(ADMIN_CHAT_ID)[0].text
        assert "Acme" in admin_text
        assert "0xabc" in admin_text

    def test_unlabeled_text_after_name_becomes_description(self, telegram, bot_config):
        service = _service(telegram, bot_config)

        _run(service, "/request", "Acme", "A lending protocol", "with flash loans")

        state = service.store.get(CHAT)
        assert state.project_name == "Acme"
        assert state.collected_info["description"] == "A lending protocol\nwith flash loans"

    def test_submission_failure_reverts_to_collecting(self, telegram, bot_config):
        telegram.fail_chats.add(ADMIN_CHAT_ID)
        service = _service(telegram, bot_config)

        actions = _run(service, "/request", "Project: Acme", "/contact")

        assert actions[-1] == "submit_failed"
        assert telegram.messages_to(CHAT)[-1].text == SUBMIT_FAILED_TEXT
        state = service.store.get(CHAT)
        assert state.step == ConversationStep.COLLECTING
        assert state.project_name == "Acme"

    def test_unexpected_error_propagates_with_record_intact(self, telegram, bot_config):
        orchestrator = Mock()
        orchestrator.submit = AsyncMock(side_effect=RuntimeError("boom"))
        service = _service(telegram, bot_config, orchestrator=orchestrator)
        _run(service, "/request", "Project: Acme")

        with pytest.raises(RuntimeError):
            _run(service, "/contact")

        state = service.store.get(CHAT)
        assert state.step == ConversationStep.COLLECTING
        assert state.project_name == "Acme"

    def test_send_failure_propagates(self, telegram, bot_config):
        service = _service(telegram, bot_config)
        _run(service, "/request", "Project: Acme")
        telegram.fail_chats.add(str(CHAT))

        with pytest.raises(TelegramError):
            _run(service, "/status")

        assert service.store.get(CHAT).project_name == "Acme"

    def test_cancel(self, telegram, bot_config):
        service = _service(telegram, bot_config)

        assert _run(service, "/request", "/cancel", "/cancel") == ["collecting", "cancelled", "no_request"]
        assert CHAT not in service.store

    def test_status_lists_pending_and_in_progress(self, telegram, bot_config):
        service = _service(telegram, bot_config)
        _run(service, "/request", "Project: Acme", "/contact", "/request", "Project: Beta")

        assert _run(service, "/status") == ["status"]

        text = telegram.messages_to(CHAT)[-1].text
        assert "Acme</b>: waiting for review" in text
        assert "Project: Beta" in text

    def test_unknown_command_gets_help(self, telegram, bot_config):
        service = _service(telegram, bot_config)

        assert _run(service, "/help", "/whatever") == ["help", "help"]
        assert telegram.messages_to(CHAT)[0].text == HELP_TEXT


class TestFreeText:
    def test_ai_reply_with_identity_suffix(self, telegram, bot_config, config_with, fake_ai):
        fake_ai.replies.append("An audit covers a manual review and automated analysis.")
        service = _service(telegram, config_with(bot_config, allow_ai_replies=True), ai=fake_ai)

        assert _run(service, "What is included in an audit?") == ["ai_reply"]

        message = telegram.messages_to(CHAT)[0]
        assert message.text == "An audit covers a manual review and automated analysis." + IDENTITY_SUFFIX
        assert message.parse_mode is None
        assert "What is included in an audit?" in fake_ai.prompts[0]
        assert CHAT not in service.store

    def test_no_ai_output_sends_default_reply(self, telegram, bot_config, config_with, fake_ai):
        service = _service(telegram, config_with(bot_config, allow_ai_replies=True), ai=fake_ai)

        assert _run(service, "What is included in an audit?") == ["default_reply"]
        assert telegram.messages_to(CHAT)[0].text == DEFAULT_REPLY_TEXT

    def test_ai_disabled_sends_help(self, telegram, bot_config, fake_ai):
        service = _service(telegram, bot_config, ai=fake_ai)

        assert _run(service, "hello") == ["help"]
        assert fake_ai.prompts == []

    def test_collecting_takes_priority_over_ai(self, telegram, bot_config, config_with, fake_ai):
        service = _service(telegram, config_with(bot_config, allow_ai_replies=True), ai=fake_ai)

        assert _run(service, "/request", "Acme") == ["collecting", "collected"]
        assert fake_ai.prompts == []

    def test_same_chat_messages_are_serialized(self, telegram, bot_config):
        service = _service(telegram, bot_config)

        async def main():
            await service.handle_message(CHAT, "/request")
            await asyncio.gather(*(service.handle_message(CHAT, f"Description: part {i}") for i in range(5)))
            await service.handle_message(CHAT, "Project: Acme")

        asyncio.run(main())

        state = service.store.get(CHAT)
        assert state.project_name == "Acme"
        assert len(service.locks) == 0

    def test_long_ai_reply_is_clipped(self, telegram, bot_config, config_with, fake_ai):
        fake_ai.replies.append("a" * 6000)
        service = _service(telegram, config_with(bot_config, allow_ai_replies=True), ai=fake_ai)

        _run(service, "Tell me everything about audits")

        message = telegram.messages_to(CHAT)[0]
        assert len(message.text) == MAX_MESSAGE_CHARS
        assert message.text.endswith(IDENTITY_SUFFIX)


def _strict_telegram() -> tuple[TelegramService, list[tuple[str, str]]]:
    """Real client whose transport rejects texts Telegram would refuse as too long."""
    sent = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        text = body.get("text", "")
        if len(text) > MAX_MESSAGE_CHARS:
            return httpx.Response(
                400, json={"ok": False, "error_code": 400, "description": "Bad Request: message is too long"}
            )
        sent.append((str(body.get("chat_id")), text))
        return httpx.Response(200, json={"ok": True, "result": {"message_id": len(sent)}})

    return TelegramService("123456:TEST", transport=httpx.MockTransport(handler)), sent


class TestLongInput:
    def test_long_description_still_submits_once(self, bot_config):
        telegram, sent = _strict_telegram()
        service = _service(telegram, bot_config)
        chunk = "R&D " * 375

        actions = _run(service, "/request", "Project: Acme", chunk, chunk, chunk, "/contact", "/contact", "/contact")

        assert actions == [
            "collecting",
            "collected",
            "collected",
            "collected",
            "collected",
            "submitted",
            "no_request",
            "no_request",
        ]
        assert len(service.orchestrator.store) == 1
        assert all(len(text) <= MAX_MESSAGE_CHARS for _, text in sent)
        admin_texts = [text for chat, text in sent if chat == ADMIN_CHAT_ID]
        assert "New Audit Request" in admin_texts[0]
        assert "R&amp;D" in admin_texts[0]

    def test_clipped_fields_are_reported(self, telegram, bot_config):
        service = _service(telegram, bot_config)

        _run(service, "/request", "Project: Acme", "Website: https://" + "w" * 1000)

        state = service.store.get(CHAT)
        assert len(state.collected_info["website"]) == 300
        assert CLIPPED_NOTE in telegram.messages_to(CHAT)[-1].text

    def test_short_fields_have_no_clip_note(self, telegram, bot_config):
        service = _service(telegram, bot_config)

        _run(service, "/request", "Project: Acme")

        assert CLIPPED_NOTE not in telegram.messages_to(CHAT)[-1].text

    def test_unlabeled_long_name_is_clipped(self, telegram, bot_config):
        service = _service(telegram, bot_config)

        _run(service, "/request", "N" * 500)

        assert service.store.get(CHAT).project_name == "N" * 100

    def test_clip_field_limits(self):
        assert len(clip_field("projectName", "n" * 500)) == 100
        assert len(clip_field("description", "d" * 5000)) == MAX_DESCRIPTION_CHARS
        assert len(clip_field("contract", "c" * 500)) == 300
        assert clip_field("symbol", "ACME") == "ACME"

    def test_format_collected_respects_limit(self):
        info = {"projectName": "Acme", "website": "https://acme.io", "description": "<x> " * 2000}

        text = format_collected(info, limit=500)

        assert len(text) <= 500
        assert text.startswith("• Project: Acme\n• Website: https://acme.io\n• Description: &lt;x&gt;")

    def test_portal_fields_are_collected(self, telegram, bot_config):
        service = _service(telegram, bot_config)

        _run(service, "/request", "Project: Acme\nTicker: ACME\nChain: BSC\nE-mail: team@acme.example")

        assert service.store.get(CHAT).collected_info == {
            "projectName": "Acme",
            "symbol": "ACME",
            "blockchain": "BSC",
            "email": "team@acme.example",
        }

    def test_start_link_stays_within_limit(self):
        link = create_start_link("CFGNINJA_Bot", {"projectName": "Acme", "symbol": "ACME", "blockchain": "x" * 80})
        payload = link.split("start=", 1)[1]

        assert len(payload) <= 64
        assert decode_start_payload(payload) == {"projectName": "Acme", "symbol": "ACME"}

    def test_start_link_skips_empty_values(self):
        link = create_start_link("CFGNINJA_Bot", {"projectName": "Acme", "symbol": None, "blockchain": ""})

        assert decode_start_payload(link.split("start=", 1)[1]) == {"projectName": "Acme"}


class TestConversationStore:
    def test_expired_record_is_discarded(self):
        now = [datetime(2024, 1, 1, tzinfo=timezone.utc)]
        store = ConversationStore(ttl=timedelta(minutes=60), clock=lambda: now[0])
        store.put(ConversationState(chat_id=CHAT, step=ConversationStep.COLLECTING))

        now[0] += timedelta(minutes=30)
        assert store.get(CHAT) is not None
        now[0] += timedelta(minutes=61)

        assert store.get(CHAT) is None
        assert CHAT not in store

    def test_purge_expired(self):
        now = [datetime(2024, 1, 1, tzinfo=timezone.utc)]
        store = ConversationStore(ttl=timedelta(minutes=60), clock=lambda: now[0])
        store.put(ConversationState(chat_id=1))
        now[0] += timedelta(minutes=90)
        store.put(ConversationState(chat_id=2))

        assert store.purge_expired() == 1
        assert 2 in store
        assert 1 not in store

    def test_int_and_str_ids_are_the_same_chat(self):
        store = ConversationStore()
        store.put(ConversationState(chat_id=CHAT))

        assert store.get(str(CHAT)) is not None
