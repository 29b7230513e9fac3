import asyncio
import json
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from auditbot.services.ai_service import AIAssistAdapter, clean_candidate, is_echo
from auditbot.services.debug_log import DebugLogSink
from auditbot.services.llm import GeminiProvider, LLMError, LLMResponse
from auditbot.services.llm.shapes import (
    BareStringShape,
    CandidatesShape,
    OutputListShape,
    OutputTextShape,
    ResponseFieldShape,
    Unrecognized,
    decode_response,
)
from auditbot.services.settings_resolver import SettingsResolver

PROMPT = "Explain what to include in an audit request."


def _provider(handler, **kwargs) -> GeminiProvider:
    return GeminiProvider("secret-key", transport=httpx.MockTransport(handler), **kwargs)


class TestDecodeResponse:
    def test_candidates_with_string_content(self):
        assert decode_response({"candidates": [{"content": "Hi"}]}) == CandidatesShape("Hi")

    def test_candidates_with_parts(self):
        data = {"candidates": [{"content": {"parts": [{"text": "Hello "}, {"text": "there"}]}}]}
        assert decode_response(data) == CandidatesShape("Hello there")

    def test_candidates_with_output_field(self):
        assert decode_response({"candidates": [{"output": "Bison says hi"}]}) == CandidatesShape("Bison says hi")

    def test_output_text(self):
        assert decode_response({"output_text": "Hi"}) == OutputTextShape("Hi")

    def test_output_list(self):
        assert decode_response({"output": [{"content": [{"text": "Hi"}]}]}) == OutputListShape("Hi")

    def test_response_field(self):
        assert decode_response({"response": "Hi"}) == ResponseFieldShape("Hi")

    def test_bare_string(self):
        assert decode_response("Hi") == BareStringShape("Hi")

    def test_unrecognized(self):
        shape = decode_response({"filters": [{"reason": "OTHER"}]})
        assert isinstance(shape, Unrecognized)
        assert shape.keys == ("filters",)
        assert isinstance(decode_response(None), Unrecognized)

    def test_empty_candidates_fall_through(self):
        assert decode_response({"candidates": [], "response": "Hi"}) == ResponseFieldShape("Hi")


class TestEchoGuard:
    def test_instruction_prefix_rejected_case_insensitively(self):
        assert is_echo("YOU ARE CFG Ninja's assistant...", PROMPT) is True
        assert is_echo("Instructions: answer briefly", PROMPT) is True

    def test_prompt_contained_verbatim(self):
        assert is_echo(PROMPT, PROMPT) is True
        assert is_echo(PROMPT + " Sure! Here it is.", PROMPT) is True

    def test_real_answer_passes(self):
        assert is_echo("Share your contract address, website and a short description.", PROMPT) is False

    def test_clean_candidate_rejects_empty_and_trivial(self):
        assert clean_candidate(None, PROMPT) is None
        assert clean_candidate("   ", PROMPT) is None
        assert clean_candidate("k", PROMPT) is None
        assert clean_candidate("  Include the contract.  ", PROMPT) == "Include the contract."


class TestGeminiProvider:
    def test_header_auth_first(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"candidates": [{"output": "ok"}]})

        response = asyncio.run(_provider(handler).generate(PROMPT, temperature=0.5, max_tokens=100))

        assert response.auth_mode == "header"
        assert len(seen) == 1
        assert seen[0].headers["Authorization"] == "Bearer secret-key"
        assert seen[0].url.path == "/v1beta2/models/text-bison-001:generateText"
        assert json.loads(seen[0].content) == {
            "prompt": {"text": PROMPT},
            "temperature": 0.5,
            "maxOutputTokens": 100,
        }

    def test_query_param_retry_after_header_failure(self):
        seen = []

        def handler(request):
            seen.append(request)
            if "authorization" in request.headers:
                return httpx.Response(401, json={"error": {"message": "API keys are not supported"}})
            return httpx.Response(200, json={"output_text": "ok"})

        response = asyncio.run(_provider(handler).generate(PROMPT))

        assert response.auth_mode == "query"
        assert seen[1].url.params["key"] == "secret-key"
        assert "authorization" not in seen[1].headers
        assert [a.get("status") for a in response.attempts] == [401, 200]

    def test_timeout_counts_as_failed_attempt(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200, json={"response": "ok"})

        response = asyncio.run(_provider(handler).generate(PROMPT))

        assert response.attempts[0]["error"] == "timeout"
        assert response.auth_mode == "query"

    def test_slow_response_is_cut_off_per_attempt(self):
        calls = []

        async def handler(request):
            calls.append(request)
            if len(calls) == 1:
                await asyncio.sleep(5)
            return httpx.Response(200, json={"response": "ok"})

        provider = _provider(handler, timeout_seconds=0.05)
        response = asyncio.run(provider.generate(PROMPT))

        assert response.attempts[0]["error"] == "timeout"
        assert response.auth_mode == "query"

    def test_all_attempts_failing_raises(self):
        provider = _provider(lambda request: httpx.Response(500, text="boom"))

        with pytest.raises(LLMError) as exc:
            asyncio.run(provider.generate(PROMPT))
        assert len(exc.value.attempts) == 2

    def test_configurable_host_version_model(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"response": "ok"})

        provider = _provider(handler, host="https://ai.example.com/", api_version="v1", model="models/gemini-pro")
        asyncio.run(provider.generate(PROMPT))

        assert str(seen[0].url) == "https://ai.example.com/v1/models/gemini-pro:generateText"


class TestAIAssistAdapter:
    def _adapter(self, handler, tmp_path, environ=None):
        resolver = SettingsResolver(environ={"GEMINI_API_KEY": "secret-key"} if environ is None else environ)
        sink = DebugLogSink(tmp_path / "debug.log")
        adapter = AIAssistAdapter(
            resolver,
            debug_log=sink,
            provider_factory=lambda key, _resolver: _provider(handler),
        )
        return adapter, sink

    def _events(self, sink):
        return [json.loads(line)["event"] for line in sink.tail(100)]

    def test_returns_clean_answer(self, tmp_path):
        adapter, sink = self._adapter(
            lambda request: httpx.Response(200, json={"candidates": [{"output": "Provide the contract address."}]}),
            tmp_path,
        )

        assert asyncio.run(adapter.generate_text(PROMPT)) == "Provide the contract address."
        assert self._events(sink) == ["ai.request", "ai.success"]

    def test_no_key_means_no_network_call(self, tmp_path):
        factory = Mock()
        resolver = SettingsResolver(environ={})
        adapter = AIAssistAdapter(resolver, debug_log=DebugLogSink(tmp_path / "d.log"), provider_factory=factory)

        assert asyncio.run(adapter.generate_text(PROMPT)) is None
        factory.assert_not_called()

    def test_echoed_prompt_is_rejected(self, tmp_path):
        adapter, sink = self._adapter(
            lambda request: httpx.Response(200, json={"output_text": PROMPT}),
            tmp_path,
        )

        assert asyncio.run(adapter.generate_text(PROMPT)) is None
        assert "ai.rejected" in self._events(sink)

    def test_unrecognized_shape_returns_none(self, tmp_path):
        adapter, sink = self._adapter(lambda request: httpx.Response(200, json={"weird": True}), tmp_path)

        assert asyncio.run(adapter.generate_text(PROMPT)) is None
        assert "ai.unrecognized_response" in self._events(sink)

    def test_failure_returns_none(self, tmp_path):
        adapter, sink = self._adapter(lambda request: httpx.Response(503, text="unavailable"), tmp_path)

        assert asyncio.run(adapter.generate_text(PROMPT)) is None
        assert "ai.failed" in self._events(sink)

    def test_unexpected_provider_error_returns_none(self, tmp_path):
        provider = Mock()
        provider.generate = AsyncMock(side_effect=KeyError("boom"))
        adapter = AIAssistAdapter(
            SettingsResolver(environ={"GEMINI_API_KEY": "k"}),
            debug_log=DebugLogSink(tmp_path / "d.log"),
            provider_factory=lambda key, resolver: provider,
        )

        assert asyncio.run(adapter.generate_text(PROMPT)) is None

    def test_broken_debug_log_does_not_matter(self, tmp_path):
        resolver = SettingsResolver(environ={"GEMINI_API_KEY": "k"})
        provider = Mock()
        provider.generate = AsyncMock(return_value=LLMResponse(raw={"response": "Fine answer"}, model="m", auth_mode="header"))
        adapter = AIAssistAdapter(
            resolver,
            debug_log=DebugLogSink(tmp_path),
            provider_factory=lambda key, _resolver: provider,
        )

        assert asyncio.run(adapter.generate_text(PROMPT)) == "Fine answer"
