import re
from typing import Callable, Optional

from auditbot.logging_config import get_logger
from auditbot.services.debug_log import DebugLogSink, NullDebugLog, preview
from auditbot.services.llm import GeminiProvider, LLMError, LLMProvider
from auditbot.services.llm.shapes import Unrecognized, decode_response
from auditbot.services.settings_resolver import SettingsResolver

logger = get_logger("ai_service")

DEFAULT_TEMPERATURE = 0.2
DEFAULT_MAX_TOKENS = 512
MIN_REPLY_CHARS = 2

# Openers of a model reciting its instructions instead of answering.
INSTRUCTION_PREFIX_RE = re.compile(
    r"^\s*(you are\b|system\s*(prompt)?\s*:|instructions?\s*:|prompt\s*:|as an ai\b|assistant instructions\b)",
    re.IGNORECASE,
)

ProviderFactory = Callable[[str, SettingsResolver], LLMProvider]


def default_provider_factory(timeout_seconds: float = 15.0) -> ProviderFactory:
    def factory(api_key: str, resolver: SettingsResolver) -> LLMProvider:
        return GeminiProvider(
            api_key=api_key,
            host=resolver.get_preferring_env("genai_host"),
            api_version=resolver.get_preferring_env("genai_api_version"),
            model=resolver.get_preferring_env("default_gemini_model"),
            timeout_seconds=timeout_seconds,
        )

    return factory


def is_echo(candidate: str, prompt: str) -> bool:
    """True when the candidate parrots the prompt or its instruction header."""
    if INSTRUCTION_PREFIX_RE.match(candidate):
        return True
    prompt_text = prompt.strip()
    return bool(prompt_text) and prompt_text in candidate


def clean_candidate(candidate: Optional[str], prompt: str) -> Optional[str]:
    """Return usable reply text, or None for empty, trivial or echoed output."""
    if candidate is None:
        return None
    text = candidate.strip()
    if len(text) < MIN_REPLY_CHARS:
        return None
    if is_echo(text, prompt):
        return None
    return text


class AIAssistAdapter:
    """Optional generated replies. Every failure resolves to None."""

    def __init__(
        self,
        resolver: SettingsResolver,
        debug_log: Optional[DebugLogSink] = None,
        provider_factory: Optional[ProviderFactory] = None,
    ):
        self.resolver = resolver
        self.debug_log = debug_log or NullDebugLog()
        self.provider_factory = provider_factory or default_provider_factory()

    def _api_key(self) -> Optional[str]:
        try:
            return self.resolver.get_preferring_env("gemini_api_key")
        except Exception as e:
            logger.warning(f"AI key lookup failed: {e}")
            return None

    async def generate_text(
        self,
        prompt: str,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> Optional[str]:
        api_key = self._api_key()
        if not api_key:
            await self.debug_log.awrite("ai.skipped", {"reason": "no_api_key"})
            return None

        await self.debug_log.awrite(
            "ai.request",
            {"prompt": preview(prompt), "temperature": temperature, "max_tokens": max_tokens},
        )

        try:
            provider = self.provider_factory(api_key, self.resolver)
            response = await provider.generate(prompt, temperature=temperature, max_tokens=max_tokens)
        except LLMError as e:
            logger.warning("AI generation failed", extra={"context": {"attempts": e.attempts}})
            await self.debug_log.awrite("ai.failed", {"error": e.message, "attempts": e.attempts})
            return None
        except Exception as e:
            logger.error(f"AI generation error: {e}", exc_info=True)
            await self.debug_log.awrite("ai.failed", {"error": str(e)})
            return None

        shape = decode_response(response.raw)
        if isinstance(shape, Unrecognized):
            await self.debug_log.awrite(
                "ai.unrecognized_response",
                {"keys": list(shape.keys), "auth": response.auth_mode, "attempts": response.attempts},
            )
            return None

        text = clean_candidate(shape.text, prompt)
        if text is None:
            await self.debug_log.awrite(
                "ai.rejected",
                {"shape": type(shape).__name__, "candidate": preview(shape.text), "auth": response.auth_mode},
            )
            return None

        await self.debug_log.awrite(
            "ai.success",
            {"shape": type(shape).__name__, "auth": response.auth_mode, "attempts": response.attempts, "chars": len(text)},
        )
        return text
