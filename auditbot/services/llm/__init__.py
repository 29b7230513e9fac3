from auditbot.services.llm.base import LLMError, LLMProvider, LLMResponse
from auditbot.services.llm.gemini_provider import GeminiProvider

__all__ = ["LLMError", "LLMProvider", "LLMResponse", "GeminiProvider"]
