from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


class LLMError(Exception):
    def __init__(self, message: str, attempts: Optional[list[dict]] = None):
        self.message = message
        self.attempts = attempts or []
        super().__init__(message)


@dataclass
class LLMResponse:
    raw: Any
    model: str
    auth_mode: str
    attempts: list[dict] = field(default_factory=list)


class LLMProvider(ABC):
    """Abstract base class for text generation providers."""

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        temperature: float = 0.2,
        max_tokens: int = 512,
    ) -> LLMResponse:
        """Return the decoded JSON body of a successful call. Raises LLMError."""
        pass
