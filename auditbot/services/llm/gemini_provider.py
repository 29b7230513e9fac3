import asyncio
from typing import Optional
from urllib.parse import quote

import httpx

from auditbot.logging_config import get_logger
from auditbot.services.llm.base import LLMError, LLMProvider, LLMResponse

logger = get_logger("llm.gemini")

DEFAULT_HOST = "https://generativelanguage.googleapis.com"
DEFAULT_API_VERSION = "v1beta2"
DEFAULT_MODEL = "models/text-bison-001"


class GeminiProvider(LLMProvider):
    """Google generative language ``generateText`` over plain HTTP.

    Authenticates with a bearer header first and retries once with the key as
    a ``?key=`` query parameter, since keys issued for the public API are only
    accepted in the query string.
    """

    def __init__(
        self,
        api_key: str,
        host: Optional[str] = None,
        api_version: Optional[str] = None,
        model: Optional[str] = None,
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.host = (host or DEFAULT_HOST).rstrip("/")
        self.api_version = api_version or DEFAULT_API_VERSION
        self.model = model or DEFAULT_MODEL
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def url(self) -> str:
        return f"{self.host}/{self.api_version}/{self.model}:generateText"

    async def generate(self, prompt: str, temperature: float = 0.2, max_tokens: int = 512) -> LLMResponse:
        payload = {
            "prompt": {"text": prompt},
            "temperature": temperature,
            "maxOutputTokens": max_tokens,
        }
        plans = [
            ("header", self.url, {"Authorization": f"Bearer {self.api_key}"}),
            ("query", f"{self.url}?key={quote(self.api_key, safe='')}", {}),
        ]

        attempts: list[dict] = []
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            for auth_mode, url, headers in plans:
                try:
                    response = await asyncio.wait_for(
                        client.post(url, json=payload, headers={"Content-Type": "application/json", **headers}),
                        self.timeout_seconds,
                    )
                except (httpx.TimeoutException, asyncio.TimeoutError) as e:
                    attempts.append({"auth": auth_mode, "error": "timeout", "detail": str(e)})
                    continue
                except httpx.HTTPError as e:
                    attempts.append({"auth": auth_mode, "error": "network", "detail": str(e)})
                    continue

                if response.status_code != 200:
                    attempts.append({"auth": auth_mode, "status": response.status_code, "detail": response.text[:300]})
                    logger.debug(f"Gemini {auth_mode} auth rejected: {response.status_code}")
                    continue

                try:
                    data = response.json()
                except ValueError:
                    attempts.append({"auth": auth_mode, "status": 200, "error": "invalid_json"})
                    continue

                attempts.append({"auth": auth_mode, "status": 200})
                return LLMResponse(raw=data, model=self.model, auth_mode=auth_mode, attempts=attempts)

        raise LLMError("All generateText attempts failed", attempts)
