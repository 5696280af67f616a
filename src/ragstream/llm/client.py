import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from ..core.errors import ConfigurationError, TransientError, RagError

logger = logging.getLogger("ragstream.generation")

DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "ollama": "http://localhost:11434",
}


class LLMError(RagError):
    code = "llm_error"


class LLMUnavailableError(LLMError, TransientError):
    code = "llm_unavailable"


class LLMClient:
    """
    Streaming chat client for an OpenAI-compatible or Ollama endpoint.

    ``stream`` yields the assistant text as raw UTF-8 bytes, one chunk per
    upstream event, with no guarantee that chunks end on character
    boundaries.
    """

    def __init__(
        self,
        provider: str = "openai",
        model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if provider not in DEFAULT_BASE_URLS:
            raise ConfigurationError(f"Unknown LLM provider: {provider!r}")
        if provider == "openai" and not api_key:
            raise ConfigurationError("openai: API key is required for generation")

        self.provider = provider
        self.model = model
        self.base_url = (base_url or DEFAULT_BASE_URLS[provider]).rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def stream(
        self,
        messages: List[Dict[str, Any]],
        temperature: float = 0.2,
    ) -> AsyncIterator[bytes]:
        if self.provider == "openai":
            url = f"{self.base_url}/chat/completions"
            headers = {"Authorization": f"Bearer {self.api_key}"}
            payload = {
                "model": self.model,
                "messages": messages,
                "temperature": temperature,
                "stream": True,
            }
        else:
            url = f"{self.base_url}/api/chat"
            headers = {}
            payload = {
                "model": self.model,
                "messages": messages,
                "stream": True,
                "options": {"temperature": temperature},
            }

        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport
        ) as client:
            try:
                async with client.stream(
                    "POST", url, json=payload, headers=headers
                ) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        self._raise_for_status(resp.status_code)

                    async for line in resp.aiter_lines():
                        piece = self._extract_text(line)
                        if piece:
                            yield piece.encode("utf-8")
            except httpx.TransportError as exc:
                raise LLMUnavailableError(
                    f"LLM endpoint unreachable: {type(exc).__name__}"
                ) from exc

    def _raise_for_status(self, status: int) -> None:
        if status in (408, 429) or status >= 500:
            raise LLMUnavailableError(f"LLM endpoint unavailable (HTTP {status})")
        raise LLMError(f"LLM endpoint rejected request (HTTP {status})")

    def _extract_text(self, line: str) -> Optional[str]:
        line = line.strip()
        if not line:
            return None

        if self.provider == "openai":
            # Server-sent events: "data: {...}" lines, ended by "data: [DONE]".
            if not line.startswith("data:"):
                return None
            data = line[len("data:"):].strip()
            if data == "[DONE]":
                return None
            event = self._loads(data)
            choices = event.get("choices") or []
            if not choices:
                return None
            return (choices[0].get("delta") or {}).get("content")

        event = self._loads(line)
        if event.get("error"):
            raise LLMError(f"LLM stream error: {event['error']}")
        return (event.get("message") or {}).get("content")

    @staticmethod
    def _loads(data: str) -> Dict[str, Any]:
        try:
            event = json.loads(data)
        except json.JSONDecodeError as exc:
            raise LLMError("Malformed event in LLM stream") from exc
        if not isinstance(event, dict):
            raise LLMError("Malformed event in LLM stream")
        return event


def create_llm_client(settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> LLMClient:
    api_key = settings.openai_api_key
    return LLMClient(
        provider=settings.llm_provider,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        api_key=api_key.get_secret_value() if api_key is not None else None,
        timeout=settings.llm_timeout,
        transport=transport,
    )
