"""
Chat completion client for entity extraction and reflection.
Pattern: OpenAI-compatible cloud API (OpenRouter) or local Ollama over httpx,
consistent with embeddings.py setup.
"""

import json
import logging
import re
from typing import Any, List, Optional

import httpx

logger = logging.getLogger(__name__)

_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


class LLMError(RuntimeError):
    """Raised when the chat provider fails or returns nothing usable."""


def parse_json_array(text: str) -> Optional[List[Any]]:
    """
    Pull the first JSON array out of a model response.

    Models wrap JSON in prose or code fences; everything outside the outermost
    brackets is ignored. Returns None when no array can be parsed.
    """
    match = _JSON_ARRAY_RE.search(text or "")
    if not match:
        return None
    try:
        value = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, list) else None


class ChatClient:
    """
    Single-prompt chat completions.

    Providers:
    - openai: any OpenAI-compatible /chat/completions endpoint (OpenRouter default)
    - ollama: local /api/chat

    Usage:
        client = ChatClient(api_key=key)
        text = await client.complete("Say hi", model="google/gemini-flash-1.5")
    """

    def __init__(self,
                 provider: str = "openai",
                 api_key: Optional[str] = None,
                 base_url: str = "https://openrouter.ai/api/v1",
                 timeout: float = 60.0,
                 client: Optional[httpx.AsyncClient] = None):
        if provider not in ("openai", "ollama"):
            raise ValueError(f"Unsupported LLM provider: {provider}")
        self.provider = provider
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(headers=headers, timeout=self.timeout)
        return self._client

    async def complete(self, prompt: str, model: str,
                       max_tokens: int = 400, temperature: float = 0.0) -> str:
        """Send one user message and return the assistant text."""
        if self.provider == "openai" and not self.api_key:
            raise LLMError("LLM API key missing (set MNEMOS_LLM_API_KEY or OPENROUTER_API_KEY)")
        client = self._get_client()
        messages = [{"role": "user", "content": prompt}]
        try:
            if self.provider == "ollama":
                response = await client.post(
                    f"{self.base_url}/api/chat",
                    json={
                        "model": model,
                        "messages": messages,
                        "stream": False,
                        "options": {"temperature": temperature, "num_predict": max_tokens},
                    },
                )
                response.raise_for_status()
                return response.json()["message"]["content"]

            response = await client.post(
                f"{self.base_url}/chat/completions",
                json={
                    "model": model,
                    "messages": messages,
                    "max_tokens": max_tokens,
                    "temperature": temperature,
                },
            )
            response.raise_for_status()
            return response.json()["choices"][0]["message"]["content"] or ""
        except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
            raise LLMError(f"Chat completion failed ({self.provider}/{model}): {e}") from e

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
