"""LLM provider adapters.

Each class maps a vendor-neutral chat request::

    {"messages": [{"role": "system" | "user" | "assistant", "content": str}, ...],
     "temperature": float, "max_tokens": int}

to one vendor's HTTP API and returns ``{"text", "provider", "model"}``;
``stream`` yields the reply as text deltas.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx

from voice_agents.adapters.outbound.http_provider import HTTPProvider
from voice_agents.domain.enums import Capability
from voice_agents.domain.exceptions import ProviderError

OPENAI_BASE_URL = "https://api.openai.com/v1"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

_SSE_DATA_PREFIX = "data:"
_SSE_DONE = "[DONE]"


class OpenAICompatibleLLM(HTTPProvider):
    """Chat completions against OpenAI or any OpenAI-compatible gateway (OpenRouter)."""

    capability = Capability.LLM
    default_name = "openai"

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gpt-4o-mini",
        base_url: str = OPENAI_BASE_URL,
        temperature: float = 0.7,
        timeout: float = 60.0,
        provider_name: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            api_key,
            model=model,
            timeout=timeout,
            provider_name=provider_name,
            transport=transport,
        )
        self._base_url = base_url.rstrip("/")
        self._temperature = temperature

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def invoke(self, request: dict[str, Any]) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"{self._base_url}/chat/completions",
            headers=self._headers(),
            json=self._body(request),
        )
        data = response.json()
        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(self.provider_name, "Response has no message content") from exc
        return {"text": text or "", "provider": self.provider_name, "model": self._model}

    async def stream(self, request: dict[str, Any]) -> AsyncIterator[str]:
        """Yield content deltas of a ``stream: true`` completion.

        Failures before the first delta are raised like ``invoke`` failures.
        Once text has been yielded the caller may already have spoken it, so
        later failures are also reported to the error subscribers.
        """
        body = {**self._body(request), "stream": True}
        yielded = False
        try:
            async with self._client.stream(
                "POST", f"{self._base_url}/chat/completions", headers=self._headers(), json=body
            ) as response:
                if response.status_code >= 400:
                    raw = await response.aread()
                    raise self._http_error(response.status_code, raw.decode(errors="replace"))

                async for line in response.aiter_lines():
                    if not line.startswith(_SSE_DATA_PREFIX):
                        continue
                    data = line[len(_SSE_DATA_PREFIX):].strip()
                    if data == _SSE_DONE:
                        return
                    delta = self._parse_chunk(data)
                    if delta:
                        yielded = True
                        yield delta
        except httpx.TransportError as exc:
            error = self._transport_error(exc)
            if yielded:
                self._emit_error(error)
            raise error from exc
        except ProviderError as exc:
            if yielded:
                self._emit_error(exc)
            raise

    def _parse_chunk(self, data: str) -> str:
        try:
            chunk = json.loads(data)
        except ValueError as exc:
            raise ProviderError(self.provider_name, f"Malformed stream chunk: {data[:100]}") from exc

        if "error" in chunk:
            error = chunk["error"] if isinstance(chunk["error"], dict) else {"message": chunk["error"]}
            code = error.get("code")
            raise ProviderError(
                self.provider_name,
                f"Stream error: {error.get('message', 'unknown error')}",
                status_code=code if isinstance(code, int) else None,
            )
        choices = chunk.get("choices") or [{}]
        return (choices[0].get("delta") or {}).get("content") or ""

    def _body(self, request: dict[str, Any]) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self._model,
            "messages": request["messages"],
            "temperature": request.get("temperature", self._temperature),
        }
        if "max_tokens" in request:
            body["max_tokens"] = request["max_tokens"]
        return body

    async def probe(self) -> bool:
        """GET /models, the cheapest authenticated call."""
        try:
            await self._request("GET", f"{self._base_url}/models", headers=self._headers())
        except ProviderError:
            return False
        return True


class GeminiLLM(HTTPProvider):
    capability = Capability.LLM
    default_name = "google"

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gemini-2.5-flash",
        temperature: float = 0.7,
        timeout: float = 60.0,
        provider_name: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            api_key,
            model=model,
            timeout=timeout,
            provider_name=provider_name,
            transport=transport,
        )
        self._temperature = temperature

    async def invoke(self, request: dict[str, Any]) -> dict[str, Any]:
        system_parts: list[dict[str, str]] = []
        contents: list[dict[str, Any]] = []
        for message in request["messages"]:
            role = message.get("role", "user")
            if role == "system":
                system_parts.append({"text": message["content"]})
                continue
            contents.append(
                {
                    "role": "model" if role == "assistant" else "user",
                    "parts": [{"text": message["content"]}],
                }
            )

        generation_config: dict[str, Any] = {
            "temperature": request.get("temperature", self._temperature),
        }
        if "max_tokens" in request:
            generation_config["maxOutputTokens"] = request["max_tokens"]
        body: dict[str, Any] = {"contents": contents, "generationConfig": generation_config}
        if system_parts:
            body["system_instruction"] = {"parts": system_parts}

        response = await self._request(
            "POST",
            f"{GEMINI_BASE_URL}/models/{self._model}:generateContent",
            headers={"x-goog-api-key": self._api_key, "Content-Type": "application/json"},
            json=body,
        )
        data = response.json()
        text = (
            data.get("candidates", [{}])[0]
            .get("content", {})
            .get("parts", [{}])[0]
            .get("text", "")
        )
        return {"text": text, "provider": self.provider_name, "model": self._model}

    async def stream(self, request: dict[str, Any]) -> AsyncIterator[str]:
        """The whole reply as a single chunk."""
        reply = await self.invoke(request)
        if reply["text"]:
            yield reply["text"]

    async def probe(self) -> bool:
        return self._key_looks_valid()
