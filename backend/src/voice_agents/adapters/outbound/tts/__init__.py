"""TTS provider adapters.

Request: ``{"text": str, "voice": str (optional)}``.
Response: ``{"audio": bytes, "format": str, "provider": str}``.
"""

from __future__ import annotations

import base64
from typing import Any

import httpx

from voice_agents.adapters.outbound.http_provider import HTTPProvider
from voice_agents.domain.enums import Capability
from voice_agents.domain.exceptions import ProviderError

CARTESIA_URL = "https://api.cartesia.ai/tts/bytes"
CARTESIA_VERSION = "2024-06-10"
GOOGLE_TTS_URL = "https://texttospeech.googleapis.com/v1/text:synthesize"


class OpenAITTS(HTTPProvider):
    capability = Capability.TTS
    default_name = "openai"

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "tts-1",
        voice: str = "alloy",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
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
        self._voice = voice
        self._base_url = base_url.rstrip("/")

    async def invoke(self, request: dict[str, Any]) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"{self._base_url}/audio/speech",
            headers={"Authorization": f"Bearer {self._api_key}"},
            json={
                "model": self._model,
                "input": request["text"],
                "voice": request.get("voice", self._voice),
                "response_format": "mp3",
            },
        )
        return {"audio": response.content, "format": "mp3", "provider": self.provider_name}

    async def probe(self) -> bool:
        try:
            await self._request(
                "GET",
                f"{self._base_url}/models",
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except ProviderError:
            return False
        return True


class CartesiaTTS(HTTPProvider):
    capability = Capability.TTS
    default_name = "cartesia"

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "sonic-2",
        voice_id: str = "794f9389-aac1-45b6-b726-9d9369183238",
        speed: float = 1.0,
        sample_rate: int = 24000,
        timeout: float = 30.0,
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
        self._voice_id = voice_id
        self._speed = speed
        self._sample_rate = sample_rate

    async def invoke(self, request: dict[str, Any]) -> dict[str, Any]:
        response = await self._request(
            "POST",
            CARTESIA_URL,
            headers={"X-API-Key": self._api_key, "Cartesia-Version": CARTESIA_VERSION},
            json={
                "model_id": self._model,
                "transcript": request["text"],
                "voice": {"mode": "id", "id": request.get("voice", self._voice_id)},
                "speed": self._speed,
                "output_format": {
                    "container": "wav",
                    "encoding": "pcm_s16le",
                    "sample_rate": self._sample_rate,
                },
            },
        )
        return {"audio": response.content, "format": "wav", "provider": self.provider_name}

    async def probe(self) -> bool:
        return self._key_looks_valid()


class GoogleTTS(HTTPProvider):
    capability = Capability.TTS
    default_name = "google"

    def __init__(
        self,
        api_key: str,
        *,
        voice: str = "en-US-Neural2-F",
        language_code: str = "en-US",
        timeout: float = 30.0,
        provider_name: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            api_key,
            model=voice,
            timeout=timeout,
            provider_name=provider_name,
            transport=transport,
        )
        self._voice = voice
        self._language_code = language_code

    async def invoke(self, request: dict[str, Any]) -> dict[str, Any]:
        response = await self._request(
            "POST",
            GOOGLE_TTS_URL,
            headers={"x-goog-api-key": self._api_key},
            json={
                "input": {"text": request["text"]},
                "voice": {
                    "languageCode": self._language_code,
                    "name": request.get("voice", self._voice),
                },
                "audioConfig": {"audioEncoding": "MP3"},
            },
        )
        encoded = response.json().get("audioContent")
        if not encoded:
            raise ProviderError(self.provider_name, "Response has no audioContent")
        return {
            "audio": base64.b64decode(encoded),
            "format": "mp3",
            "provider": self.provider_name,
        }

    async def probe(self) -> bool:
        return self._key_looks_valid()
