"""Voice providers: OpenAI and ElevenLabs speech APIs, plus user uploaded recordings."""

import asyncio
import random
from abc import ABC, abstractmethod
from collections.abc import Sequence

import httpx
from loguru import logger

from mindscript.gateway.composition import asset_url_allowed
from mindscript.gateway.metrics import log_event
from mindscript.workers.errors import FatalRenderError, TransientRenderError

OPENAI_API_BASE = "https://api.openai.com/v1"
OPENAI_MODEL = "tts-1"
OPENAI_VOICES = {"alloy", "echo", "fable", "onyx", "nova", "shimmer"}

ELEVENLABS_API_BASE = "https://api.elevenlabs.io/v1"
ELEVENLABS_MODEL = "eleven_monolingual_v1"
ELEVENLABS_VOICE_SETTINGS = {"stability": 0.5, "similarity_boost": 0.75, "style": 0, "use_speaker_boost": True}

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
MAX_RETRIES = 4
BASE_DELAY_SECONDS = 1.0
MAX_DELAY_SECONDS = 16.0


class TTSProvider(ABC):
    name: str

    @abstractmethod
    async def synthesize(self, text: str, voice: str) -> bytes:
        """Encoded audio (wav, mp3, ...) for `text` spoken by `voice`."""

    async def close(self) -> None:
        return None


class HttpTTSProvider(TTSProvider):
    """Shared request loop: retries 429/5xx and connection errors with exponential backoff and jitter.

    Exhausted retries become TransientRenderError so the job goes back to the
    queue; any other 4xx is the request's fault and becomes FatalRenderError.
    """

    def __init__(self, api_key: str, timeout: float = 120.0):
        self._api_key = api_key
        self._client = httpx.AsyncClient(timeout=timeout)

    @abstractmethod
    def _build_request(self, text: str, voice: str) -> tuple[str, dict, dict]:
        """Return (url, headers, json body)."""

    async def synthesize(self, text: str, voice: str) -> bytes:
        url, headers, body = self._build_request(text, voice)
        log = logger.bind(provider=self.name, voice=voice)

        last_error: Exception | None = None
        for attempt in range(MAX_RETRIES):
            try:
                response = await self._client.post(url, headers=headers, json=body)
                response.raise_for_status()
                return response.content
            except httpx.HTTPStatusError as e:
                last_error = e
                status_code = e.response.status_code
                if status_code not in RETRYABLE_STATUS_CODES:
                    raise FatalRenderError(f"{self.name} rejected the request ({status_code}): {e.response.text}") from e
                if status_code == 429:
                    await log_event(
                        "api_rate_limit",
                        retry_count=attempt,
                        data={"api_name": self.name, "voice": voice},
                    )
                reason = f"{self.name} API error {status_code}"
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = e
                reason = f"{self.name} connection error: {e}"

            if attempt < MAX_RETRIES - 1:
                delay = min(BASE_DELAY_SECONDS * (2**attempt), MAX_DELAY_SECONDS)
                wait_time = delay + random.uniform(0, delay * 0.5)
                log.warning(f"{reason}, attempt {attempt + 1}/{MAX_RETRIES}, retrying in {wait_time:.1f}s")
                await asyncio.sleep(wait_time)

        raise TransientRenderError(f"{self.name} unavailable after {MAX_RETRIES} attempts: {last_error}")

    async def close(self) -> None:
        await self._client.aclose()


class OpenAITTSProvider(HttpTTSProvider):
    name = "openai"

    def __init__(self, api_key: str, timeout: float = 120.0, model: str = OPENAI_MODEL):
        super().__init__(api_key, timeout)
        self._model = model

    def _build_request(self, text: str, voice: str) -> tuple[str, dict, dict]:
        if voice not in OPENAI_VOICES:
            raise FatalRenderError(f"Unknown OpenAI voice {voice!r}")
        return (
            f"{OPENAI_API_BASE}/audio/speech",
            {"Authorization": f"Bearer {self._api_key}"},
            {"model": self._model, "input": text, "voice": voice, "response_format": "wav"},
        )


class ElevenLabsTTSProvider(HttpTTSProvider):
    name = "elevenlabs"

    def __init__(self, api_key: str, timeout: float = 120.0, model: str = ELEVENLABS_MODEL):
        super().__init__(api_key, timeout)
        self._model = model

    def _build_request(self, text: str, voice: str) -> tuple[str, dict, dict]:
        return (
            f"{ELEVENLABS_API_BASE}/text-to-speech/{voice}?output_format=mp3_44100_128",
            {"xi-api-key": self._api_key, "Accept": "audio/mpeg"},
            {"text": text, "model_id": self._model, "voice_settings": ELEVENLABS_VOICE_SETTINGS},
        )


class UploadedVoiceProvider(TTSProvider):
    """A recording the user uploaded instead of synthesized speech. `voice` is its URL."""

    name = "uploaded"

    def __init__(self, allowed_bases: Sequence[str], timeout: float = 60.0):
        self._allowed_bases = list(allowed_bases)
        self._client = httpx.AsyncClient(timeout=timeout)

    async def synthesize(self, text: str, voice: str) -> bytes:
        return await fetch_asset(self._client, voice, self._allowed_bases)

    async def close(self) -> None:
        await self._client.aclose()


async def fetch_asset(client: httpx.AsyncClient, location: str, allowed_bases: Sequence[str]) -> bytes:
    """Download an audio asset. Only URLs under `allowed_bases` are fetched, and redirects are not followed."""
    if not asset_url_allowed(location, allowed_bases):
        raise FatalRenderError(f"Asset location {location!r} is not allowed")
    try:
        response = await client.get(location, follow_redirects=False)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        if e.response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientRenderError(f"Asset {location} unavailable ({e.response.status_code})") from e
        raise FatalRenderError(f"Asset {location} not retrievable ({e.response.status_code})") from e
    except httpx.TransportError as e:
        raise TransientRenderError(f"Asset {location} unreachable: {e}") from e
    return response.content
