"""Pronunciation audio through the Azure Speech REST API."""

from typing import Optional
from xml.sax.saxutils import escape

import aiohttp
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from .config import (
    AZURE_SPEECH_KEY,
    AZURE_SPEECH_REGION,
    PROVIDER_TIMEOUT_S,
    TTS_OUTPUT_FORMAT,
    TTS_RATE,
    TTS_VOICE,
)
from .errors import ProviderError, ProviderUnavailable
from .rate_limiter import RateLimiter

SPEECH_RETRY_ATTEMPTS = 3
SPEECH_RETRY_INITIAL_S = 1.0
SPEECH_RETRY_MAX_S = 10.0

log = structlog.get_logger()


class TransientSpeechError(ProviderError):
    """429 or 5xx from the speech service."""


def build_ssml(text: str, voice: str = TTS_VOICE, rate: str = TTS_RATE) -> str:
    lang = "-".join(voice.split("-")[:2])
    return (
        f"<speak version='1.0' xml:lang='{lang}'>"
        f"<voice xml:lang='{lang}' name='{voice}'>"
        f"<prosody rate='{rate}'>{escape(text)}</prosody>"
        f"</voice></speak>"
    )


class AzureSpeechSynthesizer:
    name = "azure-tts"
    service_id = "azure-tts"
    content_type = "audio/mpeg"

    def __init__(self, rate_limiter: RateLimiter, api_key: Optional[str] = AZURE_SPEECH_KEY,
                 region: str = AZURE_SPEECH_REGION, voice: str = TTS_VOICE,
                 timeout: float = PROVIDER_TIMEOUT_S):
        self.rate_limiter = rate_limiter
        self.api_key = api_key
        self.region = region
        self.voice = voice
        self.timeout = timeout

    @property
    def endpoint(self) -> str:
        return f"https://{self.region}.tts.speech.microsoft.com/cognitiveservices/v1"

    def available(self) -> bool:
        return bool(self.api_key)

    async def synthesize(self, text: str) -> bytes:
        """Return MP3 bytes for ``text``. Retries throttling and server errors."""
        if not self.available():
            raise ProviderUnavailable("Azure Speech key is not configured")

        headers = {
            "Ocp-Apim-Subscription-Key": self.api_key,
            "Content-Type": "application/ssml+xml",
            "X-Microsoft-OutputFormat": TTS_OUTPUT_FORMAT,
            "User-Agent": "hanzi-enrich",
        }
        ssml = build_ssml(text, self.voice)

        @retry(
            stop=stop_after_attempt(SPEECH_RETRY_ATTEMPTS),
            wait=wait_exponential_jitter(initial=SPEECH_RETRY_INITIAL_S, max=SPEECH_RETRY_MAX_S, jitter=1),
            retry=retry_if_exception_type((TransientSpeechError, aiohttp.ClientConnectionError)),
            reraise=True,
        )
        async def _make_speech_call() -> bytes:
            await self.rate_limiter.acquire(self.service_id)
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.endpoint, data=ssml.encode("utf-8"), headers=headers) as response:
                    if response.status == 429 or response.status >= 500:
                        raise TransientSpeechError(f"Azure TTS returned {response.status}")
                    if response.status != 200:
                        body = await response.text()
                        raise ProviderUnavailable(f"Azure TTS returned {response.status}: {body[:200]}")
                    return await response.read()

        audio = await _make_speech_call()
        if not audio:
            raise ProviderUnavailable("Azure TTS returned an empty body")
        log.info("Audio synthesized", text=text, voice=self.voice, size=len(audio))
        return audio
