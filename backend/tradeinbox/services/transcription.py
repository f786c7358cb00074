"""
TradeInbox Backend — Transcription Fallback Chain
===================================================

What:  Turns a voice note into text using a fixed-priority chain of speech-to-text
       providers: Groq Whisper → Deepgram → OpenAI Whisper.
Why:   Voice notes are the most common way artisans capture a job on site. One
       provider being down or rate-limited must not leave the note unclassified.
How:   Each configured provider is tried once, in order. The first non-empty
       transcript wins. When every provider fails (or returns nothing) a
       TranscriptionFailedError carries the last provider's error text.
Who:   ClassificationOrchestrator, for items with file_type='audio'.

Provider chain:
    ┌──────────────┐  fail/empty  ┌──────────────┐  fail/empty  ┌──────────────┐
    │ Groq         │ ───────────▶ │ Deepgram     │ ───────────▶ │ OpenAI       │
    │ whisper-v3-t │              │ nova-3       │              │ whisper-1    │
    └──────────────┘              └──────────────┘              └──────────────┘

    A provider without an API key is left out of the chain entirely. There is
    no retry within a provider: a failure moves straight to the next one.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import httpx

from tradeinbox.exceptions import TranscriptionFailedError

logger = logging.getLogger(__name__)

AUDIO_MIME_TYPES = {
    "ogg": "audio/ogg",
    "m4a": "audio/m4a",
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "webm": "audio/webm",
    "mp4": "audio/mp4",
}
DEFAULT_AUDIO_EXTENSION = "m4a"
DEFAULT_AUDIO_MIME = "audio/m4a"


def audio_format(url: str) -> Tuple[str, str]:
    """
    Derives (extension, mime type) for an audio artifact from its URL.

    The extension is the last dot-suffix of the URL path, so query strings such
    as signed-URL tokens are ignored. Unknown extensions keep their value but
    are sent as audio/m4a.

        >>> audio_format("https://cdn/x/voice.ogg?token=abc")
        ('ogg', 'audio/ogg')
    """
    path = urlparse(url).path
    last_segment = path.rsplit("/", 1)[-1]
    ext = last_segment.rsplit(".", 1)[-1].lower() if "." in last_segment else ""
    ext = ext or DEFAULT_AUDIO_EXTENSION
    return ext, AUDIO_MIME_TYPES.get(ext, DEFAULT_AUDIO_MIME)


class ProviderFailure(Exception):
    """One provider could not produce a transcript. Never leaves this module."""


def _error_detail(response: httpx.Response) -> Optional[str]:
    """Best-effort error text from a provider's JSON error body."""
    try:
        data = response.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str):
        return error
    if data.get("err_msg"):
        return str(data["err_msg"])
    return None


# ══════════════════════════════════════════════════════════════════════════
# Providers
# ══════════════════════════════════════════════════════════════════════════


class TranscriptionProvider(ABC):
    """One speech-to-text backend. `name` prefixes error text ("groq: ...")."""

    name: str = ""
    label: str = ""

    def __init__(self, api_key: str):
        self.api_key = api_key

    @abstractmethod
    async def transcribe(
        self,
        client: httpx.AsyncClient,
        audio: bytes,
        extension: str,
        mime_type: str,
        language: str,
    ) -> str:
        """Returns the transcript (possibly empty) or raises ProviderFailure."""
        ...

    def _check(self, response: httpx.Response) -> Dict[str, Any]:
        if response.status_code >= 400:
            detail = _error_detail(response)
            raise ProviderFailure(detail or f"{self.label} failed ({response.status_code})")
        try:
            data = response.json()
        except ValueError:
            raise ProviderFailure(f"{self.label} returned a non-JSON response")
        if not isinstance(data, dict):
            raise ProviderFailure(f"{self.label} returned an unexpected response")
        return data


class WhisperCompatibleProvider(TranscriptionProvider):
    """Groq and OpenAI share the OpenAI audio/transcriptions multipart API."""

    endpoint: str = ""
    model: str = ""

    async def transcribe(self, client, audio, extension, mime_type, language):
        response = await client.post(
            self.endpoint,
            headers={"Authorization": f"Bearer {self.api_key}"},
            data={"model": self.model, "language": language},
            files={"file": (f"audio.{extension}", audio, mime_type)},
        )
        data = self._check(response)
        return str(data.get("text") or "")


class GroqWhisperProvider(WhisperCompatibleProvider):
    name = "groq"
    label = "Groq"
    endpoint = "https://api.groq.com/openai/v1/audio/transcriptions"
    model = "whisper-large-v3-turbo"


class OpenAIWhisperProvider(WhisperCompatibleProvider):
    name = "openai"
    label = "OpenAI"
    endpoint = "https://api.openai.com/v1/audio/transcriptions"
    model = "whisper-1"


class DeepgramProvider(TranscriptionProvider):
    """Deepgram takes the raw audio body and detects the language itself."""

    name = "deepgram"
    label = "Deepgram"
    endpoint = "https://api.deepgram.com/v1/listen"
    params = {"model": "nova-3", "smart_format": "true", "detect_language": "true"}

    async def transcribe(self, client, audio, extension, mime_type, language):
        response = await client.post(
            self.endpoint,
            params=self.params,
            headers={
                "Authorization": f"Token {self.api_key}",
                "Content-Type": mime_type,
            },
            content=audio,
        )
        data = self._check(response)
        try:
            return str(data["results"]["channels"][0]["alternatives"][0].get("transcript") or "")
        except (KeyError, IndexError, TypeError, AttributeError):
            return ""


# ══════════════════════════════════════════════════════════════════════════
# Fallback chain
# ══════════════════════════════════════════════════════════════════════════


class TranscriptionService:
    """
    Runs the provider chain.

    Construction:
        TranscriptionService.from_credentials(...) builds the chain from API keys
        in priority order and skips providers with an empty key. Tests pass
        providers and an httpx client with a MockTransport directly.
    """

    def __init__(
        self,
        providers: List[TranscriptionProvider],
        language: str = "it",
        timeout: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.providers = providers
        self.language = language
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        logger.info(
            "TranscriptionService initialized with chain=%s, language=%s",
            [p.name for p in providers] or "(empty)",
            language,
        )

    @classmethod
    def from_credentials(
        cls,
        groq_api_key: str = "",
        deepgram_api_key: str = "",
        openai_api_key: str = "",
        language: str = "it",
        timeout: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "TranscriptionService":
        providers: List[TranscriptionProvider] = []
        if groq_api_key:
            providers.append(GroqWhisperProvider(groq_api_key))
        if deepgram_api_key:
            providers.append(DeepgramProvider(deepgram_api_key))
        if openai_api_key:
            providers.append(OpenAIWhisperProvider(openai_api_key))
        return cls(providers, language=language, timeout=timeout, http_client=http_client)

    @property
    def provider_names(self) -> List[str]:
        return [p.name for p in self.providers]

    async def transcribe(self, audio: bytes, source_url: str) -> str:
        """
        Transcribe one voice note.

        Args:
            audio:      Raw audio bytes (read from the object store).
            source_url: The artifact URL; only used to derive extension and MIME.

        Returns:
            The first non-empty transcript, stripped.

        Raises:
            TranscriptionFailedError: every provider failed or returned nothing.
        """
        extension, mime_type = audio_format(source_url)
        last_error = "No provider configured"

        for provider in self.providers:
            start_time = time.time()
            try:
                transcript = await provider.transcribe(
                    self._client, audio, extension, mime_type, self.language
                )
            except ProviderFailure as e:
                last_error = f"{provider.name}: {e}"
            except httpx.HTTPError as e:
                last_error = f"{provider.name}: {str(e) or type(e).__name__}"
            else:
                transcript = transcript.strip()
                if transcript:
                    logger.info(
                        "Transcription by %s succeeded in %.0fms (%d chars)",
                        provider.name,
                        (time.time() - start_time) * 1000,
                        len(transcript),
                    )
                    return transcript
                last_error = f"{provider.name}: empty transcript"

            logger.warning("Transcription provider failed, trying next: %s", last_error)

        logger.error("All transcription providers failed: %s", last_error)
        raise TranscriptionFailedError(last_error=last_error)

    async def aclose(self) -> None:
        await self._client.aclose()
