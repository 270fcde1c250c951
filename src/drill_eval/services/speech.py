"""Speech adapter: turn an audio reference into text."""

import base64
import binascii
import logging
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx
from openai import AsyncOpenAI, OpenAIError

from drill_eval.config import settings
from drill_eval.domain.submission import audio_format_of
from drill_eval.exceptions import EvaluationError
from drill_eval.services.openai_errors import map_openai_error

logger = logging.getLogger(__name__)

SERVICE_NAME = "OpenAI transcription"

SUPPORTED_FORMATS = ("flac", "m4a", "mp3", "mp4", "mpeg", "mpga", "ogg", "wav", "webm")


@dataclass
class TranscriptionOptions:
    language: str | None = "en"
    prompt: str | None = None
    temperature: float = 0.0


@dataclass
class Transcription:
    text: str
    confidence: float
    language: str | None = None


class SpeechAdapter:
    """Boundary interface for speech-to-text providers."""

    async def transcribe(
        self, audio_reference: str, options: TranscriptionOptions | None = None
    ) -> Transcription:
        raise NotImplementedError

    def get_supported_formats(self) -> list[str]:
        raise NotImplementedError

    def get_max_file_size(self) -> int:
        raise NotImplementedError

    def supports_format(self, audio_format: str) -> bool:
        return audio_format.lower() in self.get_supported_formats()

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""


class OpenAISpeechAdapter(SpeechAdapter):
    """Transcribe audio with the OpenAI transcription endpoint."""

    def __init__(
        self,
        api_key: str = settings.openai_api_key,
        model: str = settings.speech_model,
        base_url: str | None = settings.openai_base_url,
        timeout: float = settings.provider_timeout_seconds,
        max_file_size: int = settings.max_audio_size_bytes,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self.max_file_size = max_file_size
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
        )
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    def get_supported_formats(self) -> list[str]:
        return list(SUPPORTED_FORMATS)

    def get_max_file_size(self) -> int:
        return self.max_file_size

    async def aclose(self) -> None:
        await self.http_client.aclose()
        await self.client.close()

    async def transcribe(
        self, audio_reference: str, options: TranscriptionOptions | None = None
    ) -> Transcription:
        """Download (or decode) the audio and transcribe it.

        Raises:
            EvaluationError: VALIDATION_ERROR for bad references or oversized
                files, otherwise the kind mapped from the provider failure.
        """
        options = options or TranscriptionOptions()
        audio_bytes = await self._load_audio(audio_reference)
        if len(audio_bytes) > self.max_file_size:
            raise self._too_large(len(audio_bytes))

        filename = f"audio.{audio_format_of(audio_reference)}"
        logger.info(
            "Requesting transcription model=%s size=%d language=%s",
            self.model,
            len(audio_bytes),
            options.language,
        )
        request: dict = {
            "file": (filename, audio_bytes),
            "model": self.model,
            "response_format": "json",
            "temperature": options.temperature,
        }
        if options.language:
            request["language"] = options.language
        if options.prompt:
            request["prompt"] = options.prompt

        try:
            response = await self.client.audio.transcriptions.create(**request)
        except OpenAIError as exc:
            logger.error("Transcription API call failed: %s", exc)
            raise map_openai_error(SERVICE_NAME, exc, self.timeout) from exc

        text = response if isinstance(response, str) else response.text
        # The endpoint reports no confidence; keep a fixed nominal value.
        return Transcription(
            text=(text or "").strip(),
            confidence=0.95,
            language=options.language,
        )

    async def _load_audio(self, audio_reference: str) -> bytes:
        if audio_reference.startswith("data:"):
            try:
                _, encoded = audio_reference.split(",", 1)
                return base64.b64decode(encoded, validate=True)
            except (ValueError, binascii.Error) as exc:
                raise EvaluationError.validation(
                    "Invalid audio data URL", field="audio_url"
                ) from exc

        parsed = urlparse(audio_reference)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise EvaluationError.validation(
                "Audio URL must be an http(s) or data URL", field="audio_url"
            )

        try:
            async with self.http_client.stream("GET", audio_reference) as response:
                response.raise_for_status()
                declared = response.headers.get("content-length", "")
                if declared.isdigit() and int(declared) > self.max_file_size:
                    raise self._too_large(int(declared))

                audio = bytearray()
                async for chunk in response.aiter_bytes():
                    audio.extend(chunk)
                    if len(audio) > self.max_file_size:
                        raise self._too_large(len(audio))
        except httpx.TimeoutException as exc:
            raise EvaluationError.timeout("Audio download", self.timeout) from exc
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            raise EvaluationError.service(
                "Audio download",
                f"HTTP {status_code}",
                retryable=status_code >= 500,
                status_code=status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise EvaluationError.service("Audio download", str(exc)) from exc
        return bytes(audio)

    def _too_large(self, size_bytes: int) -> EvaluationError:
        return EvaluationError.validation(
            f"Audio file exceeds {self.max_file_size} bytes",
            field="audio_url",
            size_bytes=size_bytes,
        )
