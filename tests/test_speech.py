"""Tests for the OpenAI speech adapter."""

import base64
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from drill_eval.exceptions import ErrorKind, EvaluationError
from drill_eval.services.speech import OpenAISpeechAdapter, TranscriptionOptions

AUDIO_BYTES = b"RIFF\x00\x00\x00\x00WAVEfmt "


def _http_client(status_code: int = 200, content: bytes = AUDIO_BYTES) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, content=content)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _adapter(http_client: httpx.AsyncClient | None = None, max_file_size: int = 1024):
    with patch("drill_eval.services.speech.AsyncOpenAI"):
        adapter = OpenAISpeechAdapter(
            api_key="test-key",
            model="whisper-1",
            max_file_size=max_file_size,
            http_client=http_client or _http_client(),
        )
    transcript = MagicMock()
    transcript.text = "  I mentored two junior engineers.  "
    adapter.client.audio.transcriptions.create = AsyncMock(return_value=transcript)
    return adapter


class TestTranscribe:
    """Tests for OpenAISpeechAdapter.transcribe."""

    async def test_downloads_and_transcribes(self) -> None:
        adapter = _adapter()

        result = await adapter.transcribe(
            "https://cdn.example.com/answers/a1.wav", TranscriptionOptions(language="en")
        )

        assert result.text == "I mentored two junior engineers."
        assert result.language == "en"
        call_kwargs = adapter.client.audio.transcriptions.create.call_args.kwargs
        assert call_kwargs["file"] == ("audio.wav", AUDIO_BYTES)
        assert call_kwargs["model"] == "whisper-1"
        assert call_kwargs["language"] == "en"

    async def test_decodes_data_url(self) -> None:
        adapter = _adapter()
        encoded = base64.b64encode(AUDIO_BYTES).decode()

        await adapter.transcribe(f"data:audio/webm;base64,{encoded}")

        call_kwargs = adapter.client.audio.transcriptions.create.call_args.kwargs
        assert call_kwargs["file"] == ("audio.webm", AUDIO_BYTES)

    async def test_oversized_audio_is_rejected(self) -> None:
        adapter = _adapter(max_file_size=4)

        with pytest.raises(EvaluationError) as exc_info:
            await adapter.transcribe("https://cdn.example.com/answers/a1.wav")

        assert exc_info.value.kind == ErrorKind.VALIDATION_ERROR
        adapter.client.audio.transcriptions.create.assert_not_called()

    async def test_oversized_stream_stops_reading_at_limit(self) -> None:
        sent = 0

        async def endless_audio():
            nonlocal sent
            for _ in range(1000):
                sent += 1
                yield b"\x00" * 256

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=endless_audio())

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        adapter = _adapter(http_client=client, max_file_size=1024)

        with pytest.raises(EvaluationError) as exc_info:
            await adapter.transcribe("https://cdn.example.com/answers/a1.wav")

        assert exc_info.value.kind == ErrorKind.VALIDATION_ERROR
        assert exc_info.value.details["size_bytes"] == 1280
        assert sent < 10
        adapter.client.audio.transcriptions.create.assert_not_called()

    async def test_invalid_data_url(self) -> None:
        adapter = _adapter()

        with pytest.raises(EvaluationError) as exc_info:
            await adapter.transcribe("data:audio/wav;base64,***")

        assert exc_info.value.kind == ErrorKind.VALIDATION_ERROR

    async def test_unsupported_scheme(self) -> None:
        adapter = _adapter()

        with pytest.raises(EvaluationError) as exc_info:
            await adapter.transcribe("ftp://files.example.com/a1.wav")

        assert exc_info.value.kind == ErrorKind.VALIDATION_ERROR

    @pytest.mark.parametrize(("status_code", "retryable"), [(404, False), (503, True)])
    async def test_download_failure(self, status_code: int, retryable: bool) -> None:
        adapter = _adapter(http_client=_http_client(status_code=status_code))

        with pytest.raises(EvaluationError) as exc_info:
            await adapter.transcribe("https://cdn.example.com/answers/a1.wav")

        assert exc_info.value.kind == ErrorKind.LLM_SERVICE_ERROR
        assert exc_info.value.retryable is retryable


class TestFormats:
    def test_supported_formats(self) -> None:
        adapter = _adapter()

        assert adapter.supports_format("MP3")
        assert adapter.supports_format("webm")
        assert not adapter.supports_format("aiff")
        assert adapter.get_max_file_size() == 1024
