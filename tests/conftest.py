"""Shared fixtures: provider fakes and an analytics sink that records events."""

import asyncio
from collections.abc import Iterator
from typing import Any

import pytest
from loguru import logger

from drill_eval.services.analytics import SafeAnalytics
from drill_eval.services.speech import SUPPORTED_FORMATS, SpeechAdapter, Transcription
from drill_eval.services.text_analysis import AnalysisResult


def make_analysis(**overrides: Any) -> AnalysisResult:
    """Build a valid analysis result."""
    data = {
        "score": 78,
        "feedback": "Clear structure and a relevant example from past work.",
        "strengths": ["Clear structure", "Relevant example"],
        "improvements": ["Quantify the impact"],
        "reasoning": "Covers the situation and the outcome.",
        "model": "fake-model",
    }
    data.update(overrides)
    return AnalysisResult(**data)


class FakeTextAdapter:
    """Text analysis adapter driven by a script of results and errors."""

    def __init__(self, *outcomes: Any, delay: float = 0.0) -> None:
        self.outcomes = list(outcomes) or [make_analysis()]
        self.delay = delay
        self.calls: list[tuple[str, Any]] = []
        self.closed = False

    @property
    def model_name(self) -> str:
        return "fake-model"

    async def analyze(self, text, context):
        self.calls.append((text, context))
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes[0] if len(self.outcomes) == 1 else self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def aclose(self) -> None:
        self.closed = True


class FakeSpeechAdapter(SpeechAdapter):
    """Speech adapter driven by a script of transcripts and errors."""

    def __init__(self, *outcomes: Any) -> None:
        self.outcomes = list(outcomes) or ["I led the migration to the new billing system."]
        self.calls: list[str] = []

    async def transcribe(self, audio_reference, options=None):
        self.calls.append(audio_reference)
        outcome = self.outcomes[0] if len(self.outcomes) == 1 else self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return Transcription(text=outcome, confidence=0.95, language="en")

    def get_supported_formats(self) -> list[str]:
        return list(SUPPORTED_FORMATS)

    def get_max_file_size(self) -> int:
        return 25 * 1024 * 1024


class RecordingSink:
    """Analytics sink that keeps events in memory."""

    def __init__(self, fail: bool = False) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        self.fail = fail
        self.flushed = 0
        self.shut_down = False

    async def capture(self, event: str, properties: dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("collector unavailable")
        self.events.append((event, properties))

    async def flush(self) -> None:
        self.flushed += 1

    async def shutdown(self) -> None:
        self.shut_down = True

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


async def no_sleep(_delay: float) -> None:
    """Stand-in for asyncio.sleep that only yields to the loop."""
    await asyncio.sleep(0)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def analytics(sink: RecordingSink) -> SafeAnalytics:
    return SafeAnalytics(sink)


@pytest.fixture
def log_records() -> Iterator[list[dict[str, Any]]]:
    """Loguru records emitted while the test runs."""
    records: list[dict[str, Any]] = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(handler_id)
