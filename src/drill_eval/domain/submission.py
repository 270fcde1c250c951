"""Submission entity: one user-provided answer."""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlparse

from drill_eval.exceptions import EvaluationError


@dataclass(frozen=True)
class Submission:
    """A text or audio answer to a single question."""

    user_id: str
    question_id: str
    content: str = ""
    audio_reference: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    submitted_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def has_audio(self) -> bool:
        return bool(self.audio_reference)

    @property
    def needs_transcription(self) -> bool:
        """Audio, when present, is transcribed and replaces typed content."""
        return self.has_audio

    def validate(self) -> None:
        """Check the fields every evaluation needs.

        Raises:
            EvaluationError: VALIDATION_ERROR naming the offending field.
        """
        if not self.content.strip() and not self.audio_reference:
            raise EvaluationError.validation(
                "Content or audio URL is required",
                field="content",
            )
        if not self.question_id:
            raise EvaluationError.validation(
                "Question ID is required", field="question_id"
            )
        if not self.user_id:
            raise EvaluationError.validation("User ID is required", field="user_id")


def audio_format_of(audio_reference: str) -> str:
    """Return the lower-cased audio format of a URL or ``data:`` URL.

    ``data:audio/webm;base64,...`` gives ``webm``; ``https://x/a.MP3`` gives
    ``mp3``. Anything unrecognised gives ``unknown``.
    """
    if audio_reference.startswith("data:"):
        header = audio_reference[5:].split(",", 1)[0]
        mime_type = header.split(";", 1)[0]
        if "/" in mime_type:
            return mime_type.split("/", 1)[1].lower() or "unknown"
        return "unknown"

    path = urlparse(audio_reference).path
    filename = path.rsplit("/", 1)[-1]
    if "." not in filename:
        return "unknown"
    return filename.rsplit(".", 1)[1].lower() or "unknown"
