"""Text analysis adapter: score an answer and produce structured feedback."""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, Field, ValidationError

from drill_eval.config import settings
from drill_eval.exceptions import EvaluationError
from drill_eval.services.openai_errors import map_openai_error

logger = logging.getLogger(__name__)

SERVICE_NAME = "OpenAI text analysis"


class AnalysisResult(BaseModel):
    """Raw analysis returned by a provider, before the feedback quality gate.

    Only the shape is checked here. Score range and list rules belong to
    ``Feedback.build``, so a well-formed but out-of-range result fails there
    as a business rule instead of being retried.
    """

    score: int
    feedback: str
    strengths: list[str] = Field(default_factory=list)
    improvements: list[str] = Field(default_factory=list)
    reasoning: str | None = None
    model: str = ""


@dataclass
class AnalysisContext:
    """Question context handed to the analyser."""

    question_id: str
    user_id: str
    metadata: dict[str, Any] = field(default_factory=dict)


class TextAnalysisAdapter(Protocol):
    """Boundary interface for text analysis providers."""

    @property
    def model_name(self) -> str: ...

    async def analyze(self, text: str, context: AnalysisContext) -> AnalysisResult: ...

    async def aclose(self) -> None: ...


# region Prompts

_ANALYSIS_SYSTEM = (
    "You are an expert interview coach and evaluator. "
    "Analyze the interview response and give constructive, specific feedback. "
    "List 2-5 key strengths and 2-5 specific areas for improvement. "
    "Be encouraging but honest and focus on actionable advice. "
    "Respond ONLY with valid JSON matching this schema:\n"
    '{"score": <int 0-100>, "feedback": "<string>", '
    '"strengths": ["<string>", ...], "improvements": ["<string>", ...], '
    '"reasoning": "<string>"}'
)

# endregion


class OpenAITextAnalysisAdapter:
    """Analyze answers with an OpenAI chat model."""

    def __init__(
        self,
        api_key: str = settings.openai_api_key,
        model: str = settings.text_model,
        base_url: str | None = settings.openai_base_url,
        temperature: float = settings.llm_temperature,
        max_tokens: int = settings.llm_max_tokens,
        timeout: float = settings.provider_timeout_seconds,
        max_text_length: int = settings.max_text_length,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.max_text_length = max_text_length
        # Retries are owned by the resilience layer, not the SDK.
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
        )

    @property
    def model_name(self) -> str:
        return self.model

    async def aclose(self) -> None:
        await self.client.close()

    async def analyze(self, text: str, context: AnalysisContext) -> AnalysisResult:
        """Score ``text`` as an answer to ``context.question_id``.

        Raises:
            EvaluationError: VALIDATION_ERROR for empty or oversized text,
                otherwise the kind mapped from the provider failure.
        """
        if not text or not text.strip():
            raise EvaluationError.validation("Text content is required", field="text")
        if len(text) > self.max_text_length:
            raise EvaluationError.validation(
                f"Text content must be less than {self.max_text_length} characters",
                field="text",
            )

        raw = await self._call_llm(_ANALYSIS_SYSTEM, self._build_prompt(text, context))
        try:
            result = self._parse_json(raw, AnalysisResult)
        except json.JSONDecodeError as exc:
            logger.warning("Analysis model returned invalid JSON: %s", exc)
            raise EvaluationError.service(
                SERVICE_NAME, f"Invalid analysis output: {exc}"
            ) from exc
        except ValidationError as exc:
            logger.warning("Analysis model returned an unexpected shape: %s", exc)
            raise EvaluationError.business_rule(
                "Analysis result does not match the expected schema",
                service=SERVICE_NAME,
                errors=[
                    {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                    for err in exc.errors()
                ],
            ) from exc

        result.model = self.model
        return result

    @staticmethod
    def _build_prompt(text: str, context: AnalysisContext) -> str:
        prompt = (
            "Please analyze this interview response:\n\n"
            f'Text: "{text}"\n\n'
            f"Question ID: {context.question_id or 'general'}\n"
        )
        if context.metadata:
            prompt += f"Additional Context: {json.dumps(context.metadata)}\n"
        return prompt

    async def _call_llm(self, system_prompt: str, user_prompt: str) -> str:
        """Make a single chat completion request.

        Raises:
            EvaluationError: If the API call fails or returns no content.
        """
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                response_format={"type": "json_object"},
            )
        except OpenAIError as exc:
            logger.error("Analysis API call failed: %s", exc)
            raise map_openai_error(SERVICE_NAME, exc, self.timeout) from exc

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise EvaluationError.service(SERVICE_NAME, "No response content received")
        return content

    @staticmethod
    def _parse_json(raw: str, model_class: type[BaseModel]) -> BaseModel:
        """Extract and validate JSON from raw LLM text.

        Handles cases where the LLM wraps JSON in markdown code fences.
        """
        text = raw.strip()

        fence_match = re.search(r"```(?:json)?\s*\n?(.*?)\n?\s*```", text, re.DOTALL)
        if fence_match:
            text = fence_match.group(1).strip()

        parsed = json.loads(text)
        return model_class.model_validate(parsed)
