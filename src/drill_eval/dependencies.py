"""Service container built by the process entry point, plus FastAPI providers."""

from dataclasses import dataclass

from fastapi import Request
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncEngine

from drill_eval.config import Settings
from drill_eval.db import create_engine, create_session_factory, create_tables
from drill_eval.exceptions import ErrorKind, EvaluationError
from drill_eval.services.analytics import (
    AnalyticsEvent,
    AnalyticsSink,
    SafeAnalytics,
    build_analytics,
)
from drill_eval.services.circuit_breaker import BreakerStatus, CircuitBreakerRegistry
from drill_eval.services.evaluation import EvaluationService
from drill_eval.services.intake import EvaluationIntakeService
from drill_eval.services.job_queue import InProcessJobQueue
from drill_eval.services.resilience import ResilientCaller
from drill_eval.services.retry import RetryExecutor, RetryPolicy, RetryStrategy
from drill_eval.services.speech import OpenAISpeechAdapter, SpeechAdapter
from drill_eval.services.stores import (
    EvaluationStateStore,
    IdempotencyStore,
    InMemoryEvaluationStateStore,
    InMemoryIdempotencyStore,
    SqlEvaluationStateStore,
    SqlIdempotencyStore,
)
from drill_eval.services.text_analysis import OpenAITextAnalysisAdapter, TextAnalysisAdapter

SPEECH_DEPENDENCY = "speech"
TEXT_ANALYSIS_DEPENDENCY = "text_analysis"


@dataclass
class ServiceContainer:
    """Every long-lived collaborator of the API process."""

    settings: Settings
    analytics: SafeAnalytics
    breakers: CircuitBreakerRegistry
    speech_adapter: SpeechAdapter
    text_adapter: TextAnalysisAdapter
    idempotency_store: IdempotencyStore
    state_store: EvaluationStateStore
    evaluation_service: EvaluationService
    queue: InProcessJobQueue
    intake_service: EvaluationIntakeService
    engine: AsyncEngine | None = None

    async def start(self) -> None:
        if self.engine is not None:
            await create_tables(self.engine)
        await self.queue.start()
        logger.info(
            "Service container started",
            store_backend=self.settings.store_backend,
            worker_concurrency=self.settings.worker_concurrency,
        )

    async def shutdown(self) -> None:
        await self.queue.shutdown()
        await self.analytics.shutdown()
        await self.speech_adapter.aclose()
        await self.text_adapter.aclose()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("Service container stopped")


def build_retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.retry_max_attempts,
        base_delay=settings.retry_base_delay_seconds,
        max_delay=settings.retry_max_delay_seconds,
        strategy=RetryStrategy(settings.retry_strategy),
        jitter=settings.retry_jitter,
    )


def build_container(
    settings: Settings,
    speech_adapter: SpeechAdapter | None = None,
    text_adapter: TextAnalysisAdapter | None = None,
    analytics_sink: AnalyticsSink | None = None,
) -> ServiceContainer:
    """Wire the service from settings; adapters and sink may be injected."""
    if analytics_sink is not None:
        analytics = SafeAnalytics(analytics_sink)
    else:
        analytics = build_analytics(
            settings.analytics_endpoint,
            flush_size=settings.analytics_flush_size,
            max_buffer=settings.analytics_max_buffer,
        )

    def on_breaker_change(name: str, previous: BreakerStatus, current: BreakerStatus) -> None:
        if current == BreakerStatus.OPEN:
            analytics.track_nowait(
                AnalyticsEvent.CIRCUIT_OPENED, dependency=name, previous=previous.value
            )
        elif current == BreakerStatus.CLOSED:
            analytics.track_nowait(
                AnalyticsEvent.CIRCUIT_CLOSED, dependency=name, previous=previous.value
            )

    breakers = CircuitBreakerRegistry(
        threshold=settings.circuit_breaker_threshold,
        open_duration=settings.circuit_breaker_open_seconds,
        listener=on_breaker_change,
    )
    retry = RetryExecutor(build_retry_policy(settings))

    speech_adapter = speech_adapter or OpenAISpeechAdapter(
        api_key=settings.openai_api_key,
        model=settings.speech_model,
        base_url=settings.openai_base_url,
        timeout=settings.provider_timeout_seconds,
        max_file_size=settings.max_audio_size_bytes,
    )
    text_adapter = text_adapter or OpenAITextAnalysisAdapter(
        api_key=settings.openai_api_key,
        model=settings.text_model,
        base_url=settings.openai_base_url,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
        timeout=settings.provider_timeout_seconds,
        max_text_length=settings.max_text_length,
    )

    engine = None
    if settings.store_backend == "database":
        engine = create_engine(settings.database_url, echo=settings.debug)
        session_factory = create_session_factory(engine)
        idempotency_store = SqlIdempotencyStore(session_factory)
        state_store = SqlEvaluationStateStore(session_factory)
    elif settings.store_backend == "memory":
        idempotency_store = InMemoryIdempotencyStore()
        state_store = InMemoryEvaluationStateStore()
    else:
        raise ValueError(f"Unknown store backend: {settings.store_backend}")

    evaluation_service = EvaluationService(
        speech_adapter=speech_adapter,
        text_adapter=text_adapter,
        speech_caller=ResilientCaller(breakers.get(SPEECH_DEPENDENCY), retry, analytics),
        text_caller=ResilientCaller(breakers.get(TEXT_ANALYSIS_DEPENDENCY), retry, analytics),
        idempotency_store=idempotency_store,
        state_store=state_store,
        analytics=analytics,
        fallback_enabled=settings.fallback_enabled,
        fallback_score=settings.fallback_score,
    )
    queue = InProcessJobQueue(
        evaluation_service.run_job,
        concurrency=settings.worker_concurrency,
        max_attempts=settings.job_max_attempts,
        retry_delay=settings.job_retry_delay_seconds,
    )
    intake_service = EvaluationIntakeService(
        queue=queue,
        idempotency_store=idempotency_store,
        state_store=state_store,
        sync_wait_seconds=settings.sync_wait_seconds,
    )

    return ServiceContainer(
        settings=settings,
        analytics=analytics,
        breakers=breakers,
        speech_adapter=speech_adapter,
        text_adapter=text_adapter,
        idempotency_store=idempotency_store,
        state_store=state_store,
        evaluation_service=evaluation_service,
        queue=queue,
        intake_service=intake_service,
        engine=engine,
    )


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise EvaluationError(ErrorKind.INTERNAL_ERROR, "Service is not started")
    return container


def get_intake_service(request: Request) -> EvaluationIntakeService:
    """Provide the intake service to route handlers."""
    return get_container(request).intake_service
