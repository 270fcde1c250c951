"""Fire-and-forget analytics sinks.

Sink failures are logged and swallowed by ``SafeAnalytics``; they never
reach an evaluation.
"""

import asyncio
from collections import deque
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

import httpx
from loguru import logger


class AnalyticsEvent(StrEnum):
    SUBMISSION_STARTED = "submission_started"
    SUBMISSION_COMPLETED = "submission_completed"
    SUBMISSION_FAILED = "submission_failed"
    RETRY_ATTEMPTED = "retry_attempted"
    CIRCUIT_OPENED = "circuit_opened"
    CIRCUIT_CLOSED = "circuit_closed"
    FALLBACK_USED = "fallback_used"


class AnalyticsSink(Protocol):
    """Destination for analytics events."""

    async def capture(self, event: str, properties: dict[str, Any]) -> None: ...

    async def flush(self) -> None: ...

    async def shutdown(self) -> None: ...


class LoggingAnalyticsSink:
    """Write analytics events to the application log."""

    async def capture(self, event: str, properties: dict[str, Any]) -> None:
        logger.info("Analytics event", event=event, **properties)

    async def flush(self) -> None:
        return None

    async def shutdown(self) -> None:
        return None


class HttpAnalyticsSink:
    """Buffer events and POST them in batches to an HTTP collector.

    ``capture`` never waits on the network: a full batch is sent by a
    background task, one at a time. The buffer holds at most ``max_buffer``
    events; when the collector is down the oldest events are dropped.
    """

    def __init__(
        self,
        endpoint: str,
        flush_size: int = 20,
        client: httpx.AsyncClient | None = None,
        timeout: float = 5.0,
        max_buffer: int = 1000,
    ) -> None:
        self.endpoint = endpoint
        self.flush_size = flush_size
        self.max_buffer = max(max_buffer, flush_size)
        self.dropped = 0
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._buffer: deque[dict[str, Any]] = deque(maxlen=self.max_buffer)
        self._flush_task: asyncio.Task | None = None

    async def capture(self, event: str, properties: dict[str, Any]) -> None:
        self._keep(
            [
                {
                    "event": event,
                    "properties": properties,
                    "timestamp": datetime.now(UTC).isoformat(),
                }
            ]
        )
        if len(self._buffer) >= self.flush_size and not self._flushing:
            self._flush_task = asyncio.create_task(self._flush_in_background())

    async def flush(self) -> None:
        batch = list(self._buffer)
        self._buffer.clear()
        if not batch:
            return
        try:
            response = await self._client.post(self.endpoint, json={"batch": batch})
            response.raise_for_status()
        except httpx.HTTPError:
            # Put the batch back ahead of newer events; overflow drops the oldest.
            newer = list(self._buffer)
            self._buffer.clear()
            self._keep(batch + newer)
            raise

    async def shutdown(self) -> None:
        try:
            if self._flushing:
                await self._flush_task
            await self.flush()
        finally:
            await self._client.aclose()

    @property
    def _flushing(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    async def _flush_in_background(self) -> None:
        try:
            await self.flush()
        except httpx.HTTPError as exc:
            logger.warning(
                "Analytics batch not delivered",
                endpoint=self.endpoint,
                buffered=len(self._buffer),
                error=f"{type(exc).__name__}: {exc}",
            )

    def _keep(self, events: list[dict[str, Any]]) -> None:
        overflow = len(self._buffer) + len(events) - self.max_buffer
        if overflow > 0:
            self.dropped += overflow
            logger.warning("Analytics buffer full, dropping oldest events", dropped=overflow)
        self._buffer.extend(events)


class SafeAnalytics:
    """Wrap a sink so that analytics can never fail the caller."""

    def __init__(self, sink: AnalyticsSink) -> None:
        self.sink = sink
        self._pending: set[asyncio.Task] = set()

    async def track(self, event: AnalyticsEvent | str, **properties: Any) -> None:
        try:
            await self.sink.capture(str(event), properties)
        except Exception as exc:
            logger.warning(
                "Analytics capture failed",
                analytics_event=str(event),
                error=f"{type(exc).__name__}: {exc}",
            )

    def track_nowait(self, event: AnalyticsEvent | str, **properties: Any) -> None:
        """Schedule ``track`` from synchronous code running inside the loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop for analytics event", analytics_event=str(event))
            return
        task = loop.create_task(self.track(event, **properties))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        try:
            await self.sink.flush()
        except Exception as exc:
            logger.warning("Analytics flush failed", error=f"{type(exc).__name__}: {exc}")

    async def shutdown(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        try:
            await self.sink.shutdown()
        except Exception as exc:
            logger.warning(
                "Analytics shutdown failed", error=f"{type(exc).__name__}: {exc}"
            )


def build_analytics(
    endpoint: str = "", flush_size: int = 20, max_buffer: int = 1000
) -> SafeAnalytics:
    """Pick the HTTP sink when an endpoint is configured, else the log sink."""
    if endpoint:
        return SafeAnalytics(
            HttpAnalyticsSink(endpoint, flush_size=flush_size, max_buffer=max_buffer)
        )
    return SafeAnalytics(LoggingAnalyticsSink())
