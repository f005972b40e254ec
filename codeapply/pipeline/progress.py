"""Progress events: producer-side channel and consumer-side decoding.

Events are plain dicts with a ``type`` key (see ``EventType``) and camelCase
fields, framed either as NDJSON lines or as SSE ``data:`` frames.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from codeapply.schemas import TERMINAL_EVENTS, ApplyResult, EventType


logger = logging.getLogger(__name__)

MEDIA_TYPES = {
    "ndjson": "application/x-ndjson",
    "sse": "text/event-stream",
}

_CLOSED = object()


def _wire_value(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True, mode="json")
    if isinstance(value, EventType):
        return value.value
    return value


def make_event(event_type: EventType | str, **fields: Any) -> dict[str, Any]:
    """Build an event dict; snake_case field names become camelCase."""
    event: dict[str, Any] = {"type": _wire_value(event_type)}
    for key, value in fields.items():
        event[to_camel(key)] = _wire_value(value)
    return event


def encode_event(event: dict[str, Any], stream_format: str = "ndjson") -> str:
    payload = json.dumps(event, default=str)
    if stream_format == "sse":
        return f"data: {payload}\n\n"
    return payload + "\n"


class ProgressSink(ABC):
    """Anything the pipeline can narrate to."""

    @abstractmethod
    async def send(self, event: dict[str, Any]) -> None:
        """Deliver one event."""

    async def emit(self, event_type: EventType | str, **fields: Any) -> None:
        await self.send(make_event(event_type, **fields))


class NullProgress(ProgressSink):
    """Collects events for callers that do not stream (non-streaming endpoint)."""

    def __init__(self):
        self.events: list[dict[str, Any]] = []

    async def send(self, event: dict[str, Any]) -> None:
        self.events.append(event)


class ProgressStream(ProgressSink):
    """Single-producer/single-consumer event channel.

    Sends never block. A terminal event (complete/error) closes the channel;
    anything sent after that is dropped.
    """

    def __init__(self, stream_format: str = "ndjson"):
        self.stream_format = stream_format
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._task: asyncio.Task | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def media_type(self) -> str:
        return MEDIA_TYPES.get(self.stream_format, MEDIA_TYPES["ndjson"])

    async def send(self, event: dict[str, Any]) -> None:
        if self._closed:
            logger.debug(f"Dropping event after close: {event.get('type')}")
            return
        self._queue.put_nowait(event)
        if event.get("type") in TERMINAL_EVENTS:
            self.close()

    def close(self) -> None:
        """Close the channel; safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def run(self, producer: Callable[["ProgressStream"], Awaitable[Any]]) -> asyncio.Task:
        """Start the producer in the background.

        An unhandled producer exception becomes a terminal error event, and
        the channel is always closed when the producer finishes.
        """

        async def runner() -> None:
            try:
                await producer(self)
            except Exception as e:
                logger.error(f"Progress producer failed: {e}", exc_info=True)
                await self.send(make_event(EventType.ERROR, error=str(e)))
            finally:
                self.close()

        self._task = asyncio.create_task(runner())
        return self._task

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    async def __aiter__(self) -> AsyncIterator[str]:
        async for event in self.events():
            yield encode_event(event, self.stream_format)


class EventStreamBuffer:
    """Decodes NDJSON or SSE frames that may arrive split across chunks."""

    def __init__(self):
        self._buffer = ""

    def _parse_line(self, line: str) -> dict[str, Any] | None:
        line = line.strip()
        if not line or line.startswith(":"):
            return None
        if line.startswith("data:"):
            line = line[5:].strip()
        elif line.startswith(("event:", "id:", "retry:")):
            return None
        try:
            event = json.loads(line)
        except ValueError:
            logger.debug(f"Skipping undecodable frame: {line[:80]}")
            return None
        return event if isinstance(event, dict) else None

    def add_chunk(self, chunk: str) -> list[dict[str, Any]]:
        """Feed raw text; returns events completed by this chunk."""
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        events = []
        for line in lines:
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[dict[str, Any]]:
        """Decode whatever is left once the stream ends."""
        rest, self._buffer = self._buffer, ""
        event = self._parse_line(rest)
        return [event] if event is not None else []


@dataclass
class StreamSummary:
    """What a consumer learned from a finished event stream.

    A stream that ends without complete/error is a partial success:
    ``completed`` and ``failed`` are both False.
    """

    completed: bool = False
    failed: bool = False
    result: ApplyResult | None = None
    error: str | None = None
    events: list[dict[str, Any]] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return not self.completed and not self.failed


def summarize_events(events: list[dict[str, Any]]) -> StreamSummary:
    summary = StreamSummary(events=list(events))
    for event in events:
        event_type = event.get("type")
        if event_type == EventType.COMPLETE.value:
            summary.completed = True
            results = event.get("results")
            if isinstance(results, dict):
                summary.result = ApplyResult.model_validate(results)
        elif event_type == EventType.ERROR.value:
            summary.failed = True
            summary.error = str(event.get("error") or event.get("message") or "")
    return summary
