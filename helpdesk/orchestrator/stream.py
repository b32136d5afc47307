"""Data stream plumbing between the completion pipeline and the SSE route.

The pipeline writes typed parts into a DataStreamWriter; the route drains it
and sends each part as one SSE message whose data is
{"event": <part>, "data": <payload>}.

Outward part types:
    text: assistant text delta
    data: structured progress data (reasoning events and tokens)
    annotation: message annotation (message id, trace id, reasoning, prompt info)
    source: citation {sourceType, id, url, title}
    tool_call: a tool invocation the widget may need to run client-side
    error: generic error message
    finish: final finish reason and usage
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

logger = logging.getLogger(__name__)

GENERIC_STREAM_ERROR = "Error generating AI response"

# Internal completion-loop part types
TEXT_DELTA = "text-delta"
TOOL_CALL = "tool-call"
TOOL_RESULT = "tool-result"
STEP_FINISH = "step-finish"
FINISH = "finish"

_CLOSE = object()


@dataclass
class StreamPart:
    """One part produced by the completion loop."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)


async def hide_tool_results(
    parts: AsyncIterator[StreamPart],
) -> AsyncIterator[StreamPart]:
    """Drop tool-result parts; everything else passes through unchanged."""
    async for part in parts:
        if part.type == TOOL_RESULT:
            continue
        yield part


class DataStreamWriter:
    """Queue-backed writer of outward stream parts.

    Writers never block; the consumer drains parts in write order until the
    writer is closed.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, event: str, data: Any) -> None:
        if self._closed:
            logger.debug("Dropping %s part written after close", event)
            return
        self._queue.put_nowait({"event": event, "data": data})

    def write_text(self, text: str) -> None:
        self.write("text", text)

    def write_data(self, value: Any) -> None:
        self.write("data", value)

    def write_message_annotation(self, value: Any) -> None:
        self.write("annotation", value)

    def write_source(self, source: dict[str, Any]) -> None:
        self.write("source", source)

    def write_tool_call(self, tool_call_id: str, tool_name: str, args: dict[str, Any]) -> None:
        self.write("tool_call", {"toolCallId": tool_call_id, "toolName": tool_name, "args": args})

    def write_error(self, message: str = GENERIC_STREAM_ERROR) -> None:
        self.write("error", message)

    def write_finish(self, finish_reason: str, usage: dict[str, int] | None = None) -> None:
        self.write("finish", {"finishReason": finish_reason, "usage": usage or {}})

    async def merge(self, parts: AsyncIterator[StreamPart]) -> None:
        """Forward completion-loop parts as outward stream parts."""
        async for part in parts:
            if part.type == TEXT_DELTA:
                self.write_text(part.data["text"])
            elif part.type == TOOL_CALL:
                self.write_tool_call(
                    part.data["toolCallId"], part.data["toolName"], part.data["args"]
                )
            elif part.type == FINISH:
                self.write_finish(part.data["finishReason"], part.data.get("usage"))

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSE)

    async def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                return
            yield item


# Strong references to running stream tasks; the event loop only keeps weak ones
_running_tasks: set[asyncio.Task] = set()


class DataStream:
    """Parts written by one execute callback, produced by a background task.

    The task starts immediately and runs to completion even when nobody
    drains the stream, so the answer is always persisted. An exception
    escaping execute is logged and surfaced to the client as the generic
    error part; the stream then ends.
    """

    def __init__(self, execute: Callable[[DataStreamWriter], Awaitable[None]]) -> None:
        self._execute = execute
        self.writer = DataStreamWriter()
        self.task = asyncio.create_task(self._run())
        _running_tasks.add(self.task)
        self.task.add_done_callback(_running_tasks.discard)

    async def _run(self) -> None:
        try:
            await self._execute(self.writer)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("AI response stream failed")
            self.writer.write_error(GENERIC_STREAM_ERROR)
        finally:
            self.writer.close()

    def when_done(self, callback: Callable[[], None]) -> None:
        """Run callback once the task has finished (immediately if it has)."""
        if self.task.done():
            callback()
        else:
            self.task.add_done_callback(lambda _: callback())

    async def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        try:
            async for part in self.writer:
                yield part
            await self.task
        finally:
            if not self.task.done():
                logger.info("Stream consumer left early, finishing response in background")


def create_data_stream(execute: Callable[[DataStreamWriter], Awaitable[None]]) -> DataStream:
    """Start execute in the background and return the stream of its parts."""
    return DataStream(execute)
