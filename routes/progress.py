# progress.py - ordered, one-way progress stream (newline-delimited JSON)

from typing import Any, AsyncIterator, Dict, List, Optional
import asyncio
import json
import logging

logger = logging.getLogger(__name__)

EVENT_TYPES = frozenset({
    "start",
    "step",
    "file-progress",
    "file-complete",
    "file-error",
    "command-progress",
    "command-complete",
    "command-error",
    "package-progress",
    "package-success",
    "warning",
    "status",
    "complete",
    "error",
    # incremental parse events
    "text",
    "file-open",
    "file-chunk",
    "file-close",
})

NDJSON_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def encode_event(event: Dict[str, Any]) -> bytes:
    return (json.dumps(event, ensure_ascii=False, default=str) + "\n").encode("utf-8")


class ProgressChannel:
    """
    Single-writer event stream:
      - send() enqueues one typed event, in call order
      - async iteration yields one NDJSON frame per event until close()
      - events sent after close() are dropped
    """

    media_type = "application/x-ndjson"

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue()
        self._closed = False
        self.history: List[Dict[str, Any]] = []
        self.headers = dict(NDJSON_HEADERS)

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, type: str, **fields: Any) -> None:
        if type not in EVENT_TYPES:
            raise ValueError(f"Unknown progress event type: {type}")
        if self._closed:
            logger.debug("[progress] Dropping %s event sent after close", type)
            return
        event = {"type": type, **fields}
        self.history.append(event)
        await self._queue.put(encode_event(event))

    async def send_event(self, event: Dict[str, Any]) -> None:
        fields = {k: v for k, v in event.items() if k != "type"}
        await self.send(event["type"], **fields)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.put(None)

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._aiter()

    async def _aiter(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                break
            yield chunk


async def emit(channel: Optional[ProgressChannel], type: str, **fields: Any) -> None:
    """Send on ``channel`` when one is attached."""
    if channel is not None:
        await channel.send(type, **fields)


# Strong references to fire-and-forget tasks so they are not collected mid-run
_background_tasks: "set[asyncio.Task]" = set()


def start_background(coro) -> "asyncio.Task":
    task = asyncio.get_running_loop().create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task
