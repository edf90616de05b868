"""
Progress channel for streamed agent executions.

A single producer (the retry engine) pushes ProgressEvents; a single consumer
(the HTTP response, the CLI) drains them with `async for`. close() is
idempotent and anything sent after it is dropped, so racing close/send calls
never raise.

Wire format is NDJSON: one JSON object per line, e.g.

    {"type": "text", "content": "Creating files..."}
    {"type": "retry", "retry": {"attempt": 1, "maxAttempts": 3, "retryAfterMs": 5000}}
    {"type": "error", "error": {"type": "auth", "message": "...", "retryable": false}}
"""

import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional


ProgressEvent = Dict[str, Any]

_CLOSED = object()


class ProgressChannel:
    """Producer/consumer channel with an exactly-once close"""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self.sent_count = 0
        self.dropped_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: ProgressEvent) -> bool:
        """Queue an event. Returns False (and drops it) once the channel is closed."""
        if self._closed:
            self.dropped_count += 1
            return False
        self._queue.put_nowait(event)
        self.sent_count += 1
        return True

    def close(self) -> bool:
        """Close the channel. Only the first call has any effect."""
        if self._closed:
            return False
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        return True

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    async def collect(self) -> List[ProgressEvent]:
        return [event async for event in self]


def encode_event(event: ProgressEvent) -> str:
    return json.dumps(event, default=str) + "\n"


# =============================================================================
# Event constructors
# =============================================================================

def text_event(content: str) -> ProgressEvent:
    return {"type": "text", "content": content}


def tool_call_event(call_id: str, name: str, args: Dict[str, Any]) -> ProgressEvent:
    return {"type": "tool-call", "toolCall": {"id": call_id, "name": name, "args": args}}


def tool_result_event(call_id: str, success: bool, output: str, duration: float = 0) -> ProgressEvent:
    return {
        "type": "tool-result",
        "toolResult": {"id": call_id, "success": success, "output": output, "duration": duration},
    }


def usage_event(input_tokens: int, output_tokens: int, estimated_cost: float = 0.0,
                provider: Optional[str] = None) -> ProgressEvent:
    return {
        "type": "usage",
        "usage": {
            "inputTokens": input_tokens,
            "outputTokens": output_tokens,
            "estimatedCost": estimated_cost,
            "provider": provider,
        },
    }


def retry_event(attempt: int, max_attempts: int, retry_after_ms: int) -> ProgressEvent:
    return {
        "type": "retry",
        "retry": {"attempt": attempt, "maxAttempts": max_attempts, "retryAfterMs": retry_after_ms},
    }


def error_event(error_type: str, message: str, retryable: bool) -> ProgressEvent:
    return {"type": "error", "error": {"type": error_type, "message": message, "retryable": retryable}}


def proof_event(items: List[Dict[str, str]]) -> ProgressEvent:
    return {"type": "proof", "proof": items}
