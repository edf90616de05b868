"""
Unit Tests for the Progress Channel
"""
import asyncio
import json

from healloop.services.progress_stream import (
    ProgressChannel,
    encode_event,
    error_event,
    proof_event,
    retry_event,
    text_event,
    tool_call_event,
    tool_result_event,
    usage_event,
)


class TestProgressChannel:
    """Test send/close semantics"""

    async def test_events_delivered_in_order(self):
        """Test the consumer sees events in send order"""
        channel = ProgressChannel()
        channel.send(text_event("a"))
        channel.send(text_event("b"))
        channel.close()

        events = await channel.collect()
        assert [e["content"] for e in events] == ["a", "b"]
        assert channel.sent_count == 2

    async def test_send_after_close_is_dropped(self):
        """Test sending on a closed channel returns False and does not raise"""
        channel = ProgressChannel()
        channel.close()

        assert channel.send(text_event("late")) is False
        assert channel.dropped_count == 1
        assert await channel.collect() == []

    def test_close_is_idempotent(self):
        """Test only the first close has an effect"""
        channel = ProgressChannel()
        assert channel.close() is True
        assert channel.close() is False
        assert channel.closed

    async def test_consumer_waits_for_producer(self):
        """Test a consumer started first receives events sent later"""
        channel = ProgressChannel()
        consumer = asyncio.create_task(channel.collect())

        await asyncio.sleep(0)
        channel.send(text_event("x"))
        channel.close()

        assert await consumer == [text_event("x")]


class TestEventEncoding:
    """Test NDJSON encoding and event shapes"""

    def test_encode_event_is_one_line(self):
        """Test each event encodes to a single JSON line"""
        line = encode_event(retry_event(1, 3, 5000))
        assert line.endswith("\n")
        assert line.count("\n") == 1
        assert json.loads(line) == {
            "type": "retry",
            "retry": {"attempt": 1, "maxAttempts": 3, "retryAfterMs": 5000},
        }

    def test_event_shapes(self):
        """Test every event carries its type and payload key"""
        assert tool_call_event("c1", "create_file", {"path": "a"})["toolCall"]["name"] == "create_file"
        assert tool_result_event("c1", True, "ok", 2.5)["toolResult"]["duration"] == 2.5
        assert usage_event(10, 20, 0.01, "anthropic")["usage"]["outputTokens"] == 20
        assert error_event("auth", "bad key", False)["error"]["retryable"] is False
        assert proof_event([{"type": "file", "label": "a"}])["proof"][0]["label"] == "a"

    def test_builders_cover_every_wire_type(self):
        """Test the builders are the single source of the NDJSON event types"""
        events = [
            text_event("hi"),
            tool_call_event("c1", "create_file", {}),
            tool_result_event("c1", True, "ok"),
            usage_event(1, 2),
            retry_event(1, 3, 1000),
            error_event("timeout", "slow", True),
            proof_event([]),
        ]
        assert [e["type"] for e in events] == [
            "text", "tool-call", "tool-result", "usage", "retry", "error", "proof",
        ]
