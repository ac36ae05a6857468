import asyncio
import json

import pytest

from llm_hub.client import LlmClient, TurnLifecycle
from llm_hub.domain.conversation import ConversationMemory
from llm_hub.domain.exceptions import (
    ApiError,
    Cancelled,
    InvalidState,
    ProtocolViolation,
    TransportError,
    UnsupportedFeature,
)
from llm_hub.domain.models import (
    ClientConfig,
    ContentDelta,
    Done,
    ErrorEvent,
    ErrorKind,
    ModelParams,
    RateLimitConfig,
    TextSegment,
    ToolDef,
    Turn,
)
from llm_hub.infrastructure.logging.observability import TurnPhase


def _config(**kw):
    kw.setdefault("provider", "deepseek")
    kw.setdefault("base_url", "https://api.test/v1")
    kw.setdefault("auth_credential", "sk-test-1234567890")
    kw.setdefault("retry_backoff_base", 0.001)
    kw.setdefault("retry_backoff_max", 0.002)
    return ClientConfig(**kw)


def _content(text):
    return ("data: " + json.dumps({"choices": [{"index": 0, "delta": {"content": text}}]}) + "\n\n").encode()


def sse(*texts):
    return [_content(t) for t in texts] + [b"data: [DONE]\n\n"]


class FakeStream:
    def __init__(self, chunks, hang=False):
        self.chunks = list(chunks)
        self.hang = hang
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk
        if self.hang:
            await asyncio.Event().wait()

    async def aclose(self):
        self.closed = True


class FakeTransport:
    """按顺序返回预设响应：列表为 chunk 脚本，异常则在 send_request 时抛出。"""

    def __init__(self, *responses, hang=False):
        self.responses = list(responses)
        self.hang = hang
        self.requests = []
        self.streams = []
        self.closed = False

    async def send_request(self, request):
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        stream = FakeStream(response, hang=self.hang)
        self.streams.append(stream)
        return stream

    async def aclose(self):
        self.closed = True


@pytest.mark.asyncio
async def test_two_sequential_sends_carry_history():
    transport = FakeTransport(sse("Hi", " there"), sse("Sure"))
    client = LlmClient(_config(), transport=transport)

    first = await client.send("hello")
    assert first.text == "Hi there"
    assert first.finished
    history = list(client.memory.history())
    assert [(t.role, t.text) for t in history] == [("user", "hello"), ("assistant", "Hi there")]

    second = await client.send("again")
    assert second.text == "Sure"
    assert transport.requests[1].body["messages"] == [
        {"role": "user", "content": "hello"},
        {"role": "assistant", "content": "Hi there"},
        {"role": "user", "content": "again"},
    ]
    assert [t.seq for t in client.memory.snapshot()] == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_context_limit_applies_to_request_history():
    transport = FakeTransport(sse("1"), sse("2"), sse("3"))
    client = LlmClient(_config(context_max_turns=2), transport=transport)
    await client.send("a")
    await client.send("b")
    await client.send("c")
    assert [m["content"] for m in transport.requests[2].body["messages"]] == ["b", "2", "c"]
    assert len(client.memory) == 6


@pytest.mark.asyncio
async def test_stream_appends_before_done_is_yielded():
    client = LlmClient(_config(), transport=FakeTransport(sse("a", "b")))
    turn_stream = await client.stream("hi")
    seen = []
    async for event in turn_stream:
        if isinstance(event, Done):
            assert len(client.memory) == 2
        else:
            assert len(client.memory) == 0
        seen.append(event)
    assert seen == [ContentDelta("a"), ContentDelta("b"), Done()]
    assert turn_stream.result.text == "ab"
    assert turn_stream.phase is TurnPhase.COMPLETED
    assert client.memory.last().provider_metadata["provider"] == "deepseek"


@pytest.mark.asyncio
async def test_error_leaves_memory_untouched():
    transport = FakeTransport([_content("a"), b'data: {"error":{"message":"insufficient_quota"}}\n\n'])
    client = LlmClient(_config(), transport=transport)
    with pytest.raises(ApiError) as ei:
        await client.send("hi")
    assert "insufficient_quota" in ei.value.message
    assert len(client.memory) == 0
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_stream_yields_error_as_last_event():
    client = LlmClient(_config(), transport=FakeTransport([b"data: {broken\n\n"]))
    turn_stream = await client.stream("hi")
    events = [event async for event in turn_stream]
    assert isinstance(events[-1], ErrorEvent)
    assert turn_stream.result is None
    assert turn_stream.phase is TurnPhase.FAILED
    assert len(client.memory) == 0


@pytest.mark.asyncio
async def test_transport_error_before_stream_is_retried():
    transport = FakeTransport(
        TransportError(code="NETWORK_ERROR", message="connect failed"),
        TransportError(code="TIMEOUT", message="timed out"),
        sse("ok"),
    )
    client = LlmClient(_config(max_retries=3), transport=transport)
    turn = await client.send("hi")
    assert turn.text == "ok"
    assert len(transport.requests) == 3
    assert transport.requests[0].body == transport.requests[2].body
    assert len(client.memory) == 2


@pytest.mark.asyncio
async def test_retries_are_bounded():
    transport = FakeTransport(*[TransportError(code="NETWORK_ERROR", message="down") for _ in range(3)])
    client = LlmClient(_config(max_retries=2), transport=transport)
    with pytest.raises(TransportError):
        await client.send("hi")
    assert len(transport.requests) == 3


@pytest.mark.asyncio
async def test_transport_error_after_events_is_not_retried():
    transport = FakeTransport([_content("a"), TransportError(code="NETWORK_ERROR", message="reset")], sse("never"))
    client = LlmClient(_config(max_retries=3), transport=transport)
    with pytest.raises(TransportError) as ei:
        await client.send("hi")
    assert ei.value.extra["events_seen"] == 1
    assert len(transport.requests) == 1
    assert len(client.memory) == 0


@pytest.mark.asyncio
async def test_api_errors_are_not_retried():
    transport = FakeTransport(ApiError(code="AUTH_ERROR", message="bad key", http_status=401), sse("never"))
    client = LlmClient(_config(), transport=transport)
    with pytest.raises(ApiError):
        await client.send("hi")
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_unsupported_feature_makes_no_network_call():
    transport = FakeTransport(sse("never"))
    client = LlmClient(_config(provider="tencent"), transport=transport)
    tool = ToolDef(name="f", description="d", params={})
    with pytest.raises(UnsupportedFeature):
        await client.send("hi", ModelParams(tools=[tool]))
    assert transport.requests == []


@pytest.mark.asyncio
async def test_non_streaming_send():
    body = json.dumps(
        {"choices": [{"index": 0, "message": {"role": "assistant", "content": "whole"}, "finish_reason": "stop"}]}
    ).encode()
    transport = FakeTransport([body])
    client = LlmClient(_config(), transport=transport)
    turn = await client.send(Turn.user("hi"), streaming=False)
    assert turn.text == "whole"
    assert turn.provider_metadata["finish_reason"] == "stop"
    assert transport.requests[0].body["stream"] is False


@pytest.mark.asyncio
async def test_lifecycle_events_reach_sinks():
    phases = []

    def sink(event):
        phases.append(event.phase)

    def broken_sink(event):
        raise RuntimeError("sink down")

    client = LlmClient(_config(), transport=FakeTransport(sse("x")), sinks=[sink, broken_sink])
    await client.send("hi")
    assert phases == [
        TurnPhase.QUEUED,
        TurnPhase.RATE_LIMITED,
        TurnPhase.SENDING,
        TurnPhase.STREAMING,
        TurnPhase.FINALIZING,
        TurnPhase.COMPLETED,
    ]


def test_lifecycle_rejects_illegal_transitions():
    lifecycle = TurnLifecycle("deepseek", "c-1", "t-1")
    with pytest.raises(InvalidState):
        lifecycle.advance(TurnPhase.STREAMING)
    lifecycle.advance(TurnPhase.RATE_LIMITED)
    lifecycle.cancel()
    assert lifecycle.phase is TurnPhase.CANCELLED
    with pytest.raises(InvalidState):
        lifecycle.advance(TurnPhase.SENDING)
    lifecycle.cancel()


@pytest.mark.asyncio
async def test_cancel_in_flight_stream():
    transport = FakeTransport([_content("par")], hang=True)
    client = LlmClient(_config(close_timeout=0.5), transport=transport)
    turn_stream = await client.stream("hi")
    assert await turn_stream.__anext__() == ContentDelta("par")

    await asyncio.wait_for(turn_stream.aclose(), timeout=1.0)
    assert transport.streams[0].closed
    assert turn_stream.phase is TurnPhase.CANCELLED
    with pytest.raises(Cancelled):
        await turn_stream.__anext__()
    assert len(client.memory) == 0
    assert turn_stream.partial_turn().text == "par"


@pytest.mark.asyncio
async def test_commit_partial_is_explicit():
    transport = FakeTransport([_content("half")], hang=True)
    client = LlmClient(_config(), transport=transport)
    async with await client.stream("hi") as turn_stream:
        await turn_stream.__anext__()
        stored = await turn_stream.commit_partial()
    assert stored.text == "half"
    assert stored.finished
    assert stored.provider_metadata["partial"] is True
    assert [t.role for t in client.memory.snapshot()] == ["user", "assistant"]
    with pytest.raises(InvalidState):
        await turn_stream.commit_partial()


@pytest.mark.asyncio
async def test_client_close_cancels_streams_and_limiter():
    transport = FakeTransport([_content("a")], hang=True)
    client = LlmClient(_config(rate_limit=RateLimitConfig(requests_per_sec=10)), transport=transport)
    turn_stream = await client.stream("hi")
    await client.aclose()

    assert transport.streams[0].closed
    assert client.limiter.closed
    assert not transport.closed
    with pytest.raises(Cancelled):
        await turn_stream.__anext__()
    with pytest.raises(Cancelled):
        await client.send("again")


@pytest.mark.asyncio
async def test_new_conversation_shares_limiter_and_transport():
    transport = FakeTransport(sse("one"), sse("two"))
    async with LlmClient(_config(), transport=transport) as client:
        other = client.new_conversation()
        assert other.limiter is client.limiter
        assert other.conversation_id != client.conversation_id
        await client.send("a")
        await other.send("b")
        assert transport.requests[1].body["messages"] == [{"role": "user", "content": "b"}]
        assert len(client.memory) == 2
        assert len(other.memory) == 2


def test_send_rejects_unknown_input_type():
    client = LlmClient(_config(), transport=FakeTransport())
    with pytest.raises(TypeError):
        asyncio.run(client.send(42))


@pytest.mark.asyncio
async def test_injected_memory_is_used_even_when_empty():
    memory = ConversationMemory("c-fixed")
    client = LlmClient(_config(), transport=FakeTransport(sse("ok")), memory=memory)
    await client.send("hi")
    assert client.conversation_id == "c-fixed"
    assert len(memory) == 2


@pytest.mark.asyncio
async def test_non_string_content_fails_as_protocol_violation():
    frame = b'data: {"choices":[{"index":0,"delta":{"content":5}}]}\n\n'
    transport = FakeTransport([frame, b"data: [DONE]\n\n"], [frame, b"data: [DONE]\n\n"])
    client = LlmClient(_config(), transport=transport)
    with pytest.raises(ProtocolViolation):
        await client.send("hi")

    turn_stream = await client.stream("hi")
    events = [event async for event in turn_stream]
    assert len(events) == 1
    assert events[0].kind == ErrorKind.PROTOCOL_VIOLATION
    assert turn_stream.phase is TurnPhase.FAILED
    assert len(client.memory) == 0
    assert not client._active


@pytest.mark.asyncio
async def test_unfinished_input_turn_is_rejected_before_sending():
    transport = FakeTransport(sse("never"))
    phases = []
    client = LlmClient(_config(), transport=transport, sinks=[lambda e: phases.append(e.phase)])
    unfinished = Turn(role="user", segments=(TextSegment("hi"),), finished=False)
    with pytest.raises(InvalidState):
        await client.stream(unfinished)
    with pytest.raises(InvalidState):
        await client.send(unfinished)
    assert transport.requests == []
    assert phases == []
    assert not client._active


class RejectingMemory(ConversationMemory):
    def append(self, turn):
        raise InvalidState(code="MEMORY_READ_ONLY", message="memory is read only")


@pytest.mark.asyncio
async def test_commit_failure_marks_turn_failed():
    client = LlmClient(_config(), transport=FakeTransport(sse("ok")), memory=RejectingMemory())
    turn_stream = await client.stream("hi")
    assert await turn_stream.__anext__() == ContentDelta("ok")
    with pytest.raises(InvalidState):
        await turn_stream.__anext__()
    assert turn_stream.phase is TurnPhase.FAILED
    assert turn_stream.result is None
    assert not client._active
    with pytest.raises(StopAsyncIteration):
        await turn_stream.__anext__()
