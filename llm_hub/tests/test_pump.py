import asyncio
import json

import pytest

from llm_hub.domain.exceptions import Cancelled, InvalidState, TransportError
from llm_hub.domain.models import ClientConfig, ContentDelta, Done, ErrorEvent, ErrorKind, ModelParams, Turn
from llm_hub.providers import create_adapter
from llm_hub.streaming.pump import StreamPump


def _adapter():
    config = ClientConfig(provider="deepseek", base_url="https://api.test/v1", auth_credential="sk-test-1234567890")
    adapter = create_adapter(config)
    adapter.build_request([Turn.user("hi")], ModelParams())
    return adapter


def _content(text):
    return ("data: " + json.dumps({"choices": [{"index": 0, "delta": {"content": text}}]}) + "\n\n").encode()


class ScriptedStream:
    """按脚本产出 chunk；脚本项为异常时抛出，hang=True 时最后一直挂起。"""

    def __init__(self, chunks, hang=False):
        self.chunks = list(chunks)
        self.hang = hang
        self.reads = 0
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            if isinstance(chunk, Exception):
                raise chunk
            self.reads += 1
            yield chunk
        if self.hang:
            await asyncio.Event().wait()

    async def aclose(self):
        self.closed = True


class BrokenAdapter:
    name = "broken"

    def parse_chunk(self, raw):
        raise RuntimeError("parser exploded")

    def finish(self):
        return []


async def _wait_until(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


@pytest.mark.asyncio
async def test_events_delivered_in_order_then_end():
    source = ScriptedStream([_content("a"), _content("b"), b"data: [DONE]\n\n"])
    pump = StreamPump(_adapter(), source, capacity=4).start()
    events = [event async for event in pump]
    assert events == [ContentDelta("a"), ContentDelta("b"), Done()]
    assert await pump.next_event() is None
    assert await pump.next_event() is None
    assert pump.finished
    turn = pump.final_turn()
    assert turn.finished and turn.text == "ab"
    assert turn.provider_metadata == {}
    await _wait_until(lambda: source.closed)


@pytest.mark.asyncio
async def test_slow_consumer_bounds_buffer_and_reads():
    capacity = 4
    source = ScriptedStream([_content(str(i)) for i in range(40)] + [b"data: [DONE]\n\n"])
    pump = StreamPump(_adapter(), source, capacity=capacity).start()

    consumed = 0
    text = []
    while True:
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert pump.buffered <= capacity
        assert source.reads <= consumed + capacity + 1
        event = await pump.next_event()
        if event is None:
            break
        consumed += 1
        if isinstance(event, ContentDelta):
            text.append(event.text)
    assert "".join(text) == "".join(str(i) for i in range(40))
    assert pump.high_water_mark == capacity


@pytest.mark.asyncio
async def test_error_discards_unread_events():
    source = ScriptedStream(
        [_content("a"), _content("b"), _content("c"), b'data: {"error":{"message":"boom"}}\n\n', _content("d")]
    )
    pump = StreamPump(_adapter(), source, capacity=8).start()
    await _wait_until(lambda: pump.failed)

    assert await pump.next_event() == ErrorEvent(kind=ErrorKind.API_ERROR, message="boom")
    assert await pump.next_event() is None
    partial = pump.partial_turn()
    assert partial.text == "abc"
    assert partial.finished is False
    assert partial.provider_metadata["error"]["kind"] == "api_error"
    with pytest.raises(InvalidState):
        pump.final_turn()


@pytest.mark.asyncio
async def test_transport_failure_mid_stream():
    source = ScriptedStream([_content("a"), TransportError(code="NETWORK_ERROR", message="connection reset")])
    pump = StreamPump(_adapter(), source, capacity=1).start()
    events = [event async for event in pump]
    assert events[-1] == ErrorEvent(kind=ErrorKind.TRANSPORT_ERROR, message="connection reset")
    assert pump.partial_turn().text == "a"
    await _wait_until(lambda: source.closed)


@pytest.mark.asyncio
async def test_adapter_crash_becomes_protocol_violation():
    pump = StreamPump(BrokenAdapter(), ScriptedStream([b"x"]), capacity=2).start()
    event = await pump.next_event()
    assert event.kind == ErrorKind.PROTOCOL_VIOLATION
    assert "parser exploded" in event.message


@pytest.mark.asyncio
async def test_eof_without_terminal_frame():
    pump = StreamPump(_adapter(), ScriptedStream([_content("a")]), capacity=2).start()
    events = [event async for event in pump]
    assert events[0] == ContentDelta("a")
    assert events[-1].kind == ErrorKind.PROTOCOL_VIOLATION


@pytest.mark.asyncio
async def test_cancel_closes_source_and_stops_delivery():
    source = ScriptedStream([_content("a")], hang=True)
    pump = StreamPump(_adapter(), source, capacity=4, close_timeout=0.5).start()
    assert await pump.next_event() == ContentDelta("a")

    waiting = asyncio.create_task(pump.next_event())
    await asyncio.sleep(0.01)
    await asyncio.wait_for(pump.aclose(), timeout=1.0)

    assert source.closed
    assert pump.cancelled
    with pytest.raises(Cancelled):
        await waiting
    with pytest.raises(Cancelled):
        await pump.next_event()
    assert pump.partial_turn().text == "a"
    assert pump.partial_turn().finished is False


@pytest.mark.asyncio
async def test_aclose_after_done_is_not_a_cancel():
    source = ScriptedStream([b"data: [DONE]\n\n"])
    async with StreamPump(_adapter(), source, capacity=1) as pump:
        assert await pump.next_event() == Done()
    assert not pump.cancelled
    assert source.closed


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        StreamPump(_adapter(), ScriptedStream([]), capacity=0)
