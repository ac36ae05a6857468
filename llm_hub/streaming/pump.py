"""StreamPump：网络字节流与消费者之间的背压管道。

结构：
    transport ByteStream --(producer task)--> adapter.parse_chunk --> 有界队列(N) --> next_event()

- 生产者：按 transport 交付的速度读取字节，交给 adapter 解析，再把事件放入有界队列。
  队列满时 put 挂起，生产者停止读取 socket，缓冲区占用恒不超过 N。
- 消费者：next_event() 拉取下一个事件；队列为空时挂起，流结束后返回 None，不再阻塞。
- Done：in-flight Turn 标记为 finished，已缓冲事件照常交付，最后交付 Done。
- ErrorEvent：Turn 标记失败，丢弃尚未被读取的缓冲事件，ErrorEvent 作为最后一个事件交付。
- 取消：aclose() 在 close_timeout 内结束生产者并关闭连接、释放缓冲；
  之后（以及正在等待中）的 next_event() 抛出 Cancelled。

in-flight Turn 只由生产者修改（_TurnBuilder），对外只提供不可变快照。
"""

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional

from llm_hub.domain.exceptions import BusinessError, Cancelled, InvalidState
from llm_hub.domain.models import (
    ContentDelta,
    Done,
    ErrorEvent,
    ErrorKind,
    ReasoningDelta,
    ReasoningSegment,
    Segment,
    StreamEvent,
    TextSegment,
    ToolCallDelta,
    ToolCallSegment,
    Turn,
    Usage,
    is_terminal,
)
from llm_hub.infrastructure.logging.logger import log_event, logger
from llm_hub.providers.base import ProviderAdapter
from llm_hub.transport.base import ByteStream

# 唤醒消费者用的取消标记
_CANCELLED = object()


class _TurnBuilder:
    """正在流式生成的 assistant Turn，只由 StreamPump 的生产者修改。"""

    def __init__(self, turn_id: Optional[str], metadata: Mapping[str, Any]):
        self.turn_id = turn_id
        self.metadata: Dict[str, Any] = dict(metadata)
        self._entries: List[Dict[str, Any]] = []
        self._tools: Dict[int, Dict[str, Any]] = {}
        self.usage: Optional[Usage] = None
        self.finish_reason: Optional[str] = None
        self.error: Optional[ErrorEvent] = None
        self.finished = False

    def apply(self, event: StreamEvent) -> None:
        if isinstance(event, ContentDelta):
            self._append_text("text", event.text)
        elif isinstance(event, ReasoningDelta):
            self._append_text("reasoning", event.text)
        elif isinstance(event, ToolCallDelta):
            entry = self._tools.get(event.index)
            if entry is None:
                entry = {"type": "tool", "id": None, "name": "", "arguments": []}
                self._tools[event.index] = entry
                self._entries.append(entry)
            if event.id:
                entry["id"] = event.id
            if event.name:
                entry["name"] = event.name
            if event.arguments:
                entry["arguments"].append(event.arguments)
        elif isinstance(event, Usage):
            self.usage = event
        elif isinstance(event, Done):
            self.finish_reason = event.finish_reason
            self.finished = True
        elif isinstance(event, ErrorEvent):
            self.error = event

    def _append_text(self, kind: str, text: str) -> None:
        if self._entries and self._entries[-1]["type"] == kind:
            self._entries[-1]["parts"].append(text)
        else:
            self._entries.append({"type": kind, "parts": [text]})

    def snapshot(self) -> Turn:
        segments: List[Segment] = []
        for index, entry in enumerate(self._entries):
            if entry["type"] == "text":
                segments.append(TextSegment("".join(entry["parts"])))
            elif entry["type"] == "reasoning":
                segments.append(ReasoningSegment("".join(entry["parts"])))
            else:
                segments.append(
                    ToolCallSegment(
                        id=entry["id"] or f"call_{index}",
                        name=entry["name"],
                        arguments="".join(entry["arguments"]),
                    )
                )
        metadata = dict(self.metadata)
        if self.finish_reason is not None:
            metadata["finish_reason"] = self.finish_reason
        if self.usage is not None:
            metadata["usage"] = {"tokens_in": self.usage.tokens_in, "tokens_out": self.usage.tokens_out}
        if self.error is not None:
            metadata["error"] = {"kind": self.error.kind.value, "message": self.error.message}
        kwargs: Dict[str, Any] = {}
        if self.turn_id:
            kwargs["id"] = self.turn_id
        return Turn(
            role="assistant",
            segments=tuple(segments),
            finished=self.finished and self.error is None,
            provider_metadata=metadata,
            **kwargs,
        )


class StreamPump:
    def __init__(
        self,
        adapter: ProviderAdapter,
        source: ByteStream,
        capacity: int = 64,
        turn_id: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        close_timeout: float = 5.0,
    ):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._adapter = adapter
        self._source = source
        self._iterator = None
        self._capacity = capacity
        self._close_timeout = close_timeout
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=capacity)
        self._builder = _TurnBuilder(turn_id, metadata or {})
        self._task: Optional[asyncio.Task] = None
        self._source_closed = False
        self._cancelled = False
        self._terminal_delivered = False
        self._high_water = 0
        self._produced = 0

    # ---- 状态 ----

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def high_water_mark(self) -> int:
        """运行期间缓冲区的最大占用，恒不超过 capacity。"""

        return self._high_water

    @property
    def buffered(self) -> int:
        return self._queue.qsize()

    @property
    def finished(self) -> bool:
        return self._builder.finished and self._builder.error is None

    @property
    def failed(self) -> bool:
        return self._builder.error is not None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def error(self) -> Optional[ErrorEvent]:
        return self._builder.error

    @property
    def produced(self) -> int:
        """已解析出的非终止事件数（包括出错时被丢弃的缓冲事件）。"""

        return self._produced

    @property
    def usage(self) -> Optional[Usage]:
        return self._builder.usage

    def final_turn(self) -> Turn:
        """已完成的 assistant Turn（finished=True 的不可变副本）。"""

        if not self.finished:
            raise InvalidState(code="TURN_NOT_FINISHED", message="stream has not completed successfully")
        return self._builder.snapshot()

    def partial_turn(self) -> Turn:
        """当前已累积内容的快照；未完成时 finished=False。"""

        return self._builder.snapshot()

    # ---- 生命周期 ----

    def start(self) -> "StreamPump":
        if self._task is None:
            self._task = asyncio.create_task(self._produce(), name=f"stream-pump-{self._adapter.name}")
        return self

    async def next_event(self) -> Optional[StreamEvent]:
        """返回下一个事件；流结束后返回 None。取消后抛出 Cancelled。"""

        if self._cancelled:
            raise Cancelled(code="CANCELLED", message="stream was cancelled")
        if self._terminal_delivered:
            return None
        self.start()
        item = await self._queue.get()
        if item is _CANCELLED:
            raise Cancelled(code="CANCELLED", message="stream was cancelled")
        if is_terminal(item):
            self._terminal_delivered = True
        return item

    def __aiter__(self) -> "StreamPump":
        return self

    async def __anext__(self) -> StreamEvent:
        event = await self.next_event()
        if event is None:
            raise StopAsyncIteration
        return event

    async def aclose(self) -> None:
        """取消流：结束生产者、关闭连接、丢弃缓冲。对已结束的流只负责释放连接。"""

        if not self._terminal_delivered:
            self._cancelled = True
        task = self._task
        if task is not None and not task.done():
            # 终止事件产出后生产者只剩关闭连接，等它自行结束
            if not (self._builder.finished or self._builder.error is not None):
                task.cancel()
            done, _ = await asyncio.wait({task}, timeout=self._close_timeout)
            if not done:
                log_event(logging.WARNING, "stream producer did not stop in time", provider=self._adapter.name)
        await self._close_source()
        self._discard_buffered()
        if self._cancelled:
            # 唤醒可能正挂起在 next_event 上的消费者
            self._queue.put_nowait(_CANCELLED)

    cancel = aclose

    async def __aenter__(self) -> "StreamPump":
        return self.start()

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ---- 生产者 ----

    async def _produce(self) -> None:
        try:
            self._iterator = self._source.__aiter__()
            async for raw in self._iterator:
                for event in self._adapter.parse_chunk(raw):
                    if await self._deliver(event):
                        return
            for event in self._adapter.finish():
                if await self._deliver(event):
                    return
            await self._deliver(
                ErrorEvent(kind=ErrorKind.PROTOCOL_VIOLATION, message="stream ended without a terminal event")
            )
        except asyncio.CancelledError:
            raise
        except BusinessError as e:
            await self._deliver(e.to_event())
        except Exception as e:
            logger.exception("stream producer crashed", extra={"extra": {"provider": self._adapter.name}})
            await self._deliver(ErrorEvent(kind=ErrorKind.PROTOCOL_VIOLATION, message=f"{type(e).__name__}: {e}"))
        finally:
            await self._close_source()

    async def _deliver(self, event: StreamEvent) -> bool:
        """把事件交给消费者，返回是否为终止事件。"""

        if self._builder.error is not None or self._builder.finished:
            return True
        self._builder.apply(event)
        if isinstance(event, ErrorEvent):
            self._discard_buffered()
            self._queue.put_nowait(event)
            self._high_water = max(self._high_water, self._queue.qsize())
            log_event(
                logging.WARNING,
                "stream failed",
                provider=self._adapter.name,
                error_kind=event.kind.value,
                error=event.message[:200],
            )
            return True
        if not isinstance(event, Done):
            self._produced += 1
        await self._queue.put(event)
        self._high_water = max(self._high_water, self._queue.qsize())
        return isinstance(event, Done)

    def _discard_buffered(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return

    async def _close_source(self) -> None:
        if self._source_closed:
            return
        self._source_closed = True
        iterator, self._iterator = self._iterator, None
        try:
            if iterator is not None and hasattr(iterator, "aclose"):
                await asyncio.wait_for(iterator.aclose(), timeout=self._close_timeout)
            await asyncio.wait_for(self._source.aclose(), timeout=self._close_timeout)
        except asyncio.TimeoutError:
            log_event(logging.WARNING, "closing transport timed out", provider=self._adapter.name)
        except BusinessError as e:
            log_event(logging.WARNING, "closing transport failed", provider=self._adapter.name, error=e.message)
