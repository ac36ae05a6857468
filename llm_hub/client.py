"""LlmClient：对外的统一入口。

一次请求的流程：
    调用方 -> LlmClient.send/stream -> RateLimiter.acquire -> ProviderAdapter.build_request
    -> Transport.send_request -> StreamPump -> 调用方
    收到 Done 时，把 user Turn 与 assistant Turn 依次写入 ConversationMemory。

每个 Turn 的状态由 TurnLifecycle 跟踪：
    Queued -> RateLimited -> Sending -> Streaming -> Finalizing -> Completed
    任一非终止状态都可以进入 Failed / Cancelled，其余迁移抛出 InvalidState。
每次迁移都会产出一个 TurnEvent（写日志并转发给 sinks）。
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Callable, Iterable, Optional, Set, Union
from uuid import uuid4

from tenacity import before_sleep_log, retry, retry_if_exception, stop_after_attempt, wait_random_exponential

from llm_hub.config.settings import load_client_config
from llm_hub.domain.conversation import ConversationMemory, estimate_tokens
from llm_hub.domain.exceptions import BusinessError, Cancelled, InvalidState, error_from_event
from llm_hub.domain.models import (
    ClientConfig,
    Done,
    ErrorEvent,
    ErrorKind,
    ModelParams,
    StreamEvent,
    Turn,
)
from llm_hub.infrastructure.logging.logger import logger
from llm_hub.infrastructure.logging.observability import EventSink, TurnEvent, TurnPhase, emit_turn_event
from llm_hub.infrastructure.rate_limit import RateLimiter
from llm_hub.providers import ProviderAdapter, create_adapter
from llm_hub.streaming.pump import StreamPump
from llm_hub.transport.base import Transport
from llm_hub.transport.httpx_transport import HttpxTransport

TurnInput = Union[Turn, str]

_TRANSITIONS = {
    TurnPhase.QUEUED: {TurnPhase.RATE_LIMITED},
    TurnPhase.RATE_LIMITED: {TurnPhase.SENDING},
    TurnPhase.SENDING: {TurnPhase.STREAMING},
    TurnPhase.STREAMING: {TurnPhase.FINALIZING},
    TurnPhase.FINALIZING: {TurnPhase.COMPLETED},
}


class TurnLifecycle:
    """单个 Turn 的状态机。"""

    def __init__(
        self,
        provider: str,
        conversation_id: str,
        turn_id: str,
        sinks: Iterable[EventSink] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.conversation_id = conversation_id
        self.turn_id = turn_id
        self._sinks = tuple(sinks)
        self._clock = clock
        self._started = clock()
        self._phase = TurnPhase.QUEUED
        self._emit(TurnPhase.QUEUED)

    @property
    def phase(self) -> TurnPhase:
        return self._phase

    def advance(
        self,
        phase: TurnPhase,
        tokens_in: Optional[int] = None,
        tokens_out: Optional[int] = None,
        error_kind: Optional[ErrorKind] = None,
    ) -> None:
        if self._phase.terminal:
            raise InvalidState(
                code="ILLEGAL_TRANSITION",
                message=f"turn {self.turn_id} already {self._phase.value}",
            )
        allowed = _TRANSITIONS.get(self._phase, set())
        if phase not in allowed and phase not in (TurnPhase.FAILED, TurnPhase.CANCELLED):
            raise InvalidState(
                code="ILLEGAL_TRANSITION",
                message=f"cannot move turn from {self._phase.value} to {phase.value}",
            )
        self._phase = phase
        self._emit(phase, tokens_in, tokens_out, error_kind)

    def fail(self, kind: ErrorKind) -> None:
        if kind == ErrorKind.CANCELLED:
            self.cancel()
        elif not self._phase.terminal:
            self.advance(TurnPhase.FAILED, error_kind=kind)

    def cancel(self) -> None:
        if not self._phase.terminal:
            self.advance(TurnPhase.CANCELLED, error_kind=ErrorKind.CANCELLED)

    def _emit(self, phase, tokens_in=None, tokens_out=None, error_kind=None) -> None:
        event = TurnEvent(
            provider=self.provider,
            conversation_id=self.conversation_id,
            turn_id=self.turn_id,
            phase=phase,
            latency_ms=round((self._clock() - self._started) * 1000, 3),
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            error_kind=error_kind.value if error_kind is not None else None,
        )
        emit_turn_event(event, self._sinks)


class TurnStream:
    """stream() 返回的事件流：惰性、有限、不可重启的 StreamEvent 异步迭代器。

    - 消费者拉到 Done 时，user/assistant Turn 在 Done 交给调用方之前已写入 memory。
    - ErrorEvent 作为最后一个事件交付，memory 保持不变。
    - aclose() 取消流并释放连接；之后 partial_turn()/commit_partial() 仍可使用。
    """

    def __init__(
        self,
        client: "LlmClient",
        pump: StreamPump,
        user_turn: Turn,
        lifecycle: TurnLifecycle,
    ):
        self._client = client
        self._pump = pump
        self._lifecycle = lifecycle
        self.user_turn = user_turn
        self._assistant: Optional[Turn] = None
        self._ended = False

    @property
    def turn_id(self) -> str:
        return self._lifecycle.turn_id

    @property
    def phase(self) -> TurnPhase:
        return self._lifecycle.phase

    @property
    def pump(self) -> StreamPump:
        return self._pump

    @property
    def result(self) -> Optional[Turn]:
        """Done 之后写入 memory 的 assistant Turn；未完成时为 None。"""

        return self._assistant

    def partial_turn(self) -> Turn:
        return self._pump.partial_turn()

    def __aiter__(self) -> "TurnStream":
        return self

    async def __anext__(self) -> StreamEvent:
        if self._ended:
            if self._pump.cancelled:
                raise Cancelled(code="CANCELLED", message="stream was cancelled")
            raise StopAsyncIteration
        try:
            event = await self._pump.next_event()
        except Cancelled:
            self._lifecycle.cancel()
            self._finish()
            raise
        except asyncio.CancelledError:
            await self.aclose()
            raise
        if event is None:
            self._finish()
            raise StopAsyncIteration

        if isinstance(event, Done):
            self._lifecycle.advance(TurnPhase.FINALIZING)
            try:
                self._assistant = self._client._commit(self.user_turn, self._pump.final_turn())
            except Exception as e:
                logger.exception("commit of turn %s failed", self.turn_id)
                self._lifecycle.fail(e.kind if isinstance(e, BusinessError) else ErrorKind.INVALID_STATE)
                self._finish()
                raise
            usage = self._pump.usage
            self._lifecycle.advance(
                TurnPhase.COMPLETED,
                tokens_in=usage.tokens_in if usage else None,
                tokens_out=usage.tokens_out if usage else None,
            )
            self._finish()
        elif isinstance(event, ErrorEvent):
            self._lifecycle.fail(event.kind)
            self._finish()
        return event

    async def collect(self) -> Turn:
        """消费剩余事件，返回写入 memory 的 assistant Turn；流出错时抛出对应异常。"""

        async for event in self:
            if isinstance(event, ErrorEvent):
                raise error_from_event(
                    event,
                    provider=self._lifecycle.provider,
                    turn_id=self.turn_id,
                    events_seen=self._pump.produced,
                )
        if self._assistant is None:
            raise Cancelled(code="CANCELLED", message="stream was cancelled")
        return self._assistant

    async def commit_partial(self) -> Turn:
        """停止流，并把已累积的部分内容作为 assistant Turn 显式写入 memory。"""

        if self._assistant is not None:
            raise InvalidState(code="ALREADY_COMMITTED", message=f"turn {self.turn_id} already committed")
        await self.aclose()
        partial = self._pump.partial_turn()
        metadata = dict(partial.provider_metadata)
        metadata["partial"] = True
        self._assistant = self._client._commit(
            self.user_turn,
            replace(partial, finished=True, provider_metadata=metadata),
        )
        return self._assistant

    async def aclose(self) -> None:
        if not self._ended:
            self._lifecycle.cancel()
        await self._pump.aclose()
        self._finish()

    async def __aenter__(self) -> "TurnStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _finish(self) -> None:
        self._ended = True
        self._client._active.discard(self)


def _retry_before_first_event(exc: BaseException) -> bool:
    return isinstance(exc, BusinessError) and exc.retryable and not exc.extra.get("events_seen")


class LlmClient:
    """单个会话的客户端：一个 ClientConfig、一个 ConversationMemory。

    RateLimiter 与 Transport 可以在多个会话之间共享（见 new_conversation）。
    """

    def __init__(
        self,
        config: ClientConfig,
        transport: Optional[Transport] = None,
        memory: Optional[ConversationMemory] = None,
        limiter: Optional[RateLimiter] = None,
        sinks: Iterable[EventSink] = (),
        adapter_factory: Callable[[ClientConfig], ProviderAdapter] = create_adapter,
    ):
        self.config = config
        self.memory = memory if memory is not None else ConversationMemory()
        self._transport = transport or HttpxTransport(timeout=config.timeout)
        self._owns_transport = transport is None
        self._limiter = limiter or RateLimiter(
            config.rate_limit,
            wait_budget=config.rate_limit_wait_budget,
            name=config.provider,
        )
        self._owns_limiter = limiter is None
        self._sinks = tuple(sinks)
        self._adapter_factory = adapter_factory
        self._active: Set[TurnStream] = set()
        self._closed = False

    @classmethod
    def from_settings(cls, provider: Optional[str] = None, **kwargs) -> "LlmClient":
        """从 .env / config.yaml / 环境变量解析配置并创建客户端。"""

        return cls(load_client_config(provider), **kwargs)

    @property
    def conversation_id(self) -> str:
        return self.memory.conversation_id

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def closed(self) -> bool:
        return self._closed

    def new_conversation(self, conversation_id: Optional[str] = None) -> "LlmClient":
        """新建一个会话，与当前客户端共享配置、限流器与 transport。"""

        return LlmClient(
            self.config,
            transport=self._transport,
            memory=ConversationMemory(conversation_id, limits=self.memory.limits),
            limiter=self._limiter,
            sinks=self._sinks,
            adapter_factory=self._adapter_factory,
        )

    async def send(
        self,
        turn_or_text: TurnInput,
        params: Optional[ModelParams] = None,
        streaming: bool = True,
    ) -> Turn:
        """发送一条消息并等待完整回复。

        尚未产出任何事件之前的 TransportError 会按指数退避（带抖动）有限重试，
        其他错误直接抛出。成功时返回已写入 memory 的 assistant Turn。
        """

        user_turn = _as_user_turn(turn_or_text)
        turn_id = f"t-{uuid4().hex}"

        @retry(
            stop=stop_after_attempt(self.config.max_retries + 1),
            wait=wait_random_exponential(
                multiplier=self.config.retry_backoff_base,
                max=self.config.retry_backoff_max,
            ),
            retry=retry_if_exception(_retry_before_first_event),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async def attempt() -> Turn:
            turn_stream = await self._open(user_turn, params, streaming, turn_id)
            async with turn_stream:
                return await turn_stream.collect()

        return await attempt()

    async def stream(self, turn_or_text: TurnInput, params: Optional[ModelParams] = None) -> TurnStream:
        """限流、构造请求并发出后返回 TurnStream；错误在迭代中以 ErrorEvent 交付。"""

        return await self._open(_as_user_turn(turn_or_text), params, True, f"t-{uuid4().hex}")

    async def aclose(self) -> None:
        """关闭客户端：限流等待者以 Cancelled 失败，进行中的流被取消。"""

        if self._closed:
            return
        self._closed = True
        if self._owns_limiter:
            self._limiter.close()
        for turn_stream in list(self._active):
            await turn_stream.aclose()
        if self._owns_transport:
            await self._transport.aclose()

    async def __aenter__(self) -> "LlmClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ---- 内部方法 ----

    async def _open(
        self,
        user_turn: Turn,
        params: Optional[ModelParams],
        streaming: bool,
        turn_id: str,
    ) -> TurnStream:
        if self._closed:
            raise Cancelled(code="CLIENT_CLOSED", message="client is closed", provider=self.config.provider)
        params = params or ModelParams()
        lifecycle = TurnLifecycle(self.config.provider, self.conversation_id, turn_id, self._sinks)
        history = list(self.memory.history(self.config.context_max_turns, self.config.context_max_tokens))
        history.append(user_turn)

        try:
            lifecycle.advance(TurnPhase.RATE_LIMITED)
            await self._limiter.acquire(sum(estimate_tokens(t) for t in history))
            lifecycle.advance(TurnPhase.SENDING)
            adapter = self._adapter_factory(self.config)
            request = adapter.build_request(history, params, stream=streaming)
            source = await self._transport.send_request(request)
        except BusinessError as e:
            lifecycle.fail(e.kind)
            raise
        except asyncio.CancelledError:
            lifecycle.cancel()
            raise

        lifecycle.advance(TurnPhase.STREAMING)
        pump = StreamPump(
            adapter,
            source,
            capacity=self.config.stream_buffer_size,
            turn_id=turn_id,
            metadata={"provider": self.config.provider, "model": request.body.get("model", self.config.model)},
            close_timeout=self.config.close_timeout,
        ).start()
        turn_stream = TurnStream(self, pump, user_turn, lifecycle)
        self._active.add(turn_stream)
        return turn_stream

    def _commit(self, user_turn: Turn, assistant_turn: Turn) -> Turn:
        self.memory.append(user_turn)
        return self.memory.append(assistant_turn)


def _as_user_turn(turn_or_text: TurnInput) -> Turn:
    if isinstance(turn_or_text, Turn):
        if not turn_or_text.finished:
            raise InvalidState(code="TURN_NOT_FINISHED", message=f"turn {turn_or_text.id} is not finished")
        return turn_or_text
    if isinstance(turn_or_text, str):
        return Turn.user(turn_or_text)
    raise TypeError(f"expected Turn or str, got {type(turn_or_text).__name__}")
