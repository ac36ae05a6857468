"""结构化可观测事件。

LlmClient 在每次状态迁移时产出一个 TurnEvent：
写入 llm_hub 日志，并转发给调用方注册的 sink（指标、追踪等由 sink 决定）。
sink 抛出的异常只记录日志，不会影响请求本身。
"""

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

from llm_hub.infrastructure.logging.logger import log_event, logger


class TurnPhase(str, Enum):
    QUEUED = "queued"
    RATE_LIMITED = "rate_limited"
    SENDING = "sending"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (TurnPhase.COMPLETED, TurnPhase.FAILED, TurnPhase.CANCELLED)


@dataclass(frozen=True)
class TurnEvent:
    provider: str
    conversation_id: str
    turn_id: str
    phase: TurnPhase
    latency_ms: float
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    error_kind: Optional[str] = None


EventSink = Callable[[TurnEvent], None]


def emit_turn_event(event: TurnEvent, sinks: Iterable[EventSink] = ()) -> None:
    fields = asdict(event)
    fields["phase"] = event.phase.value
    level = logging.WARNING if event.phase == TurnPhase.FAILED else logging.INFO
    log_event(level, f"turn {event.phase.value}", **fields)
    for sink in sinks:
        try:
            sink(event)
        except Exception:
            logger.exception("turn event sink failed", extra={"extra": {"phase": event.phase.value}})
