"""会话记忆：只追加的有序 Turn 日志。

- append: 只接受 finished=True 的 Turn，并分配单调递增的 seq。
- history: 按轮数/估算 token 数返回最近的若干 Turn（惰性迭代，不修改存储），
  用于构造下一次请求，即上下文窗口裁剪。
- truncate: 永久丢弃最早的若干 Turn，是除 append 外唯一允许的修改。

ConversationMemory 只属于一个会话，不在会话之间共享，因此不加锁。
"""

from dataclasses import dataclass
from typing import Iterator, List, Literal, Optional, Tuple
from uuid import uuid4

from llm_hub.domain.exceptions import InvalidState
from llm_hub.domain.models import ReasoningSegment, TextSegment, ToolCallSegment, Turn

HistoryOrder = Literal["chronological", "recent_first"]

# 粗略估算：约 4 个字符 1 个 token，另加每条消息固定开销
_CHARS_PER_TOKEN = 4
_PER_TURN_OVERHEAD = 4


def estimate_tokens(turn: Turn) -> int:
    """估算单条 Turn 的 token 数，仅用于预算控制，不追求精确。"""

    chars = 0
    for seg in turn.segments:
        if isinstance(seg, (TextSegment, ReasoningSegment)):
            chars += len(seg.text)
        elif isinstance(seg, ToolCallSegment):
            chars += len(seg.name) + len(seg.arguments)
    return _PER_TURN_OVERHEAD + (chars + _CHARS_PER_TOKEN - 1) // _CHARS_PER_TOKEN


@dataclass(frozen=True)
class MemoryLimits:
    """存储上限，超过时从最早的 Turn 开始截断。None 表示不限制。"""

    max_turns: Optional[int] = None
    max_tokens: Optional[int] = None


class ConversationMemory:
    def __init__(self, conversation_id: Optional[str] = None, limits: Optional[MemoryLimits] = None):
        self.conversation_id = conversation_id or f"c-{uuid4().hex}"
        self._limits = limits or MemoryLimits()
        self._turns: List[Turn] = []
        self._next_seq = 1

    def __len__(self) -> int:
        return len(self._turns)

    @property
    def limits(self) -> MemoryLimits:
        return self._limits

    def append(self, turn: Turn) -> Turn:
        """追加一条已完成的 Turn，返回带 seq 的存储副本。"""

        if not turn.finished:
            raise InvalidState(code="TURN_NOT_FINISHED", message=f"turn {turn.id} is not finished")
        stored = turn.with_seq(self._next_seq)
        self._next_seq += 1
        self._turns.append(stored)
        self._enforce_limits()
        return stored

    def history(
        self,
        max_turns: Optional[int] = None,
        max_tokens: Optional[int] = None,
        order: HistoryOrder = "chronological",
    ) -> Iterator[Turn]:
        """返回最近的若干 Turn。

        从最新一条往前选取，直到超出 max_turns 或 max_tokens 为止。
        返回的是当前快照上的迭代器，之后的 append 不影响本次结果。
        """

        if order not in ("chronological", "recent_first"):
            raise ValueError(f"unknown history order: {order!r}")
        start = self._window_start(max_turns, max_tokens)
        window = self._turns[start:]
        if order == "recent_first":
            return reversed(window)
        return iter(window)

    def truncate(self, n: int) -> int:
        """永久删除最早的 n 条 Turn，返回实际删除条数。"""

        if n < 0:
            raise ValueError("n must be >= 0")
        dropped = min(n, len(self._turns))
        del self._turns[:dropped]
        return dropped

    def set_limits(self, limits: MemoryLimits) -> None:
        self._limits = limits
        self._enforce_limits()

    def clear(self) -> None:
        self._turns.clear()

    def last(self) -> Optional[Turn]:
        return self._turns[-1] if self._turns else None

    def snapshot(self) -> Tuple[Turn, ...]:
        return tuple(self._turns)

    def total_tokens(self) -> int:
        return sum(estimate_tokens(t) for t in self._turns)

    # ---- 内部方法 ----

    def _window_start(self, max_turns: Optional[int], max_tokens: Optional[int]) -> int:
        start = len(self._turns)
        budget = max_tokens
        count = 0
        for idx in range(len(self._turns) - 1, -1, -1):
            turn = self._turns[idx]
            if max_turns is not None and count >= max_turns:
                break
            if budget is not None:
                cost = estimate_tokens(turn)
                if cost > budget:
                    break
                budget -= cost
            count += 1
            start = idx
        return start

    def _enforce_limits(self) -> None:
        max_turns = self._limits.max_turns
        if max_turns is not None and len(self._turns) > max_turns:
            self.truncate(len(self._turns) - max_turns)
        max_tokens = self._limits.max_tokens
        if max_tokens is not None:
            total = self.total_tokens()
            drop = 0
            # 至少保留最新一条
            while total > max_tokens and drop < len(self._turns) - 1:
                total -= estimate_tokens(self._turns[drop])
                drop += 1
            if drop:
                self.truncate(drop)
