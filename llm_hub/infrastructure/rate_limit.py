"""按 Provider 的令牌桶限流。

每个 RateLimiter 实例对应一个 Provider（一份 ClientConfig），同时维护两个桶：
- 请求桶：每次 acquire 消耗 1。
- token 桶：每次 acquire 消耗调用方估算的 token 数。

并发调用按到达顺序（FIFO）服务：asyncio.Lock 的等待队列本身是先进先出的，
队首调用方持锁等待补充令牌，后到的调用方在锁上排队，因此不会有调用方被饿死。
close() 之后，正在等待和之后到来的 acquire 都会以 Cancelled 失败。
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from llm_hub.domain.exceptions import Cancelled, RateLimitExceeded
from llm_hub.domain.models import RateLimitConfig
from llm_hub.infrastructure.logging.logger import log_event


class TokenBucket:
    """令牌桶状态：补充量 = 经过秒数 × refill_rate，上限为 capacity。"""

    def __init__(self, capacity: float, refill_rate: float, now: float):
        if capacity <= 0 or refill_rate <= 0:
            raise ValueError("capacity and refill_rate must be positive")
        self.capacity = capacity
        self.available = capacity
        self.refill_rate = refill_rate
        self.last_refill = now

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill)
        self.available = min(self.capacity, self.available + elapsed * self.refill_rate)
        self.last_refill = now

    def wait_time(self, cost: float) -> float:
        """还需等待多少秒才能扣除 cost（调用前应先 refill）。"""

        if self.available >= cost:
            return 0.0
        return (cost - self.available) / self.refill_rate

    def debit(self, cost: float) -> None:
        self.available -= cost


class RateLimiter:
    def __init__(
        self,
        config: RateLimitConfig,
        wait_budget: Optional[float] = None,
        name: str = "",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self._wait_budget = wait_budget
        self._clock = clock
        now = clock()
        self._requests: Optional[TokenBucket] = None
        self._tokens: Optional[TokenBucket] = None
        if config.requests_per_sec is not None:
            self._requests = TokenBucket(config.request_capacity, config.requests_per_sec, now)
        if config.tokens_per_sec is not None:
            self._tokens = TokenBucket(config.token_capacity, config.tokens_per_sec, now)
        self._lock = asyncio.Lock()
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def unlimited(self) -> bool:
        return self._requests is None and self._tokens is None

    async def acquire(self, tokens_estimate: int = 0) -> float:
        """等待直到两个桶都有足够令牌，然后原子地扣除；返回实际等待秒数。

        Raises:
            Cancelled: 限流器已关闭。
            RateLimitExceeded: 需要的等待超过 wait_budget，或单次消耗超过桶容量。
        """

        self._raise_if_closed()
        if self.unlimited:
            return 0.0
        cost = float(max(0, tokens_estimate))
        if self._tokens is not None and cost > self._tokens.capacity:
            raise RateLimitExceeded(
                code="RATE_LIMIT",
                message=f"token estimate {int(cost)} exceeds bucket capacity {int(self._tokens.capacity)}",
                provider=self.name,
            )

        start = self._clock()
        async with self._lock:
            while True:
                self._raise_if_closed()
                now = self._clock()
                wait = self._refill_and_measure(now, cost)
                if wait <= 0:
                    self._debit(cost)
                    return now - start
                if self._wait_budget is not None and (now - start) + wait > self._wait_budget:
                    raise RateLimitExceeded(
                        code="RATE_LIMIT",
                        message=f"rate limit wait budget of {self._wait_budget}s exhausted",
                        provider=self.name,
                        retry_after=round(wait, 3),
                    )
                log_event(logging.DEBUG, "rate limiter waiting", provider=self.name, wait_seconds=round(wait, 4))
                try:
                    await asyncio.wait_for(self._closed.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    continue

    def close(self) -> None:
        """关闭限流器，唤醒所有等待者并令其以 Cancelled 失败。"""

        self._closed.set()

    # ---- 内部方法 ----

    def _raise_if_closed(self) -> None:
        if self._closed.is_set():
            raise Cancelled(code="CANCELLED", message="rate limiter closed", provider=self.name)

    def _refill_and_measure(self, now: float, cost: float) -> float:
        wait = 0.0
        if self._requests is not None:
            self._requests.refill(now)
            wait = max(wait, self._requests.wait_time(1.0))
        if self._tokens is not None and cost:
            self._tokens.refill(now)
            wait = max(wait, self._tokens.wait_time(cost))
        return wait

    def _debit(self, cost: float) -> None:
        if self._requests is not None:
            self._requests.debit(1.0)
        if self._tokens is not None and cost:
            self._tokens.debit(cost)
