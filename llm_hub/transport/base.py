"""Transport 抽象接口。

核心只依赖这里的协议：把 WireRequest 发出去，拿回一个异步字节流。
TLS/HTTP 细节由具体实现负责（默认实现见 httpx_transport）。

- send_request 在拿到响应头之后返回；HTTP 错误状态在这里就转换为业务异常。
- ByteStream 逐块产出原始字节，aclose() 关闭底层连接，可重复调用。
"""

from typing import AsyncIterator, Protocol

from llm_hub.domain.models import WireRequest


class ByteStream(Protocol):
    def __aiter__(self) -> AsyncIterator[bytes]:
        ...

    async def aclose(self) -> None:
        ...


class Transport(Protocol):
    async def send_request(self, request: WireRequest) -> ByteStream:
        ...

    async def aclose(self) -> None:
        ...
