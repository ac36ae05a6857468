"""Transport 层：核心消费的异步请求/字节流原语及其 httpx 默认实现。"""

from llm_hub.transport.base import ByteStream, Transport
from llm_hub.transport.httpx_transport import HttpxTransport

__all__ = ["ByteStream", "Transport", "HttpxTransport"]
