"""基于 httpx.AsyncClient 的默认 Transport 实现。

错误映射：
- 连接失败 / 超时 / 读流中断 -> TransportError
- 429 -> RateLimitExceeded（带 Retry-After）
- 502/503/504 -> TransportError（网关类的暂时性故障）
- 401/403 -> ApiError(code="AUTH_ERROR")
- 其他 >= 400 -> ApiError，消息取自响应 JSON 的 error.message
"""

import json
from typing import AsyncIterator, Mapping, Optional

import httpx

from llm_hub.domain.exceptions import ApiError, BusinessError, RateLimitExceeded, TransportError
from llm_hub.domain.models import WireRequest

_GATEWAY_STATUSES = {502, 503, 504}


class HttpxByteStream:
    def __init__(self, response: httpx.Response):
        self._response = response
        self._closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                if chunk:
                    yield chunk
        except httpx.TimeoutException as e:
            raise TransportError(code="TIMEOUT", message=f"stream read timed out: {e}") from e
        except httpx.RequestError as e:
            raise TransportError(code="NETWORK_ERROR", message=str(e) or type(e).__name__) from e

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()


class HttpxTransport:
    """Transport 默认实现；未传入 client 时自行创建并在 aclose 时关闭。"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self._client = client or httpx.AsyncClient(timeout=timeout, trust_env=False)
        self._owns_client = client is None

    async def send_request(self, request: WireRequest) -> HttpxByteStream:
        http_request = self._client.build_request(
            request.method,
            request.url,
            headers=dict(request.headers),
            content=request.body_bytes(),
            timeout=request.timeout if request.timeout is not None else httpx.USE_CLIENT_DEFAULT,
        )
        try:
            response = await self._client.send(http_request, stream=True)
        except httpx.TimeoutException as e:
            raise TransportError(code="TIMEOUT", message=f"request timed out: {e}") from e
        except httpx.RequestError as e:
            raise TransportError(code="NETWORK_ERROR", message=str(e) or type(e).__name__) from e

        if response.status_code >= 400:
            try:
                body = await response.aread()
            except httpx.RequestError:
                body = b""
            finally:
                await response.aclose()
            raise status_error(response.status_code, body, response.headers)
        return HttpxByteStream(response)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def status_error(status: int, body: bytes, headers: Mapping[str, str]) -> BusinessError:
    """把 HTTP 错误状态转换为业务异常。"""

    message = _error_message(status, body)
    if status == 429:
        return RateLimitExceeded(
            code="RATE_LIMIT",
            message=message,
            http_status=status,
            retry_after=headers.get("retry-after"),
        )
    if status in _GATEWAY_STATUSES:
        return TransportError(code="UPSTREAM_UNAVAILABLE", message=message, http_status=status)
    if status in (401, 403):
        return ApiError(code="AUTH_ERROR", message=message, http_status=status)
    return ApiError(code="API_ERROR", message=message, http_status=status)


def _error_message(status: int, body: bytes) -> str:
    text = body.decode("utf-8", errors="replace")
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return f"HTTP {status}: {text[:200]}"
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if data.get("message"):
            return str(data["message"])
    return f"HTTP {status}: {text[:200]}"
