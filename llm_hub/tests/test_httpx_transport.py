import json

import httpx
import pytest

from llm_hub.domain.exceptions import ApiError, RateLimitExceeded, TransportError
from llm_hub.domain.models import WireRequest
from llm_hub.transport.httpx_transport import HttpxTransport, status_error


def _request(**kw):
    return WireRequest(
        method="POST",
        url="https://api.test/v1/chat/completions",
        headers={"Authorization": "Bearer sk-test", "Content-Type": "application/json"},
        body={"model": "m", "messages": [{"role": "user", "content": "你好"}]},
        **kw,
    )


def _transport(handler):
    return HttpxTransport(httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.asyncio
async def test_streams_response_bytes():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=b"data: a\n\ndata: [DONE]\n\n")

    transport = _transport(handler)
    stream = await transport.send_request(_request(timeout=5.0))
    data = b"".join([chunk async for chunk in stream])
    await stream.aclose()
    await stream.aclose()

    assert data == b"data: a\n\ndata: [DONE]\n\n"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["messages"][0]["content"] == "你好"


@pytest.mark.asyncio
async def test_status_codes_map_to_error_kinds():
    responses = {
        "/429": httpx.Response(429, headers={"retry-after": "3"}, json={"error": {"message": "slow down"}}),
        "/401": httpx.Response(401, json={"error": {"message": "invalid_api_key"}}),
        "/503": httpx.Response(503, text="upstream unavailable"),
        "/400": httpx.Response(400, json={"error": {"message": "unknown model"}}),
    }

    def handler(request):
        return responses[request.url.path]

    transport = _transport(handler)

    def req(path):
        return WireRequest(method="POST", url=f"https://api.test{path}", headers={}, body={})

    with pytest.raises(RateLimitExceeded) as ei:
        await transport.send_request(req("/429"))
    assert ei.value.extra["retry_after"] == "3"
    assert ei.value.message == "slow down"

    with pytest.raises(ApiError) as ei:
        await transport.send_request(req("/401"))
    assert ei.value.code == "AUTH_ERROR"

    with pytest.raises(TransportError) as ei:
        await transport.send_request(req("/503"))
    assert ei.value.retryable
    assert "upstream unavailable" in ei.value.message

    with pytest.raises(ApiError) as ei:
        await transport.send_request(req("/400"))
    assert ei.value.message == "unknown model"
    assert ei.value.http_status == 400


@pytest.mark.asyncio
async def test_connection_failure_is_transport_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransportError) as ei:
        await _transport(handler).send_request(_request())
    assert ei.value.code == "NETWORK_ERROR"


@pytest.mark.asyncio
async def test_owned_client_closed_on_aclose():
    transport = HttpxTransport(timeout=1.0)
    await transport.aclose()
    assert transport._client.is_closed


def test_status_error_plain_text_body():
    err = status_error(500, b"<html>oops</html>", {})
    assert isinstance(err, ApiError)
    assert err.message.startswith("HTTP 500")
