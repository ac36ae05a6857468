"""OpenAI 兼容 Provider 适配器（Deepseek / OpenAI / ZhipuAI / Kimi / Qwen 等）。

这些厂商均使用 chat/completions 端点：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>
- 流式: SSE，每行 `data: {...}`，以 `data: [DONE]` 结束；
  开启 stream_options.include_usage 后最后一个 chunk 携带 usage。

具体字段以各家官方文档为准，本实现只依赖公共字段：
model/messages/temperature/max_tokens/top_p/stop/seed/tools/stream。
"""

import json
from typing import Any, Dict, List, Optional, Sequence

from llm_hub.domain.exceptions import ProtocolViolation
from llm_hub.domain.models import (
    ClientConfig,
    ContentDelta,
    Done,
    ErrorEvent,
    ErrorKind,
    ModelParams,
    ReasoningDelta,
    StreamEvent,
    ToolCallDelta,
    Turn,
    Usage,
    WireRequest,
)
from llm_hub.providers.base import (
    TerminalGuard,
    ensure_tools_supported,
    get_typed,
    malformed,
    require_credential,
    token_count,
)
from llm_hub.providers.framing import SseFrame, SseLineDecoder
from llm_hub.providers.registry import ApiType, ProviderSpec, endpoint_url


class OpenAICompatAdapter:
    """OpenAI 兼容协议的 ProviderAdapter 实现。"""

    def __init__(self, config: ClientConfig, spec: ProviderSpec):
        self.name = spec.kind.value
        self._config = config
        self._spec = spec
        self._decoder = SseLineDecoder()
        self._guard = TerminalGuard()
        self._streaming = True
        self._body = bytearray()
        self._finish_reason: Optional[str] = None

    # ---- 请求构造 ----

    def build_request(self, history: Sequence[Turn], params: ModelParams, stream: bool = True) -> WireRequest:
        require_credential(self._config, self._spec)
        ensure_tools_supported(self._spec, params)
        self._streaming = stream
        model_cfg = self._spec.resolve_model(params.model or self._config.model)
        payload: Dict[str, Any] = {
            "model": model_cfg.provider_model,
            "messages": [self._turn_to_payload(t) for t in history],
            "temperature": params.temperature if params.temperature is not None else model_cfg.default_temperature,
            "max_tokens": params.max_tokens or model_cfg.max_tokens,
            "stream": stream,
        }
        if stream:
            payload["stream_options"] = {"include_usage": True}
        if params.top_p is not None:
            payload["top_p"] = params.top_p
        if params.stop:
            payload["stop"] = list(params.stop)
        if params.seed is not None:
            payload["seed"] = params.seed
        if params.reasoning_effort:
            payload["reasoning_effort"] = params.reasoning_effort
        if params.response_format == "json_object":
            payload["response_format"] = {"type": "json_object"}
        if params.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.json_schema(),
                    },
                }
                for tool in params.tools
            ]
            payload["tool_choice"] = params.tool_choice
        payload.update(params.extra)

        headers = {
            "Authorization": f"Bearer {self._config.auth_credential}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
            **self._config.extra_headers,
        }
        return WireRequest(
            method="POST",
            url=endpoint_url(self._spec, ApiType.CHAT, self._config.base_url),
            headers=headers,
            body=payload,
            stream=stream,
            timeout=self._config.timeout,
        )

    def _turn_to_payload(self, turn: Turn) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": turn.role}
        calls = turn.tool_calls
        if turn.text or not calls:
            payload["content"] = turn.text
        if calls:
            payload["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments or "{}"},
                }
                for call in calls
            ]
        if turn.tool_call_id:
            payload["tool_call_id"] = turn.tool_call_id
        return payload

    # ---- 流式解析 ----

    def parse_chunk(self, raw: bytes) -> List[StreamEvent]:
        if self._guard.terminated:
            return []
        if not self._streaming:
            self._body.extend(raw)
            return []
        events: List[StreamEvent] = []
        for frame in self._decoder.feed(raw):
            events.extend(self._parse_frame(frame))
        return self._guard.admit(events)

    def finish(self) -> List[StreamEvent]:
        if self._guard.terminated:
            return []
        if not self._streaming:
            return self._guard.admit(self._parse_body(bytes(self._body)))
        events: List[StreamEvent] = []
        for frame in self._decoder.flush():
            events.extend(self._parse_frame(frame))
        admitted = self._guard.admit(events)
        if self._guard.terminated:
            return admitted
        if self._finish_reason is not None:
            # 部分厂商不发送 [DONE]，以 finish_reason 作为完成依据
            return admitted + self._guard.admit([Done(finish_reason=self._finish_reason)])
        return admitted + self._guard.admit(
            [ErrorEvent(kind=ErrorKind.PROTOCOL_VIOLATION, message="stream ended before completion")]
        )

    def _parse_frame(self, frame: SseFrame) -> List[StreamEvent]:
        data = frame.data
        if not data:
            return []
        if data == "[DONE]":
            return [Done(finish_reason=self._finish_reason)]
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            return [_violation(f"invalid JSON frame: {data[:200]}")]
        if not isinstance(payload, dict):
            return [_violation(f"unexpected frame: {data[:200]}")]
        if payload.get("error"):
            return [ErrorEvent(kind=ErrorKind.API_ERROR, message=_error_message(payload["error"]))]
        try:
            return self._frame_events(payload)
        except ProtocolViolation as e:
            return [e.to_event()]

    def _frame_events(self, payload: Dict[str, Any]) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        flat_delta = payload.get("delta")
        if isinstance(flat_delta, str) and flat_delta:
            events.append(ContentDelta(flat_delta))

        for ch in get_typed(payload, "choices", list, []):
            if not isinstance(ch, dict):
                raise malformed("choice is not an object")
            # 只消费第一个候选
            if ch.get("index", 0) != 0:
                continue
            events.extend(self._delta_events(get_typed(ch, "delta", dict, {})))
            finish_reason = get_typed(ch, "finish_reason", str)
            if finish_reason:
                self._finish_reason = finish_reason

        usage = _usage(payload.get("usage"))
        if usage is not None:
            events.append(usage)
        return events

    @staticmethod
    def _delta_events(delta: Dict[str, Any]) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        reasoning = get_typed(delta, "reasoning_content", str)
        if reasoning:
            events.append(ReasoningDelta(reasoning))
        content = get_typed(delta, "content", str)
        if content:
            events.append(ContentDelta(content))
        for i, call in enumerate(get_typed(delta, "tool_calls", list, [])):
            if not isinstance(call, dict):
                raise malformed("tool call is not an object")
            func = get_typed(call, "function", dict, {})
            events.append(
                ToolCallDelta(
                    index=get_typed(call, "index", int, i),
                    id=get_typed(call, "id", str),
                    name=get_typed(func, "name", str),
                    arguments=get_typed(func, "arguments", str, ""),
                )
            )
        return events

    def _parse_body(self, body: bytes) -> List[StreamEvent]:
        """解析非流式响应：整个 body 是一个 chat.completion JSON。"""

        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return [_violation(f"invalid JSON body: {body[:200]!r}")]
        if not isinstance(data, dict):
            return [_violation("response body is not an object")]
        if data.get("error"):
            return [ErrorEvent(kind=ErrorKind.API_ERROR, message=_error_message(data["error"]))]
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            return [_violation("response has no choices")]
        choice = choices[0]
        if not isinstance(choice, dict):
            return [_violation("choice is not an object")]
        try:
            events = self._delta_events(get_typed(choice, "message", dict, {}))
            usage = _usage(data.get("usage"))
            finish_reason = get_typed(choice, "finish_reason", str)
        except ProtocolViolation as e:
            return [e.to_event()]
        if usage is not None:
            events.append(usage)
        events.append(Done(finish_reason=finish_reason))
        return events


def _violation(message: str) -> ErrorEvent:
    return ErrorEvent(kind=ErrorKind.PROTOCOL_VIOLATION, message=message)


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)


def _usage(raw: Any) -> Optional[Usage]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise malformed("'usage' is not an object")
    if not raw:
        return None
    return Usage(tokens_in=token_count(raw, "prompt_tokens"), tokens_out=token_count(raw, "completion_tokens"))
