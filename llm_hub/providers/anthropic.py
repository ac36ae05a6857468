"""Anthropic Messages API 适配器。

- URL: {base_url}/messages
- 认证: x-api-key + anthropic-version
- system 消息放在顶层 system 字段，不进入 messages。
- 流式: SSE，`event:` 行 + `data:` 行成对出现：
  message_start -> content_block_start/delta/stop ... -> message_delta -> message_stop，
  期间可能夹杂 ping；出错时为 event: error。
"""

import json
from typing import Any, Dict, List, Optional, Sequence

from llm_hub.domain.exceptions import ProtocolViolation, UnsupportedFeature
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

ANTHROPIC_VERSION = "2023-06-01"

_TOOL_CHOICE = {"auto": {"type": "auto"}, "required": {"type": "any"}, "none": {"type": "none"}}


class AnthropicAdapter:
    def __init__(self, config: ClientConfig, spec: ProviderSpec):
        self.name = spec.kind.value
        self._config = config
        self._spec = spec
        self._decoder = SseLineDecoder()
        self._guard = TerminalGuard()
        self._streaming = True
        self._body = bytearray()
        self._tokens_in = 0
        self._stop_reason: Optional[str] = None

    def build_request(self, history: Sequence[Turn], params: ModelParams, stream: bool = True) -> WireRequest:
        require_credential(self._config, self._spec)
        ensure_tools_supported(self._spec, params)
        if params.response_format == "json_object":
            raise UnsupportedFeature(
                code="JSON_MODE_UNSUPPORTED",
                message="anthropic does not support response_format=json_object",
                provider=self.name,
            )
        self._streaming = stream
        model_cfg = self._spec.resolve_model(params.model or self._config.model)

        system_parts = [t.text for t in history if t.role == "system" and t.text]
        turns = [t for t in history if t.role != "system"]
        # messages 必须以 user 开头；上下文窗口截断后可能以 assistant/tool 开头
        first_user = next((i for i, t in enumerate(turns) if t.role == "user"), len(turns))
        payload: Dict[str, Any] = {
            "model": model_cfg.provider_model,
            "messages": [self._turn_to_payload(t) for t in turns[first_user:]],
            "max_tokens": params.max_tokens or model_cfg.max_tokens,
            "temperature": params.temperature if params.temperature is not None else model_cfg.default_temperature,
            "stream": stream,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if params.top_p is not None:
            payload["top_p"] = params.top_p
        if params.stop:
            payload["stop_sequences"] = list(params.stop)
        if params.tools:
            payload["tools"] = [
                {"name": tool.name, "description": tool.description, "input_schema": tool.json_schema()}
                for tool in params.tools
            ]
            payload["tool_choice"] = _TOOL_CHOICE[params.tool_choice]
        payload.update(params.extra)

        headers = {
            "x-api-key": self._config.auth_credential or "",
            "anthropic-version": ANTHROPIC_VERSION,
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

    @staticmethod
    def _turn_to_payload(turn: Turn) -> Dict[str, Any]:
        if turn.role == "tool":
            return {
                "role": "user",
                "content": [{"type": "tool_result", "tool_use_id": turn.tool_call_id, "content": turn.text}],
            }
        calls = turn.tool_calls
        if not calls:
            return {"role": turn.role, "content": turn.text}
        blocks: List[Dict[str, Any]] = []
        if turn.text:
            blocks.append({"type": "text", "text": turn.text})
        for call in calls:
            blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.parsed_arguments()})
        return {"role": turn.role, "content": blocks}

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
        events.append(ErrorEvent(kind=ErrorKind.PROTOCOL_VIOLATION, message="stream ended before message_stop"))
        return self._guard.admit(events)

    def _parse_frame(self, frame: SseFrame) -> List[StreamEvent]:
        if not frame.data:
            return []
        try:
            payload = json.loads(frame.data)
        except json.JSONDecodeError:
            return [_violation(f"invalid JSON frame: {frame.data[:200]}")]
        if not isinstance(payload, dict):
            return [_violation(f"unexpected frame: {frame.data[:200]}")]
        try:
            return self._frame_events(payload, payload.get("type") or frame.event)
        except ProtocolViolation as e:
            return [e.to_event()]

    def _frame_events(self, payload: Dict[str, Any], kind: Any) -> List[StreamEvent]:
        if kind == "message_start":
            message = get_typed(payload, "message", dict, {})
            self._tokens_in = token_count(get_typed(message, "usage", dict, {}), "input_tokens")
            return []
        if kind == "content_block_start":
            block = get_typed(payload, "content_block", dict, {})
            index = get_typed(payload, "index", int, 0)
            if block.get("type") == "tool_use":
                return [ToolCallDelta(index=index, id=get_typed(block, "id", str), name=get_typed(block, "name", str))]
            if block.get("type") == "text":
                text = get_typed(block, "text", str)
                return [ContentDelta(text)] if text else []
            return []
        if kind == "content_block_delta":
            delta = get_typed(payload, "delta", dict, {})
            dtype = delta.get("type")
            if dtype == "text_delta":
                text = get_typed(delta, "text", str)
                return [ContentDelta(text)] if text else []
            if dtype == "input_json_delta":
                return [
                    ToolCallDelta(
                        index=get_typed(payload, "index", int, 0),
                        arguments=get_typed(delta, "partial_json", str, ""),
                    )
                ]
            if dtype == "thinking_delta":
                thinking = get_typed(delta, "thinking", str)
                return [ReasoningDelta(thinking)] if thinking else []
            return []
        if kind == "message_delta":
            delta = get_typed(payload, "delta", dict, {})
            stop_reason = get_typed(delta, "stop_reason", str)
            if stop_reason:
                self._stop_reason = stop_reason
            usage = get_typed(payload, "usage", dict)
            if usage is not None:
                return [Usage(tokens_in=self._tokens_in, tokens_out=token_count(usage, "output_tokens"))]
            return []
        if kind == "message_stop":
            return [Done(finish_reason=self._stop_reason)]
        if kind == "error":
            return [ErrorEvent(kind=ErrorKind.API_ERROR, message=_error_message(payload.get("error")))]
        # ping / content_block_stop / 未来新增的事件类型
        return []

    def _parse_body(self, body: bytes) -> List[StreamEvent]:
        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return [_violation(f"invalid JSON body: {body[:200]!r}")]
        if not isinstance(data, dict):
            return [_violation("response body is not an object")]
        if data.get("type") == "error":
            return [ErrorEvent(kind=ErrorKind.API_ERROR, message=_error_message(data.get("error")))]
        try:
            return self._body_events(data)
        except ProtocolViolation as e:
            return [e.to_event()]

    @staticmethod
    def _body_events(data: Dict[str, Any]) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        for index, block in enumerate(get_typed(data, "content", list, [])):
            if not isinstance(block, dict):
                raise malformed("content block is not an object")
            btype = block.get("type")
            if btype == "text":
                text = get_typed(block, "text", str)
                if text:
                    events.append(ContentDelta(text))
            elif btype == "thinking":
                thinking = get_typed(block, "thinking", str)
                if thinking:
                    events.append(ReasoningDelta(thinking))
            elif btype == "tool_use":
                events.append(
                    ToolCallDelta(
                        index=index,
                        id=get_typed(block, "id", str),
                        name=get_typed(block, "name", str),
                        arguments=json.dumps(block.get("input") or {}, ensure_ascii=False),
                    )
                )
        usage = get_typed(data, "usage", dict, {})
        events.append(
            Usage(tokens_in=token_count(usage, "input_tokens"), tokens_out=token_count(usage, "output_tokens"))
        )
        events.append(Done(finish_reason=get_typed(data, "stop_reason", str)))
        return events


def _violation(message: str) -> ErrorEvent:
    return ErrorEvent(kind=ErrorKind.PROTOCOL_VIOLATION, message=message)


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error or "unknown error")
